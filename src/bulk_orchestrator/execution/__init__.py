from bulk_orchestrator.execution.executor import (
    BoundedExecutor,
    Unit,
    UnitResult,
    UnitStatus,
    run_batch,
)

__all__ = ["BoundedExecutor", "Unit", "UnitResult", "UnitStatus", "run_batch"]
