from bulk_orchestrator.orchestrator.service import (
    ApplyFn,
    ApplyResult,
    OperationStatistics,
    Orchestrator,
)

__all__ = ["ApplyFn", "ApplyResult", "OperationStatistics", "Orchestrator"]
