"""Operation record persistence."""

from bulk_orchestrator.storage.base import OperationFilters, OperationPage, OperationStore
from bulk_orchestrator.storage.memory import InMemoryOperationStore
from bulk_orchestrator.storage.sqlite import SqliteOperationStore

__all__ = [
    "InMemoryOperationStore",
    "OperationFilters",
    "OperationPage",
    "OperationStore",
    "SqliteOperationStore",
]
