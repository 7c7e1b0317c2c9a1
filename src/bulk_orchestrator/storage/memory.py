"""Process-local operation store."""

from __future__ import annotations

from datetime import datetime

from bulk_orchestrator.errors import StoreError
from bulk_orchestrator.models import OperationRecord, OperationStatus
from bulk_orchestrator.storage.base import OperationFilters, OperationPage, OperationStore


class InMemoryOperationStore(OperationStore):
    """Dict-backed store. Methods never suspend, so each call is atomic on the loop."""

    def __init__(self) -> None:
        self._records: dict[str, OperationRecord] = {}

    async def create(self, record: OperationRecord) -> None:
        if record.id in self._records:
            raise StoreError(f"Operation {record.id} already exists")
        self._records[record.id] = record.copy()

    async def get(self, operation_id: str) -> OperationRecord | None:
        record = self._records.get(operation_id)
        return record.copy() if record else None

    async def save(self, record: OperationRecord) -> None:
        if record.id not in self._records:
            raise StoreError(f"Operation {record.id} does not exist")
        self._records[record.id] = record.copy()

    async def claim_start(self, operation_id: str, started_at: datetime) -> OperationRecord | None:
        record = self._records.get(operation_id)
        if record is None or record.status is not OperationStatus.PENDING:
            return None
        record.mark_started(started_at)
        return record.copy()

    async def cancel_pending(self, operation_id: str, cancelled_at: datetime, reason: str) -> bool:
        record = self._records.get(operation_id)
        if record is None or record.status is not OperationStatus.PENDING:
            return False
        record.cancel(cancelled_at, reason)
        return True

    async def list_operations(self, filters: OperationFilters) -> OperationPage:
        matched = [r for r in self._records.values() if filters.matches(r)]
        matched.sort(key=lambda r: r.created_at, reverse=True)
        end = None if filters.limit is None else filters.offset + filters.limit
        page = matched[filters.offset : end]
        return OperationPage(records=[r.copy() for r in page], total=len(matched))
