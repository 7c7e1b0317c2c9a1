"""Durable store contract for operation records."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime

from bulk_orchestrator.models import OperationRecord, OperationStatus, OperationType


@dataclass(frozen=True)
class OperationFilters:
    user_id: str | None = None
    status: OperationStatus | tuple[OperationStatus, ...] | None = None
    operation_type: OperationType | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int | None = 20
    offset: int = 0

    @property
    def statuses(self) -> tuple[OperationStatus, ...]:
        if self.status is None:
            return ()
        if isinstance(self.status, OperationStatus):
            return (self.status,)
        return tuple(self.status)

    def matches(self, record: OperationRecord) -> bool:
        if self.user_id is not None and record.user_id != self.user_id:
            return False
        if self.statuses and record.status not in self.statuses:
            return False
        if self.operation_type is not None and record.operation_type != self.operation_type:
            return False
        if self.created_from is not None and record.created_at < self.created_from:
            return False
        if self.created_to is not None and record.created_at > self.created_to:
            return False
        return True


@dataclass(frozen=True)
class OperationPage:
    records: list[OperationRecord] = field(default_factory=list)
    total: int = 0


class OperationStore(abc.ABC):
    """Persistence for operation records.

    Implementations return copies: nothing a caller does to a returned record
    reaches the stored state except through ``save``.
    """

    @abc.abstractmethod
    async def create(self, record: OperationRecord) -> None: ...

    @abc.abstractmethod
    async def get(self, operation_id: str) -> OperationRecord | None: ...

    @abc.abstractmethod
    async def save(self, record: OperationRecord) -> None: ...

    @abc.abstractmethod
    async def claim_start(self, operation_id: str, started_at: datetime) -> OperationRecord | None:
        """Atomically move a pending record to in_progress.

        Returns the updated record if this caller won the transition, None
        if the record is missing or no longer pending.
        """

    @abc.abstractmethod
    async def cancel_pending(self, operation_id: str, cancelled_at: datetime, reason: str) -> bool:
        """Atomically move a pending record to cancelled."""

    @abc.abstractmethod
    async def list_operations(self, filters: OperationFilters) -> OperationPage:
        """Matching records newest first, paginated; ``total`` ignores pagination."""

    async def close(self) -> None:
        return None
