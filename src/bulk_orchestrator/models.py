"""Operation record, per-target outcomes and run options."""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from bulk_orchestrator.config import (
    MAX_CONCURRENCY,
    MAX_RETRIES,
    MAX_RETRY_DELAY_SECONDS,
    ExecutionSettings,
)
from bulk_orchestrator.errors import InvalidConcurrencyError
from bulk_orchestrator.utils.time import parse_iso, utc_now


class OperationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self not in (OperationStatus.PENDING, OperationStatus.IN_PROGRESS)


ACTIVE_STATUSES = (OperationStatus.PENDING, OperationStatus.IN_PROGRESS)


class OperationType(str, Enum):
    BULK_UPDATE = "bulk_update"
    BULK_COMMIT = "bulk_commit"
    BULK_SYNC = "bulk_sync"

    @property
    def limiter(self) -> str:
        """Rate-limiter class guarding admissions of this type."""
        if self is OperationType.BULK_SYNC:
            return "sync"
        return "bulk"


@dataclass(frozen=True)
class TargetSuccess:
    committed_ref: str | None = None

    kind = "success"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "committed_ref": self.committed_ref}


@dataclass(frozen=True)
class TargetFailure:
    code: str
    message: str

    kind = "failure"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "code": self.code, "message": self.message}


TargetOutcome = Union[TargetSuccess, TargetFailure]


def outcome_from_dict(data: dict[str, Any]) -> TargetOutcome:
    kind = data.get("kind")
    if kind == TargetSuccess.kind:
        return TargetSuccess(committed_ref=data.get("committed_ref"))
    if kind == TargetFailure.kind:
        return TargetFailure(code=str(data.get("code", "")), message=str(data.get("message", "")))
    raise ValueError(f"Unknown target outcome kind: {kind!r}")


@dataclass(frozen=True)
class TargetResult:
    """Settled outcome of one target. Never mutated once appended to a record."""

    target: str
    outcome: TargetOutcome
    timestamp: datetime
    attempts: int = 1
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, TargetSuccess)

    @property
    def detail(self) -> str:
        outcome = self.outcome
        if isinstance(outcome, TargetSuccess):
            ref = outcome.committed_ref or "no ref"
            return f"applied ({ref}) after {self.attempts} attempt(s)"
        return f"failed after {self.attempts} attempt(s): [{outcome.code}] {outcome.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "outcome": self.outcome.to_dict(),
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TargetResult":
        timestamp = parse_iso(data.get("timestamp"))
        if timestamp is None:
            raise ValueError("Target result is missing its timestamp")
        return cls(
            target=str(data["target"]),
            outcome=outcome_from_dict(data["outcome"]),
            timestamp=timestamp,
            attempts=int(data.get("attempts", 1)),
            duration_ms=float(data.get("duration_ms", 0.0)),
        )


@dataclass(frozen=True)
class OperationSummary:
    total: int
    successful: int
    failed: int
    success_rate: float

    @classmethod
    def from_counts(cls, total: int, successful: int, failed: int) -> "OperationSummary":
        rate = round(successful / total * 100, 2) if total > 0 else 0.0
        return cls(total=total, successful=successful, failed=failed, success_rate=rate)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": self.success_rate,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationSummary":
        return cls(
            total=int(data["total"]),
            successful=int(data["successful"]),
            failed=int(data["failed"]),
            success_rate=float(data["success_rate"]),
        )


@dataclass(frozen=True)
class BulkOptions:
    """Execution knobs for one operation."""

    concurrency: int = 5
    retries: int = 0
    retry_delay_seconds: float = 1.0
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise InvalidConcurrencyError(
                f"concurrency must be at least 1, got {self.concurrency}"
            )
        if self.retries < 0:
            raise ValueError(f"retries must be >= 0, got {self.retries}")
        if not math.isfinite(self.retry_delay_seconds) or self.retry_delay_seconds < 0:
            raise ValueError(f"retry_delay_seconds must be >= 0, got {self.retry_delay_seconds}")
        if self.timeout_seconds is not None and not (
            math.isfinite(self.timeout_seconds) and self.timeout_seconds > 0
        ):
            raise ValueError(f"timeout_seconds must be > 0, got {self.timeout_seconds}")

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> "BulkOptions":
        return cls(
            concurrency=settings.default_concurrency,
            retries=settings.default_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            timeout_seconds=settings.operation_timeout_seconds,
        )

    def within_limits(self, settings: ExecutionSettings) -> "BulkOptions":
        """Check client-supplied options against the server's execution limits.

        Out-of-range values are rejected. A configured operation deadline can
        only be tightened: a missing or larger ``timeout_seconds`` is replaced
        by the configured one.
        """
        if self.concurrency > MAX_CONCURRENCY:
            raise InvalidConcurrencyError(
                f"concurrency must be at most {MAX_CONCURRENCY}, got {self.concurrency}"
            )
        if self.retries > MAX_RETRIES:
            raise ValueError(f"retries must be at most {MAX_RETRIES}, got {self.retries}")
        if self.retry_delay_seconds > MAX_RETRY_DELAY_SECONDS:
            raise ValueError(
                f"retry_delay_seconds must be at most {MAX_RETRY_DELAY_SECONDS}, "
                f"got {self.retry_delay_seconds}"
            )
        ceiling = settings.operation_timeout_seconds
        if ceiling is None:
            return self
        if self.timeout_seconds is None or self.timeout_seconds > ceiling:
            return replace(self, timeout_seconds=ceiling)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "retries": self.retries,
            "retry_delay_seconds": self.retry_delay_seconds,
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: "BulkOptions | None" = None) -> "BulkOptions":
        base = base or cls()
        timeout = data.get("timeout_seconds", base.timeout_seconds)
        return cls(
            concurrency=int(data.get("concurrency", base.concurrency)),
            retries=int(data.get("retries", base.retries)),
            retry_delay_seconds=float(data.get("retry_delay_seconds", base.retry_delay_seconds)),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )


def compute_progress(total: int, pending: int) -> float:
    if total <= 0:
        return 100.0
    return round((total - pending) / total * 100, 2)


def compute_terminal_status(
    successful: int, failed: int, *, timed_out: bool = False
) -> OperationStatus:
    if timed_out:
        return OperationStatus.TIMEOUT
    if failed == 0:
        return OperationStatus.COMPLETED
    if successful == 0:
        return OperationStatus.FAILED
    return OperationStatus.PARTIAL


@dataclass
class OperationRecord:
    """Durable state of one bulk operation.

    The orchestrator is the only writer. Everything handed to readers is a
    ``copy()``; the mutators below assume the caller holds the operation lock.
    """

    id: str
    operation_type: OperationType
    targets: tuple[str, ...]
    change: dict[str, Any]
    status: OperationStatus
    total_targets: int
    successful_count: int
    failed_count: int
    pending_count: int
    progress_percentage: float
    created_at: datetime
    options: BulkOptions = field(default_factory=BulkOptions)
    current_target: str | None = None
    results: tuple[TargetResult, ...] = ()
    can_rollback: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    summary: OperationSummary | None = None
    user_id: str | None = None
    client_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None

    @classmethod
    def new(
        cls,
        operation_type: OperationType,
        targets: tuple[str, ...],
        change: dict[str, Any],
        *,
        options: BulkOptions,
        user_id: str | None = None,
        client_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "OperationRecord":
        total = len(targets)
        return cls(
            id=uuid4().hex,
            operation_type=operation_type,
            targets=tuple(targets),
            change=dict(change),
            status=OperationStatus.PENDING,
            total_targets=total,
            successful_count=0,
            failed_count=0,
            pending_count=total,
            progress_percentage=0.0,
            created_at=utc_now(),
            options=options,
            user_id=user_id,
            client_key=client_key,
            metadata=dict(metadata or {}),
        )

    @property
    def counts_consistent(self) -> bool:
        return (
            self.successful_count + self.failed_count + self.pending_count == self.total_targets
        )

    def result_for(self, target: str) -> TargetResult | None:
        for result in self.results:
            if result.target == target:
                return result
        return None

    def mark_started(self, now: datetime) -> None:
        if self.started_at is not None:
            raise RuntimeError(f"Operation {self.id} was already started")
        self.status = OperationStatus.IN_PROGRESS
        self.started_at = now

    def settle(self, result: TargetResult) -> None:
        if self.pending_count <= 0:
            raise RuntimeError(f"Operation {self.id} has no pending targets left to settle")
        self.results = (*self.results, result)
        if result.succeeded:
            self.successful_count += 1
        else:
            self.failed_count += 1
        self.pending_count -= 1
        self.progress_percentage = compute_progress(self.total_targets, self.pending_count)

    def finish(self, now: datetime, *, timed_out: bool = False) -> None:
        if self.completed_at is not None:
            raise RuntimeError(f"Operation {self.id} was already completed")
        self.status = compute_terminal_status(
            self.successful_count, self.failed_count, timed_out=timed_out
        )
        self.completed_at = now
        self.current_target = None
        self.progress_percentage = compute_progress(self.total_targets, self.pending_count)
        self.can_rollback = self.successful_count > 0
        self.summary = OperationSummary.from_counts(
            self.total_targets, self.successful_count, self.failed_count
        )

    def cancel(self, now: datetime, reason: str) -> None:
        self.status = OperationStatus.CANCELLED
        self.completed_at = now
        self.error_message = reason

    def mark_crashed(self, now: datetime, message: str) -> None:
        self.status = OperationStatus.FAILED
        self.error_message = message
        self.current_target = None
        self.can_rollback = self.successful_count > 0
        self.summary = OperationSummary.from_counts(
            self.total_targets, self.successful_count, self.failed_count
        )
        if self.completed_at is None:
            self.completed_at = now

    def copy(self) -> "OperationRecord":
        return replace(
            self,
            change=copy.deepcopy(self.change),
            metadata=copy.deepcopy(self.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation_type": self.operation_type.value,
            "status": self.status.value,
            "targets": list(self.targets),
            "change": self.change,
            "total_targets": self.total_targets,
            "successful_count": self.successful_count,
            "failed_count": self.failed_count,
            "pending_count": self.pending_count,
            "progress_percentage": self.progress_percentage,
            "current_target": self.current_target,
            "results": [result.to_dict() for result in self.results],
            "can_rollback": self.can_rollback,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "summary": self.summary.to_dict() if self.summary else None,
            "user_id": self.user_id,
            "client_key": self.client_key,
            "metadata": self.metadata,
            "error_message": self.error_message,
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationRecord":
        created_at = parse_iso(data.get("created_at"))
        if created_at is None:
            raise ValueError("Operation record is missing created_at")
        summary = data.get("summary")
        return cls(
            id=str(data["id"]),
            operation_type=OperationType(data["operation_type"]),
            targets=tuple(data.get("targets") or ()),
            change=dict(data.get("change") or {}),
            status=OperationStatus(data["status"]),
            total_targets=int(data["total_targets"]),
            successful_count=int(data["successful_count"]),
            failed_count=int(data["failed_count"]),
            pending_count=int(data["pending_count"]),
            progress_percentage=float(data.get("progress_percentage") or 0.0),
            created_at=created_at,
            options=BulkOptions.from_dict(data.get("options") or {}),
            current_target=data.get("current_target"),
            results=tuple(TargetResult.from_dict(item) for item in data.get("results") or ()),
            can_rollback=bool(data.get("can_rollback", False)),
            started_at=parse_iso(data.get("started_at")),
            completed_at=parse_iso(data.get("completed_at")),
            summary=OperationSummary.from_dict(summary) if summary else None,
            user_id=data.get("user_id"),
            client_key=data.get("client_key"),
            metadata=dict(data.get("metadata") or {}),
            error_message=data.get("error_message"),
        )
