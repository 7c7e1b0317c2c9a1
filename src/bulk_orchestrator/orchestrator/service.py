"""Bulk operation lifecycle: admission, supervised processing, aggregation."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable

from bulk_orchestrator.audit.models import AuditEntry
from bulk_orchestrator.audit.sink import AuditSink
from bulk_orchestrator.errors import (
    InvalidRequestError,
    OperationAlreadyStartedError,
    OperationNotFoundError,
    OperationTimeoutError,
    RateLimitExceededError,
)
from bulk_orchestrator.execution.executor import BoundedExecutor, Unit, UnitResult
from bulk_orchestrator.models import (
    ACTIVE_STATUSES,
    BulkOptions,
    OperationRecord,
    OperationStatus,
    OperationType,
    TargetFailure,
    TargetResult,
    TargetSuccess,
)
from bulk_orchestrator.ratelimit.gate import RateGate
from bulk_orchestrator.storage.base import OperationFilters, OperationPage, OperationStore
from bulk_orchestrator.utils.time import utc_now

logger = logging.getLogger(__name__)

ApplyFn = Callable[[str, Mapping[str, Any]], Awaitable[Any]]

CANCEL_REASON = "Cancelled by user"


@dataclass(frozen=True)
class ApplyResult:
    """What an apply function may return for a successfully changed target."""

    committed_ref: str | None = None


@dataclass(frozen=True)
class OperationStatistics:
    total_operations: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    avg_success_rate: float
    total_targets_updated: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_operations": self.total_operations,
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
            "avg_success_rate": self.avg_success_rate,
            "total_targets_updated": self.total_targets_updated,
        }


@dataclass
class _ActiveOperation:
    """Live state of one running operation; ``lock`` serializes every write."""

    record: OperationRecord
    deadline: float | None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    timed_out: int = 0


def _committed_ref(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        ref = value.get("committed_ref") or value.get("commit_sha")
        return str(ref) if ref is not None else None
    ref = getattr(value, "committed_ref", None)
    return str(ref) if ref is not None else None


def _error_code(exc: BaseException | None) -> str:
    if exc is None:
        return "unknown_error"
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    return type(exc).__name__


def _is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, OperationTimeoutError)


class Orchestrator:
    """Owns every OperationRecord it creates.

    ``submit`` returns as soon as the pending record is stored; a supervised
    background task then claims the record, drives the targets through the
    bounded executor and writes the terminal status. Only one task can ever
    process a given operation id.
    """

    def __init__(
        self,
        store: OperationStore,
        gate: RateGate,
        apply_fns: Mapping[OperationType | str, ApplyFn],
        *,
        audit_sink: AuditSink | None = None,
        executor: BoundedExecutor | None = None,
        default_options: BulkOptions | None = None,
        max_targets: int = 500,
        persist_retries: int = 3,
        persist_retry_delay: float = 0.05,
        audit_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._gate = gate
        self._apply_fns: dict[OperationType, ApplyFn] = {
            OperationType(key): fn for key, fn in apply_fns.items()
        }
        self._audit_sink = audit_sink
        self._executor = executor or BoundedExecutor()
        self._default_options = default_options or BulkOptions()
        self._max_targets = max_targets
        self._persist_retries = persist_retries
        self._persist_retry_delay = persist_retry_delay
        self._audit_timeout = audit_timeout
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._active: dict[str, _ActiveOperation] = {}
        self._audits: dict[str, set[asyncio.Task[None]]] = {}

    @property
    def default_options(self) -> BulkOptions:
        return self._default_options

    # -- inbound API --

    async def submit(
        self,
        operation_type: OperationType | str,
        targets: Sequence[str],
        change: Mapping[str, Any],
        *,
        client_key: str | None = None,
        user_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        options: BulkOptions | None = None,
        auto_start: bool = True,
    ) -> str:
        op_type = self._resolve_type(operation_type)
        target_tuple = self._validate_targets(targets)
        if not isinstance(change, Mapping):
            raise InvalidRequestError("change must be a mapping")

        key = client_key or user_id or "anonymous"
        decision = await self._gate.admit(op_type.limiter, key)
        if not decision.allowed:
            policy = self._gate.policy(op_type.limiter)
            raise RateLimitExceededError(
                policy.message if policy else "Too many requests, please try again later.",
                limiter=op_type.limiter,
                retry_after=decision.retry_after,
                limit=decision.limit,
                reset_at=decision.reset_at,
            )

        record = OperationRecord.new(
            op_type,
            target_tuple,
            dict(change),
            options=options or self._default_options,
            user_id=user_id,
            client_key=key,
            metadata=metadata,
        )
        await self._store.create(record)
        logger.info(
            "Created operation %s type=%s targets=%d user=%s",
            record.id,
            op_type.value,
            record.total_targets,
            user_id or "-",
        )

        if auto_start:
            self._spawn(record.id)
        return record.id

    async def start(self, operation_id: str) -> None:
        """Start processing a pending operation submitted with ``auto_start=False``."""
        if operation_id in self._tasks:
            raise OperationAlreadyStartedError(f"Operation {operation_id} is already running")
        record = await self._store.get(operation_id)
        if record is None:
            raise OperationNotFoundError(f"Operation {operation_id} not found")
        if record.status is not OperationStatus.PENDING:
            raise OperationAlreadyStartedError(
                f"Operation {operation_id} cannot start from status {record.status.value}"
            )
        if operation_id in self._tasks:
            raise OperationAlreadyStartedError(f"Operation {operation_id} is already running")
        self._spawn(operation_id)

    async def get_operation(self, operation_id: str) -> OperationRecord | None:
        active = self._active.get(operation_id)
        if active is not None:
            return active.record.copy()
        return await self._store.get(operation_id)

    async def list_operations(self, filters: OperationFilters | None = None) -> OperationPage:
        return await self._store.list_operations(filters or OperationFilters())

    async def cancel(self, operation_id: str) -> bool:
        if operation_id in self._active:
            return False
        cancelled = await self._store.cancel_pending(operation_id, utc_now(), CANCEL_REASON)
        if cancelled:
            logger.info("Cancelled pending operation %s", operation_id)
        return cancelled

    async def wait(
        self, operation_id: str, timeout: float | None = None
    ) -> OperationRecord | None:
        """Wait for the processing task, if any, then return the stored record."""
        task = self._tasks.get(operation_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self._store.get(operation_id)

    def is_running(self, operation_id: str) -> bool:
        return operation_id in self._tasks

    async def get_active_operations(self) -> list[OperationRecord]:
        page = await self._store.list_operations(
            OperationFilters(status=ACTIVE_STATUSES, limit=None)
        )
        return page.records

    async def get_user_operations(self, user_id: str, limit: int = 10) -> list[OperationRecord]:
        page = await self._store.list_operations(OperationFilters(user_id=user_id, limit=limit))
        return page.records

    async def get_statistics(
        self, start: datetime, end: datetime, user_id: str | None = None
    ) -> OperationStatistics:
        page = await self._store.list_operations(
            OperationFilters(user_id=user_id, created_from=start, created_to=end, limit=None)
        )
        records = page.records

        by_status: dict[str, int] = {}
        by_type: dict[str, int] = {}
        for record in records:
            by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
            by_type[record.operation_type.value] = by_type.get(record.operation_type.value, 0) + 1

        finished = [
            r
            for r in records
            if r.status
            in (
                OperationStatus.COMPLETED,
                OperationStatus.PARTIAL,
                OperationStatus.FAILED,
                OperationStatus.TIMEOUT,
            )
        ]
        rates = [
            (r.successful_count / r.total_targets * 100) if r.total_targets else 0.0
            for r in finished
        ]
        avg = round(sum(rates) / len(rates), 2) if rates else 0.0

        return OperationStatistics(
            total_operations=len(records),
            by_status=by_status,
            by_type=by_type,
            avg_success_rate=avg,
            total_targets_updated=sum(r.successful_count for r in records),
        )

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Stopped %d operation task(s)", len(tasks))

        audits = [task for pending in self._audits.values() for task in pending]
        self._audits.clear()
        for task in audits:
            task.cancel()
        if audits:
            await asyncio.gather(*audits, return_exceptions=True)
            logger.warning("Dropped %d unfinished audit record(s) on shutdown", len(audits))

    # -- validation --

    def _resolve_type(self, operation_type: OperationType | str) -> OperationType:
        try:
            op_type = OperationType(operation_type)
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown operation type: {operation_type!r}") from exc
        if op_type not in self._apply_fns:
            raise InvalidRequestError(f"No apply function registered for {op_type.value}")
        return op_type

    def _validate_targets(self, targets: Sequence[str]) -> tuple[str, ...]:
        if isinstance(targets, (str, bytes)) or not isinstance(targets, Sequence):
            raise InvalidRequestError("targets must be a list of target identifiers")
        if not targets:
            raise InvalidRequestError("At least one target is required")
        if len(targets) > self._max_targets:
            raise InvalidRequestError(
                f"Too many targets: {len(targets)} > {self._max_targets}",
                details={"max_targets": self._max_targets},
            )
        seen: set[str] = set()
        for index, target in enumerate(targets):
            if not isinstance(target, str) or not target.strip():
                raise InvalidRequestError(
                    f"Target at index {index} must be a non-empty string",
                    details={"index": index},
                )
            if target in seen:
                raise InvalidRequestError(
                    f"Duplicate target: {target}", details={"target": target}
                )
            seen.add(target)
        return tuple(targets)

    # -- supervised processing --

    def _spawn(self, operation_id: str) -> None:
        task = asyncio.create_task(
            self._supervise(operation_id), name=f"bulk-operation-{operation_id}"
        )
        self._tasks[operation_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(operation_id, None))

    async def _supervise(self, operation_id: str) -> None:
        try:
            await self._run(operation_id)
        except asyncio.CancelledError:
            logger.warning("Processing of operation %s was cancelled", operation_id)
            raise
        except Exception as exc:
            logger.exception("Processing of operation %s crashed", operation_id)
            await self._record_crash(operation_id, exc)
        finally:
            self._active.pop(operation_id, None)
        await self._drain_audits(operation_id)

    async def _run(self, operation_id: str) -> None:
        record = await self._store.claim_start(operation_id, utc_now())
        if record is None:
            current = await self._store.get(operation_id)
            if current is not None and current.status is OperationStatus.CANCELLED:
                logger.info("Operation %s was cancelled before processing", operation_id)
            else:
                logger.warning(
                    "Operation %s could not be claimed (status=%s)",
                    operation_id,
                    current.status.value if current else "missing",
                )
            return

        options = record.options
        deadline = (
            self._clock() + options.timeout_seconds if options.timeout_seconds else None
        )
        active = _ActiveOperation(record=record, deadline=deadline)
        self._active[operation_id] = active
        apply_fn = self._apply_fns[record.operation_type]
        logger.info(
            "Started operation %s targets=%d concurrency=%d retries=%d",
            operation_id,
            record.total_targets,
            options.concurrency,
            options.retries,
        )

        units = [
            Unit(id=target, action=self._bind_target(active, apply_fn, target))
            for target in record.targets
        ]
        await self._executor.run(
            units,
            concurrency=options.concurrency,
            retries=options.retries,
            retry_delay=options.retry_delay_seconds,
            on_unit_start=partial(self._on_target_start, active),
            on_unit_complete=partial(self._on_target_settled, active),
            on_progress=partial(self._on_progress, active),
            should_retry=_is_retryable,
        )

        async with active.lock:
            if active.record.pending_count != 0:
                raise RuntimeError(
                    f"Operation {operation_id} finished with "
                    f"{active.record.pending_count} unsettled target(s)"
                )
            active.record.finish(utc_now(), timed_out=active.timed_out > 0)
            await self._persist(active.record)
            final = active.record
        logger.info(
            "Finished operation %s status=%s successful=%d failed=%d",
            operation_id,
            final.status.value,
            final.successful_count,
            final.failed_count,
        )

    def _bind_target(
        self, active: _ActiveOperation, apply_fn: ApplyFn, target: str
    ) -> Callable[[], Awaitable[Any]]:
        change = active.record.change

        async def action() -> Any:
            if active.deadline is not None and self._clock() >= active.deadline:
                raise OperationTimeoutError(
                    f"Operation deadline passed before {target} was applied"
                )
            return await apply_fn(target, copy.deepcopy(change))

        return action

    async def _on_target_start(self, active: _ActiveOperation, target: str) -> None:
        async with active.lock:
            active.record.current_target = target
            await self._persist(active.record)

    async def _on_target_settled(self, active: _ActiveOperation, unit: UnitResult[Any]) -> None:
        if unit.succeeded:
            outcome: TargetSuccess | TargetFailure = TargetSuccess(
                committed_ref=_committed_ref(unit.value)
            )
        else:
            outcome = TargetFailure(
                code=_error_code(unit.error), message=unit.error_message or "unknown error"
            )
            logger.warning(
                "Target %s of operation %s failed after %d attempt(s): %s",
                unit.id,
                active.record.id,
                unit.attempts,
                unit.error_message,
            )
        result = TargetResult(
            target=unit.id,
            outcome=outcome,
            timestamp=utc_now(),
            attempts=unit.attempts,
            duration_ms=unit.duration_ms,
        )

        async with active.lock:
            active.record.settle(result)
            if isinstance(unit.error, OperationTimeoutError):
                active.timed_out += 1

        self._schedule_audit(active.record, result)

    async def _on_progress(
        self, active: _ActiveOperation, completed: int, total: int, running: list[str]
    ) -> None:
        async with active.lock:
            active.record.current_target = running[-1] if running else None
            await self._persist(active.record)
        logger.debug("Operation %s progress %d/%d", active.record.id, completed, total)

    async def _persist(self, record: OperationRecord) -> bool:
        """Write a snapshot, retrying; a failed write leaves the live record authoritative."""
        snapshot = record.copy()
        attempts = self._persist_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._store.save(snapshot)
                return True
            except Exception as exc:
                if attempt < attempts:
                    logger.warning(
                        "Persisting operation %s failed (%d/%d): %s",
                        record.id,
                        attempt,
                        attempts,
                        exc,
                    )
                    await asyncio.sleep(self._persist_retry_delay * attempt)
                    continue
                logger.error(
                    "Giving up persisting operation %s after %d attempts: %s",
                    record.id,
                    attempts,
                    exc,
                )
        return False

    def _schedule_audit(self, record: OperationRecord, result: TargetResult) -> None:
        """Record the entry in a background task bounded by ``audit_timeout``."""
        if self._audit_sink is None:
            return
        outcome = result.outcome
        entry = AuditEntry(
            operation_id=record.id,
            operation_type=record.operation_type.value,
            target=result.target,
            outcome=outcome.kind,
            detail=result.detail,
            user_id=record.user_id,
            committed_ref=outcome.committed_ref if isinstance(outcome, TargetSuccess) else None,
            created_at=result.timestamp,
        )
        task = asyncio.create_task(
            self._audit(self._audit_sink, entry), name=f"audit-{record.id}-{result.target}"
        )
        pending = self._audits.setdefault(record.id, set())
        pending.add(task)
        task.add_done_callback(pending.discard)

    async def _audit(self, sink: AuditSink, entry: AuditEntry) -> None:
        try:
            await asyncio.wait_for(sink.record(entry), self._audit_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Audit record timed out after %.1fs for operation %s target %s",
                self._audit_timeout,
                entry.operation_id,
                entry.target,
            )
        except Exception as exc:
            logger.warning(
                "Audit record failed for operation %s target %s: %s",
                entry.operation_id,
                entry.target,
                exc,
            )

    async def _drain_audits(self, operation_id: str) -> None:
        pending = self._audits.get(operation_id)
        if pending:
            await asyncio.gather(*list(pending), return_exceptions=True)
        self._audits.pop(operation_id, None)

    async def _record_crash(self, operation_id: str, exc: Exception) -> None:
        message = f"Internal error: {exc}"
        active = self._active.get(operation_id)
        try:
            if active is not None:
                async with active.lock:
                    active.record.mark_crashed(utc_now(), message)
                    await self._persist(active.record)
                return
            record = await self._store.get(operation_id)
            if record is not None and not record.status.is_terminal:
                record.mark_crashed(utc_now(), message)
                await self._persist(record)
        except Exception:
            logger.exception("Could not record crash of operation %s", operation_id)
