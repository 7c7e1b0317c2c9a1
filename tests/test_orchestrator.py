"""Tests for the operation lifecycle driven by the orchestrator."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import make_policies, ok_apply

from bulk_orchestrator.errors import (
    InvalidRequestError,
    OperationAlreadyStartedError,
    OperationNotFoundError,
    RateLimitExceededError,
    StoreError,
)
from bulk_orchestrator.models import BulkOptions, OperationRecord, OperationStatus, OperationType
from bulk_orchestrator.orchestrator import ApplyResult, Orchestrator
from bulk_orchestrator.ratelimit import LimiterPolicy, RateGate
from bulk_orchestrator.storage import InMemoryOperationStore, OperationFilters
from bulk_orchestrator.utils.time import utc_now

CHANGE = {"path": "README.md", "content": "updated", "message": "docs: refresh readme"}


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingStore(InMemoryOperationStore):
    """Keeps every snapshot written through ``save``."""

    def __init__(self) -> None:
        super().__init__()
        self.snapshots: list[OperationRecord] = []

    async def save(self, record: OperationRecord) -> None:
        await super().save(record)
        self.snapshots.append(record.copy())


class FlakyStore(InMemoryOperationStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.save_calls = 0

    async def save(self, record: OperationRecord) -> None:
        self.save_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("disk full")
        await super().save(record)


class ListSink:
    def __init__(self) -> None:
        self.entries = []

    async def record(self, entry) -> None:
        self.entries.append(entry)


class HangingSink:
    """Audit sink whose writes block until ``release`` is set."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started = 0
        self.cancelled = 0
        self.entries = []

    async def record(self, entry) -> None:
        self.started += 1
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        self.entries.append(entry)


def failing_for(*failing: str):
    calls: list[str] = []

    async def apply(target: str, change: dict[str, Any]) -> str:
        calls.append(target)
        await asyncio.sleep(0)
        if target in failing:
            raise RuntimeError(f"cannot update {target}")
        return f"sha-{target}"

    return apply, calls


class Gate:
    """Apply function that blocks until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started: list[str] = []

    async def __call__(self, target: str, change: dict[str, Any]) -> str:
        self.started.append(target)
        await self.release.wait()
        return f"sha-{target}"


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestScenarios:
    @pytest.mark.asyncio
    async def test_all_targets_succeed(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()

        op_id = await orchestrator.submit(
            "bulk_update",
            ["t1", "t2", "t3", "t4", "t5"],
            CHANGE,
            options=BulkOptions(concurrency=3, retry_delay_seconds=0),
        )
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.COMPLETED
        assert record.successful_count == 5
        assert record.failed_count == 0
        assert record.pending_count == 0
        assert record.progress_percentage == 100.0
        assert record.summary.success_rate == 100.0
        assert record.can_rollback is True
        assert record.started_at is not None and record.completed_at is not None
        assert record.current_target is None

    @pytest.mark.asyncio
    async def test_some_targets_fail(self, make_orchestrator) -> None:
        apply, _ = failing_for("t2", "t4")
        orchestrator = make_orchestrator(apply)

        op_id = await orchestrator.submit(
            "bulk_commit",
            ["t1", "t2", "t3", "t4"],
            CHANGE,
            options=BulkOptions(concurrency=2, retries=0, retry_delay_seconds=0),
        )
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.PARTIAL
        assert record.successful_count == 2
        assert record.failed_count == 2
        assert record.can_rollback is True
        failure = record.result_for("t2").outcome
        assert failure.code == "RuntimeError"
        assert failure.message == "cannot update t2"
        assert record.result_for("t1").outcome.committed_ref == "sha-t1"

    @pytest.mark.asyncio
    async def test_all_targets_fail_after_retries(self, make_orchestrator) -> None:
        apply, calls = failing_for("t1", "t2", "t3")
        orchestrator = make_orchestrator(apply)

        op_id = await orchestrator.submit(
            "bulk_update",
            ["t1", "t2", "t3"],
            CHANGE,
            options=BulkOptions(concurrency=3, retries=2, retry_delay_seconds=0),
        )
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.FAILED
        assert record.can_rollback is False
        assert len(calls) == 9
        for result in record.results:
            assert result.attempts == 3
            assert "after 3 attempt(s)" in result.detail

    @pytest.mark.asyncio
    async def test_rate_gate_rejects_sixth_submission_in_window(self, store) -> None:
        clock = FakeClock(1000.0)
        gate = RateGate(
            [LimiterPolicy(name="bulk", max_requests=5, window_seconds=60)], clock=clock
        )

        orchestrator = Orchestrator(store, gate, {"bulk_update": ok_apply})

        for i in range(5):
            await orchestrator.submit(
                "bulk_update", [f"t{i}"], CHANGE, client_key="alice", auto_start=False
            )

        clock.now += 10
        with pytest.raises(RateLimitExceededError) as excinfo:
            await orchestrator.submit(
                "bulk_update", ["t6"], CHANGE, client_key="alice", auto_start=False
            )
        assert 0 < excinfo.value.retry_after <= 60
        assert excinfo.value.code == "RATE_LIMIT_EXCEEDED"
        assert excinfo.value.limiter == "bulk"

        clock.now += 60
        op_id = await orchestrator.submit(
            "bulk_update", ["t7"], CHANGE, client_key="alice", auto_start=False
        )
        assert (await orchestrator.get_operation(op_id)).status is OperationStatus.PENDING
        assert (await orchestrator.list_operations()).total == 6

    @pytest.mark.asyncio
    async def test_cancel_pending_operation_never_applies(self, make_orchestrator) -> None:
        apply = AsyncMock(return_value="sha")
        orchestrator = make_orchestrator(apply)

        op_id = await orchestrator.submit("bulk_update", ["t1", "t2"], CHANGE, auto_start=False)

        assert await orchestrator.cancel(op_id) is True
        record = await orchestrator.get_operation(op_id)
        assert record.status is OperationStatus.CANCELLED
        assert record.error_message == "Cancelled by user"
        assert record.completed_at is not None

        with pytest.raises(OperationAlreadyStartedError):
            await orchestrator.start(op_id)
        apply.assert_not_awaited()
        assert await orchestrator.cancel(op_id) is False

    @pytest.mark.asyncio
    async def test_cancel_before_task_claims_record(self, make_orchestrator) -> None:
        apply = AsyncMock(return_value="sha")
        orchestrator = make_orchestrator(apply)

        op_id = await orchestrator.submit("bulk_update", ["t1"], CHANGE)
        assert await orchestrator.cancel(op_id) is True
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.CANCELLED
        apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_in_progress_is_noop(self, make_orchestrator) -> None:
        gate = Gate()
        orchestrator = make_orchestrator(gate)

        op_id = await orchestrator.submit(
            "bulk_update",
            ["t1", "t2"],
            CHANGE,
            options=BulkOptions(concurrency=2, retry_delay_seconds=0),
        )

        async def running() -> bool:
            return len(gate.started) == 2

        await wait_until(running)
        assert await orchestrator.cancel(op_id) is False

        gate.release.set()
        record = await orchestrator.wait(op_id, timeout=5)
        assert record.status is OperationStatus.COMPLETED
        assert record.successful_count == 2


class TestInvariants:
    @pytest.mark.asyncio
    async def test_counts_and_progress_in_every_snapshot(self, make_orchestrator) -> None:
        store = RecordingStore()
        apply, _ = failing_for("t3", "t7", "t8")
        orchestrator = make_orchestrator(apply, store=store)

        targets = [f"t{i}" for i in range(12)]
        op_id = await orchestrator.submit(
            "bulk_update",
            targets,
            CHANGE,
            options=BulkOptions(concurrency=4, retry_delay_seconds=0),
        )
        await orchestrator.wait(op_id, timeout=5)

        progress = [s.progress_percentage for s in store.snapshots]
        assert progress == sorted(progress)
        for snapshot in store.snapshots:
            assert snapshot.counts_consistent
            assert (snapshot.progress_percentage == 100.0) == (snapshot.pending_count == 0)
            assert len(snapshot.results) == snapshot.successful_count + snapshot.failed_count
        assert store.snapshots[-1].status is OperationStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_no_lost_updates_under_concurrency(self, make_orchestrator) -> None:
        targets = [f"unit-{i}" for i in range(50)]
        failing = {t for i, t in enumerate(targets) if i % 3 == 0}
        apply, _ = failing_for(*failing)
        orchestrator = make_orchestrator(apply)
        options = BulkOptions(concurrency=10, retry_delay_seconds=0)

        for _ in range(100):
            op_id = await orchestrator.submit("bulk_update", targets, CHANGE, options=options)
            record = await orchestrator.wait(op_id, timeout=10)

            assert len(record.results) == 50
            assert sorted(r.target for r in record.results) == sorted(targets)
            assert record.failed_count == len(failing)
            assert record.successful_count == 50 - len(failing)
            assert {r.target for r in record.results if not r.succeeded} == failing
            assert record.pending_count == 0

    @pytest.mark.asyncio
    async def test_concurrency_bound_is_respected(self, make_orchestrator) -> None:
        active = {"now": 0, "peak": 0}

        async def apply(target: str, change: dict[str, Any]) -> str:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.005)
            active["now"] -= 1
            return target

        orchestrator = make_orchestrator(apply)
        op_id = await orchestrator.submit(
            "bulk_sync",
            [f"app-{i}" for i in range(15)],
            CHANGE,
            options=BulkOptions(concurrency=4, retry_delay_seconds=0),
        )
        await orchestrator.wait(op_id, timeout=5)

        assert active["peak"] == 4


class TestSubmitValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("operation_type", "targets", "change"),
        [
            ("bulk_update", [], CHANGE),
            ("bulk_update", ["main", "main"], CHANGE),
            ("bulk_update", ["main", ""], CHANGE),
            ("bulk_update", ["main", 3], CHANGE),
            ("bulk_update", "main", CHANGE),
            ("bulk_delete", ["main"], CHANGE),
            ("bulk_update", ["main"], "not a mapping"),
        ],
    )
    async def test_invalid_submission_creates_nothing(
        self, make_orchestrator, store, operation_type, targets, change
    ) -> None:
        orchestrator = make_orchestrator()

        with pytest.raises(InvalidRequestError):
            await orchestrator.submit(operation_type, targets, change)

        assert (await store.list_operations(OperationFilters())).total == 0

    @pytest.mark.asyncio
    async def test_too_many_targets(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator(max_targets=3)

        with pytest.raises(InvalidRequestError) as excinfo:
            await orchestrator.submit("bulk_update", ["a", "b", "c", "d"], CHANGE)

        assert excinfo.value.details == {"max_targets": 3}

    @pytest.mark.asyncio
    async def test_type_without_apply_function_is_rejected(self, store) -> None:

        orchestrator = Orchestrator(store, RateGate(make_policies()), {"bulk_update": ok_apply})

        with pytest.raises(InvalidRequestError):
            await orchestrator.submit("bulk_sync", ["app"], CHANGE)

    @pytest.mark.asyncio
    async def test_sync_uses_sync_limiter(self, make_orchestrator) -> None:
        gate = RateGate(make_policies(bulk=1, sync=1))
        orchestrator = make_orchestrator(gate=gate)

        await orchestrator.submit("bulk_update", ["a"], CHANGE, client_key="k", auto_start=False)
        await orchestrator.submit("bulk_sync", ["a"], CHANGE, client_key="k", auto_start=False)

        with pytest.raises(RateLimitExceededError) as excinfo:
            await orchestrator.submit("bulk_commit", ["a"], CHANGE, client_key="k")
        assert excinfo.value.message == (
            "Too many bulk operations. Please wait before starting another."
        )

    @pytest.mark.asyncio
    async def test_submit_records_caller_details(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()

        op_id = await orchestrator.submit(
            OperationType.BULK_UPDATE,
            ["main"],
            CHANGE,
            user_id="alice",
            metadata={"repository": "org/repo"},
            auto_start=False,
        )
        record = await orchestrator.get_operation(op_id)

        assert record.user_id == "alice"
        assert record.client_key == "alice"
        assert record.metadata == {"repository": "org/repo"}
        assert record.options == orchestrator.default_options


class TestProcessing:
    @pytest.mark.asyncio
    async def test_start_runs_pending_operation(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        op_id = await orchestrator.submit("bulk_update", ["main"], CHANGE, auto_start=False)

        await orchestrator.start(op_id)
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_double_start_is_rejected(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        op_id = await orchestrator.submit("bulk_update", ["main"], CHANGE, auto_start=False)

        await orchestrator.start(op_id)
        with pytest.raises(OperationAlreadyStartedError):
            await orchestrator.start(op_id)

        await orchestrator.wait(op_id, timeout=5)
        with pytest.raises(OperationAlreadyStartedError):
            await orchestrator.start(op_id)

    @pytest.mark.asyncio
    async def test_start_unknown_operation(self, make_orchestrator) -> None:
        with pytest.raises(OperationNotFoundError):
            await make_orchestrator().start("missing")

    @pytest.mark.asyncio
    async def test_live_record_shows_current_target(self, make_orchestrator) -> None:
        gate = Gate()
        orchestrator = make_orchestrator(gate)
        op_id = await orchestrator.submit(
            "bulk_update", ["main", "dev"], CHANGE, options=BulkOptions(concurrency=1)
        )

        async def started() -> bool:
            return bool(gate.started)

        await wait_until(started)
        record = await orchestrator.get_operation(op_id)
        assert record.status is OperationStatus.IN_PROGRESS
        assert record.current_target == "main"
        assert record.pending_count == 2
        assert orchestrator.is_running(op_id)

        gate.release.set()
        await orchestrator.wait(op_id, timeout=5)
        assert not orchestrator.is_running(op_id)

    @pytest.mark.asyncio
    async def test_committed_ref_shapes(self, make_orchestrator) -> None:
        refs = {
            "a": "sha-a",
            "b": ApplyResult(committed_ref="sha-b"),
            "c": {"commit_sha": "sha-c"},
            "d": None,
        }

        async def apply(target: str, change: dict[str, Any]):
            return refs[target]

        orchestrator = make_orchestrator(apply)
        op_id = await orchestrator.submit("bulk_commit", list(refs), CHANGE)
        record = await orchestrator.wait(op_id, timeout=5)

        assert {r.target: r.outcome.committed_ref for r in record.results} == {
            "a": "sha-a",
            "b": "sha-b",
            "c": "sha-c",
            "d": None,
        }

    @pytest.mark.asyncio
    async def test_failure_code_taken_from_exception(self, make_orchestrator) -> None:
        class ConflictError(Exception):
            code = "merge_conflict"

        async def apply(target: str, change: dict[str, Any]) -> str:
            raise ConflictError("branch diverged")

        orchestrator = make_orchestrator(apply)
        op_id = await orchestrator.submit("bulk_update", ["main"], CHANGE)
        record = await orchestrator.wait(op_id, timeout=5)

        outcome = record.results[0].outcome
        assert outcome.code == "merge_conflict"
        assert outcome.message == "branch diverged"

    @pytest.mark.asyncio
    async def test_apply_gets_private_copy_of_change(self, make_orchestrator) -> None:
        async def apply(target: str, change: dict[str, Any]) -> str:
            change["content"] = "tampered"
            return target

        orchestrator = make_orchestrator(apply)
        op_id = await orchestrator.submit("bulk_update", ["a", "b"], CHANGE)
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.change == CHANGE

    @pytest.mark.asyncio
    async def test_deadline_settles_unstarted_targets_as_timeout(self, make_orchestrator) -> None:
        clock = FakeClock()
        applied: list[str] = []

        async def slow_apply(target: str, change: dict[str, Any]) -> str:
            applied.append(target)
            clock.now += 6
            return target

        orchestrator = make_orchestrator(slow_apply, clock=clock)
        op_id = await orchestrator.submit(
            "bulk_update",
            ["t1", "t2", "t3", "t4"],
            CHANGE,
            options=BulkOptions(
                concurrency=1, retries=2, retry_delay_seconds=0, timeout_seconds=10
            ),
        )
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.TIMEOUT
        assert applied == ["t1", "t2"]
        assert record.successful_count == 2
        assert record.failed_count == 2
        for target in ("t3", "t4"):
            result = record.result_for(target)
            assert result.outcome.code == "operation_timeout"
            assert result.attempts == 1
        assert record.progress_percentage == 100.0

    @pytest.mark.asyncio
    async def test_crash_marks_record_failed(self, make_orchestrator, caplog) -> None:
        executor = MagicMock()
        executor.run = AsyncMock(side_effect=RuntimeError("executor exploded"))
        orchestrator = make_orchestrator(executor=executor)

        op_id = await orchestrator.submit("bulk_update", ["main"], CHANGE)
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.FAILED
        assert record.error_message == "Internal error: executor exploded"
        assert record.summary.total == 1
        assert record.summary.successful == 0
        assert record.completed_at is not None
        assert any("crashed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_transient_store_failures_are_retried(self, make_orchestrator) -> None:
        store = FlakyStore(failures=2)
        orchestrator = make_orchestrator(store=store, persist_retries=3)

        op_id = await orchestrator.submit("bulk_update", ["main", "dev"], CHANGE)
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.COMPLETED
        assert record.successful_count == 2
        assert store.save_calls > 2

    @pytest.mark.asyncio
    async def test_audit_entry_per_target(self, make_orchestrator) -> None:
        sink = ListSink()
        apply, _ = failing_for("dev")
        orchestrator = make_orchestrator(apply, audit_sink=sink)

        op_id = await orchestrator.submit(
            "bulk_update", ["main", "dev"], CHANGE, user_id="alice"
        )
        await orchestrator.wait(op_id, timeout=5)

        by_target = {e.target: e for e in sink.entries}
        assert set(by_target) == {"main", "dev"}
        assert by_target["main"].outcome == "success"
        assert by_target["main"].committed_ref == "sha-main"
        assert by_target["dev"].outcome == "failure"
        assert by_target["dev"].committed_ref is None
        assert all(e.operation_id == op_id and e.user_id == "alice" for e in sink.entries)

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_operation(self, make_orchestrator) -> None:
        sink = MagicMock()
        sink.record = AsyncMock(side_effect=RuntimeError("audit db down"))
        orchestrator = make_orchestrator(audit_sink=sink)

        op_id = await orchestrator.submit("bulk_update", ["main", "dev"], CHANGE)
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.COMPLETED
        assert sink.record.await_count == 2

    @pytest.mark.asyncio
    async def test_slow_audit_sink_does_not_hold_terminal_status(self, make_orchestrator) -> None:
        sink = HangingSink()
        orchestrator = make_orchestrator(audit_sink=sink, audit_timeout=10)

        op_id = await orchestrator.submit("bulk_update", ["main", "dev"], CHANGE)

        async def finished() -> bool:
            record = await orchestrator.get_operation(op_id)
            return record.status is OperationStatus.COMPLETED

        await wait_until(finished)
        assert sink.started == 2
        assert sink.entries == []

        sink.release.set()
        record = await orchestrator.wait(op_id, timeout=5)
        assert record.status is OperationStatus.COMPLETED
        assert {e.target for e in sink.entries} == {"main", "dev"}

    @pytest.mark.asyncio
    async def test_hung_audit_sink_is_timed_out(self, make_orchestrator, caplog) -> None:
        sink = HangingSink()
        orchestrator = make_orchestrator(audit_sink=sink, audit_timeout=0.05)

        op_id = await orchestrator.submit("bulk_update", ["main", "dev"], CHANGE)
        record = await orchestrator.wait(op_id, timeout=5)

        assert record.status is OperationStatus.COMPLETED
        assert record.pending_count == 0
        assert sink.cancelled == 2
        assert not orchestrator.is_running(op_id)
        assert any("Audit record timed out" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_shutdown_drops_unfinished_audits(self, make_orchestrator) -> None:
        sink = HangingSink()
        orchestrator = make_orchestrator(audit_sink=sink, audit_timeout=10)
        op_id = await orchestrator.submit("bulk_update", ["main"], CHANGE)

        async def finished_with_audit_pending() -> bool:
            record = await orchestrator.get_operation(op_id)
            return sink.started == 1 and record.status is OperationStatus.COMPLETED

        await wait_until(finished_with_audit_pending)
        await orchestrator.shutdown()

        assert sink.cancelled == 1
        assert not orchestrator.is_running(op_id)
        record = await orchestrator.get_operation(op_id)
        assert record.status is OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_wait_timeout_leaves_processing_running(self, make_orchestrator) -> None:
        gate = Gate()
        orchestrator = make_orchestrator(gate)
        op_id = await orchestrator.submit("bulk_update", ["main"], CHANGE)

        with pytest.raises(asyncio.TimeoutError):
            await orchestrator.wait(op_id, timeout=0.05)

        gate.release.set()
        record = await orchestrator.wait(op_id, timeout=5)
        assert record.status is OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_tasks(self, make_orchestrator) -> None:
        gate = Gate()
        orchestrator = make_orchestrator(gate)
        op_id = await orchestrator.submit("bulk_update", ["main"], CHANGE)

        async def started() -> bool:
            return bool(gate.started)

        await wait_until(started)
        await orchestrator.shutdown()

        assert not orchestrator.is_running(op_id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_active_and_user_operations(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        pending = await orchestrator.submit(
            "bulk_update", ["a"], CHANGE, user_id="alice", auto_start=False
        )
        done = await orchestrator.submit("bulk_update", ["a"], CHANGE, user_id="alice")
        await orchestrator.wait(done, timeout=5)
        await orchestrator.submit("bulk_sync", ["a"], CHANGE, user_id="bob", auto_start=False)

        active = await orchestrator.get_active_operations()
        assert pending in {r.id for r in active}
        assert done not in {r.id for r in active}

        alice = await orchestrator.get_user_operations("alice")
        assert {r.id for r in alice} == {pending, done}
        assert len(await orchestrator.get_user_operations("alice", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_list_operations_filters_and_paginates(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        ids = [
            await orchestrator.submit("bulk_update", ["a"], CHANGE, auto_start=False)
            for _ in range(5)
        ]
        await orchestrator.submit("bulk_sync", ["a"], CHANGE, auto_start=False)

        page = await orchestrator.list_operations(
            OperationFilters(operation_type=OperationType.BULK_UPDATE, limit=2, offset=1)
        )

        assert page.total == 5
        assert len(page.records) == 2
        assert {r.id for r in page.records} <= set(ids)

    @pytest.mark.asyncio
    async def test_statistics(self, make_orchestrator) -> None:
        apply, _ = failing_for("bad")
        orchestrator = make_orchestrator(apply)
        start = utc_now() - timedelta(minutes=1)

        ok = await orchestrator.submit("bulk_update", ["a", "b"], CHANGE, user_id="alice")
        mixed = await orchestrator.submit("bulk_commit", ["a", "bad"], CHANGE, user_id="alice")
        await orchestrator.wait(ok, timeout=5)
        await orchestrator.wait(mixed, timeout=5)
        await orchestrator.submit("bulk_sync", ["a"], CHANGE, user_id="bob", auto_start=False)

        stats = await orchestrator.get_statistics(start, utc_now() + timedelta(minutes=1))

        assert stats.total_operations == 3
        assert stats.by_status == {"completed": 1, "partial": 1, "pending": 1}
        assert stats.by_type == {"bulk_update": 1, "bulk_commit": 1, "bulk_sync": 1}
        assert stats.avg_success_rate == 75.0
        assert stats.total_targets_updated == 3

        alice = await orchestrator.get_statistics(
            start, utc_now() + timedelta(minutes=1), user_id="alice"
        )
        assert alice.total_operations == 2
        assert alice.to_dict()["by_type"] == {"bulk_update": 1, "bulk_commit": 1}

    @pytest.mark.asyncio
    async def test_get_operation_unknown_returns_none(self, make_orchestrator) -> None:
        assert await make_orchestrator().get_operation("nope") is None
        assert await make_orchestrator().wait("nope") is None
