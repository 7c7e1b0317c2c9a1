"""Bounded-concurrency task runner with per-unit retry."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Iterable, Sequence, TypeVar

from bulk_orchestrator.errors import InvalidConcurrencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")
ItemT = TypeVar("ItemT")

ProgressCallback = Callable[[int, int, list[str]], "Awaitable[None] | None"]
CompleteCallback = Callable[["UnitResult[Any]"], "Awaitable[None] | None"]
StartCallback = Callable[[str], "Awaitable[None] | None"]
RetryPredicate = Callable[[BaseException], bool]


@dataclass(frozen=True)
class Unit(Generic[T]):
    id: str
    action: Callable[[], Awaitable[T]]


class UnitStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class UnitResult(Generic[T]):
    id: str
    status: UnitStatus
    attempts: int
    duration_ms: float
    value: T | None = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is UnitStatus.SUCCESS

    @property
    def retries(self) -> int:
        return self.attempts - 1

    @property
    def error_message(self) -> str | None:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__


class BoundedExecutor:
    """Worker pool running at most ``concurrency`` units at a time.

    A worker picks the next queued unit as soon as its current one settles,
    so a fast unit never waits on a slow sibling. Each unit gets
    ``retries + 1`` attempts; the sleep before retry ``k`` is
    ``retry_delay * k``.

    Knows nothing about operations or persistence: callers supply opaque
    actions and observe outcomes through the callbacks.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        units: Iterable[Unit[T]],
        concurrency: int,
        retries: int = 0,
        retry_delay: float = 1.0,
        on_progress: ProgressCallback | None = None,
        on_unit_complete: CompleteCallback | None = None,
        on_unit_start: StartCallback | None = None,
        should_retry: RetryPredicate | None = None,
    ) -> list[UnitResult[T]]:
        if concurrency < 1:
            raise InvalidConcurrencyError(f"concurrency must be at least 1, got {concurrency}")
        if retries < 0:
            raise ValueError(f"retries must be >= 0, got {retries}")

        pending = list(units)
        total = len(pending)
        if total == 0:
            return []

        queue: asyncio.Queue[Unit[T]] = asyncio.Queue()
        for unit in pending:
            queue.put_nowait(unit)

        results: list[UnitResult[T]] = []
        running: list[str] = []

        async def worker() -> None:
            while True:
                try:
                    unit = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                running.append(unit.id)
                await self._notify(on_unit_start, unit.id)

                result = await self._execute(unit, retries, retry_delay, should_retry)

                running.remove(unit.id)
                results.append(result)
                await self._notify(on_unit_complete, result)
                await self._notify(on_progress, len(results), total, list(running))

        workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, total))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        return results

    async def _execute(
        self,
        unit: Unit[T],
        retries: int,
        retry_delay: float,
        should_retry: RetryPredicate | None,
    ) -> UnitResult[T]:
        started = self._clock()
        attempt = 0
        while True:
            attempt += 1
            try:
                value = await unit.action()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                retryable = should_retry is None or should_retry(exc)
                if attempt <= retries and retryable:
                    logger.warning(
                        "Unit %s failed, retrying (%d/%d): %s", unit.id, attempt, retries, exc
                    )
                    await self._sleep(retry_delay * attempt)
                    continue
                return UnitResult(
                    id=unit.id,
                    status=UnitStatus.FAILURE,
                    attempts=attempt,
                    duration_ms=self._elapsed_ms(started),
                    error=exc,
                )
            return UnitResult(
                id=unit.id,
                status=UnitStatus.SUCCESS,
                attempts=attempt,
                duration_ms=self._elapsed_ms(started),
                value=value,
            )

    def _elapsed_ms(self, started: float) -> float:
        return round((self._clock() - started) * 1000, 3)

    @staticmethod
    async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception:
            # Observers never get to drop or re-run a unit.
            logger.exception("Executor callback %r failed", callback)


async def run_batch(
    processor: Callable[[ItemT, int], Awaitable[T]],
    items: Sequence[ItemT],
    *,
    concurrency: int = 5,
    executor: BoundedExecutor | None = None,
    **options: Any,
) -> list[UnitResult[T]]:
    """Run ``processor(item, index)`` for every item; unit ids are the indexes."""

    def bind(item: ItemT, index: int) -> Callable[[], Awaitable[T]]:
        return lambda: processor(item, index)

    units = [Unit(id=str(index), action=bind(item, index)) for index, item in enumerate(items)]
    return await (executor or BoundedExecutor()).run(units, concurrency, **options)
