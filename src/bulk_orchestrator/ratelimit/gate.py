"""Fixed-window admission control keyed by (limiter, client key)."""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from bulk_orchestrator.ratelimit.policy import LimiterPolicy

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("bulk_orchestrator.security")

RejectHook = Callable[["RateLimitEvent"], "Awaitable[None] | None"]


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    reset_at: float
    limit: int
    retry_after: int

    @classmethod
    def fail_open(cls, now: float) -> "RateDecision":
        return cls(allowed=True, remaining=0, reset_at=now, limit=0, retry_after=0)


@dataclass(frozen=True)
class RateLimitEvent:
    """Security event emitted for every rejected admission."""

    limiter: str
    key: str
    count: int
    limit: int
    reset_at: float


class RateGate:
    """Per-limiter fixed-window counters.

    The request that crosses ``max_requests`` is itself rejected and still
    counted. Internal failures admit the request (fail-open) so a limiter
    fault can never deny the whole service.

    State is process-local; every orchestrator instance keeps its own counts.
    """

    def __init__(
        self,
        policies: Iterable[LimiterPolicy],
        *,
        clock: Callable[[], float] = time.time,
        on_reject: RejectHook | None = None,
        cleanup_interval_seconds: float = 60.0,
    ) -> None:
        self._policies: dict[str, LimiterPolicy] = {p.name: p for p in policies}
        self._entries: dict[str, dict[str, RateLimitEntry]] = {
            name: {} for name in self._policies
        }
        self._clock = clock
        self._on_reject = on_reject
        self._cleanup_interval = cleanup_interval_seconds
        self._last_cleanup = 0.0
        self._lock = asyncio.Lock()

    def policy(self, limiter_name: str) -> LimiterPolicy | None:
        return self._policies.get(limiter_name)

    async def admit(self, limiter_name: str, client_key: str) -> RateDecision:
        try:
            decision, event = await self._admit(limiter_name, client_key)
        except Exception:
            logger.exception(
                "Rate gate failure for limiter=%s key=%s; admitting request",
                limiter_name,
                client_key,
            )
            return RateDecision.fail_open(self._safe_now())

        if event is not None:
            await self._emit_rejection(event)
        return decision

    async def _admit(
        self, limiter_name: str, client_key: str
    ) -> tuple[RateDecision, RateLimitEvent | None]:
        policy = self._policies.get(limiter_name)
        if policy is None:
            logger.warning("Unknown limiter %r; admitting request", limiter_name)
            return RateDecision.fail_open(self._clock()), None

        async with self._lock:
            now = self._clock()
            if now - self._last_cleanup >= self._cleanup_interval:
                self._purge_expired_unlocked(now)
                self._last_cleanup = now

            store = self._entries[limiter_name]
            entry = store.get(client_key)
            if entry is None or now >= entry.reset_at:
                entry = RateLimitEntry(count=1, reset_at=now + policy.window_seconds)
                store[client_key] = entry
            else:
                entry.count += 1

            allowed = entry.count <= policy.max_requests
            decision = RateDecision(
                allowed=allowed,
                remaining=max(0, policy.max_requests - entry.count),
                reset_at=entry.reset_at,
                limit=policy.max_requests,
                retry_after=max(0, math.ceil(entry.reset_at - now)),
            )
            event = None
            if not allowed:
                event = RateLimitEvent(
                    limiter=limiter_name,
                    key=client_key,
                    count=entry.count,
                    limit=policy.max_requests,
                    reset_at=entry.reset_at,
                )
            return decision, event

    async def _emit_rejection(self, event: RateLimitEvent) -> None:
        security_logger.warning(
            "rate_limit_exceeded limiter=%s key=%s count=%d limit=%d",
            event.limiter,
            event.key,
            event.count,
            event.limit,
        )
        if self._on_reject is None:
            return
        try:
            outcome = self._on_reject(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Rate limit reject hook failed for limiter=%s", event.limiter)

    def _purge_expired_unlocked(self, now: float) -> None:
        """Drop entries whose window has elapsed. Must be called under lock."""
        for store in self._entries.values():
            expired = [key for key, entry in store.items() if entry.reset_at <= now]
            for key in expired:
                del store[key]

    def entry_count(self, limiter_name: str) -> int:
        return len(self._entries.get(limiter_name, {}))

    def reset(self) -> None:
        for store in self._entries.values():
            store.clear()

    def _safe_now(self) -> float:
        try:
            return self._clock()
        except Exception:
            return time.time()
