from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Callable

import pytest

from bulk_orchestrator.config import _load_settings_cached
from bulk_orchestrator.models import BulkOptions
from bulk_orchestrator.orchestrator import Orchestrator
from bulk_orchestrator.ratelimit import LimiterPolicy, RateGate
from bulk_orchestrator.storage import InMemoryOperationStore


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> None:
    _load_settings_cached.cache_clear()
    yield
    _load_settings_cached.cache_clear()


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


def make_policies(bulk: int = 1000, sync: int = 1000, general: int = 1000) -> list[LimiterPolicy]:
    return [
        LimiterPolicy(name="general", max_requests=general, window_seconds=60),
        LimiterPolicy(
            name="bulk",
            max_requests=bulk,
            window_seconds=60,
            message="Too many bulk operations. Please wait before starting another.",
        ),
        LimiterPolicy(name="sync", max_requests=sync, window_seconds=60),
    ]


async def ok_apply(target: str, change: dict[str, Any]) -> str:
    return f"sha-{target}"


@pytest.fixture
def store() -> InMemoryOperationStore:
    return InMemoryOperationStore()


@pytest.fixture
def make_orchestrator(store: InMemoryOperationStore) -> Callable[..., Orchestrator]:
    """Orchestrator factory over the shared in-memory store with generous limits."""

    def factory(apply_fn=ok_apply, *, gate: RateGate | None = None, **kwargs: Any) -> Orchestrator:
        kwargs.setdefault("default_options", BulkOptions(retry_delay_seconds=0))
        kwargs.setdefault("persist_retry_delay", 0)
        return Orchestrator(
            kwargs.pop("store", store),
            gate or RateGate(make_policies()),
            {"bulk_update": apply_fn, "bulk_commit": apply_fn, "bulk_sync": apply_fn},
            **kwargs,
        )

    return factory
