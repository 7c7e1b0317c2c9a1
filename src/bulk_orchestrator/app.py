"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from bulk_orchestrator.audit.sink import (
    AuditSink,
    CompositeAuditSink,
    LoggingAuditSink,
    SqliteAuditSink,
)
from bulk_orchestrator.config import Settings, load_settings
from bulk_orchestrator.models import BulkOptions, OperationType
from bulk_orchestrator.orchestrator import ApplyFn, Orchestrator
from bulk_orchestrator.ratelimit import RateGate, load_policies
from bulk_orchestrator.storage import InMemoryOperationStore, OperationStore, SqliteOperationStore


@dataclass
class AppContext:
    """Application-wide dependency container.

    Built once per process by ``build_app_context``; the HTTP layer and the
    entrypoint only ever talk to the orchestrator through it.
    """

    settings: Settings
    store: OperationStore
    gate: RateGate
    audit_sink: AuditSink
    orchestrator: Orchestrator

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        await self.store.close()


def build_store(settings: Settings) -> OperationStore:
    if settings.storage.backend == "sqlite":
        return SqliteOperationStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    return InMemoryOperationStore()


def build_app_context(
    apply_fns: Mapping[OperationType | str, ApplyFn],
    settings: Settings | None = None,
) -> AppContext:
    """Wire store, rate gate, audit sink and orchestrator from settings."""
    settings = settings or load_settings()
    store = build_store(settings)

    audit_sink: AuditSink = LoggingAuditSink()
    if isinstance(store, SqliteOperationStore):
        audit_sink = CompositeAuditSink([audit_sink, SqliteAuditSink(store)])

    gate = RateGate(
        load_policies(settings.rate_limit),
        cleanup_interval_seconds=settings.rate_limit.cleanup_interval_seconds,
    )
    execution = settings.execution
    orchestrator = Orchestrator(
        store,
        gate,
        apply_fns,
        audit_sink=audit_sink,
        default_options=BulkOptions.from_settings(execution),
        max_targets=execution.max_targets,
        persist_retries=execution.persist_retries,
        audit_timeout=execution.audit_timeout_seconds,
    )
    return AppContext(
        settings=settings,
        store=store,
        gate=gate,
        audit_sink=audit_sink,
        orchestrator=orchestrator,
    )
