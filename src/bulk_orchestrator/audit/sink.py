"""Audit sinks receiving one entry per settled target."""

from __future__ import annotations

import abc
import asyncio
import logging
import re
from typing import Iterable

from bulk_orchestrator.audit.models import AuditEntry
from bulk_orchestrator.logging_utils import AUDIT_LOGGER_NAME
from bulk_orchestrator.storage.sqlite import SqliteOperationStore

logger = logging.getLogger(__name__)

# Control character pattern for log injection prevention.
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


def _sanitize_log_value(value: str | None) -> str:
    """Replace control characters (newlines, tabs, etc.) to prevent log injection."""
    if value is None:
        return "-"
    return _CONTROL_CHAR_RE.sub("_", value)


class AuditSink(abc.ABC):
    @abc.abstractmethod
    async def record(self, entry: AuditEntry) -> None: ...


class LoggingAuditSink(AuditSink):
    """Writes one structured log line per entry."""

    def __init__(self, audit_logger: logging.Logger | None = None) -> None:
        self._logger = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)

    async def record(self, entry: AuditEntry) -> None:
        level = logging.INFO if entry.outcome == "success" else logging.WARNING
        self._logger.log(
            level,
            "AUDIT operation_id=%s type=%s target=%s outcome=%s user_id=%s ref=%s detail=%s",
            entry.operation_id,
            entry.operation_type,
            _sanitize_log_value(entry.target),
            entry.outcome,
            _sanitize_log_value(entry.user_id),
            _sanitize_log_value(entry.committed_ref),
            _sanitize_log_value(entry.detail),
        )


class SqliteAuditSink(AuditSink):
    """Persists entries in the ``audit_logs`` table next to the operation records."""

    def __init__(self, store: SqliteOperationStore) -> None:
        self._store = store

    async def record(self, entry: AuditEntry) -> None:
        await asyncio.to_thread(self._store.insert_audit_entry, entry)

    async def list_entries(self, operation_id: str) -> list[AuditEntry]:
        return await asyncio.to_thread(self._store.list_audit_entries, operation_id)


class CompositeAuditSink(AuditSink):
    """Fans an entry out to several sinks; one failing sink does not starve the others."""

    def __init__(self, sinks: Iterable[AuditSink]) -> None:
        self._sinks = list(sinks)

    async def record(self, entry: AuditEntry) -> None:
        failures: list[BaseException] = []
        for sink in self._sinks:
            try:
                await sink.record(entry)
            except Exception as exc:
                logger.warning("Audit sink %s failed: %s", type(sink).__name__, exc)
                failures.append(exc)
        if failures:
            raise failures[0]
