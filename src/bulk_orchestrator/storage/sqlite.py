"""SQLite access layer for operation records and the audit trail."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

from bulk_orchestrator.audit.models import AuditEntry
from bulk_orchestrator.errors import StoreError
from bulk_orchestrator.models import OperationRecord, OperationStatus
from bulk_orchestrator.storage.base import OperationFilters, OperationPage, OperationStore
from bulk_orchestrator.utils.serialization import dumps
from bulk_orchestrator.utils.time import parse_iso

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]

_JSON_COLUMNS = ("targets", "change", "options", "results", "summary", "metadata")

_RECORD_COLUMNS = (
    "id",
    "operation_type",
    "status",
    "user_id",
    "client_key",
    "targets",
    "change",
    "options",
    "total_targets",
    "successful_count",
    "failed_count",
    "pending_count",
    "progress_percentage",
    "current_target",
    "results",
    "can_rollback",
    "summary",
    "metadata",
    "error_message",
    "created_at",
    "started_at",
    "completed_at",
)


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so text ordering matches time ordering."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _record_params(record: OperationRecord) -> dict[str, _SqlValue]:
    data = record.to_dict()
    params: dict[str, _SqlValue] = {}
    for column in _RECORD_COLUMNS:
        value = data[column]
        if column in _JSON_COLUMNS:
            params[column] = dumps(value) if value is not None else None
        elif column == "can_rollback":
            params[column] = int(bool(value))
        else:
            params[column] = value
    params["created_at"] = _ts(record.created_at)
    params["started_at"] = _ts(record.started_at)
    params["completed_at"] = _ts(record.completed_at)
    return params


def _row_to_record(row: sqlite3.Row) -> OperationRecord:
    data: dict[str, Any] = dict(row)
    for column in _JSON_COLUMNS:
        raw = data.get(column)
        data[column] = json.loads(raw) if raw else None
    data["can_rollback"] = bool(data.get("can_rollback"))
    return OperationRecord.from_dict(data)


class SqliteOperationStore(OperationStore):
    def __init__(self, path: str, wal: bool = True) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS bulk_operations (
                id TEXT PRIMARY KEY,
                operation_type TEXT NOT NULL,
                status TEXT NOT NULL,
                user_id TEXT,
                client_key TEXT,
                targets TEXT NOT NULL,
                change TEXT NOT NULL,
                options TEXT NOT NULL,
                total_targets INTEGER NOT NULL,
                successful_count INTEGER NOT NULL DEFAULT 0,
                failed_count INTEGER NOT NULL DEFAULT 0,
                pending_count INTEGER NOT NULL DEFAULT 0,
                progress_percentage REAL NOT NULL DEFAULT 0,
                current_target TEXT,
                results TEXT,
                can_rollback INTEGER NOT NULL DEFAULT 0,
                summary TEXT,
                metadata TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS audit_logs (
                entry_id TEXT PRIMARY KEY,
                operation_id TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                target TEXT NOT NULL,
                outcome TEXT NOT NULL,
                detail TEXT,
                user_id TEXT,
                committed_ref TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_bulk_operations_created_at
                ON bulk_operations(created_at);
            CREATE INDEX IF NOT EXISTS idx_bulk_operations_status_created_at
                ON bulk_operations(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_bulk_operations_user_id ON bulk_operations(user_id);
            CREATE INDEX IF NOT EXISTS idx_bulk_operations_type ON bulk_operations(operation_type);
            CREATE INDEX IF NOT EXISTS idx_audit_logs_operation_id ON audit_logs(operation_id);
            """
        )
        self._conn.commit()

    def execute(self, query: str, params: _SqlParams) -> int:
        with self._lock:
            if self._closed:
                raise StoreError("SQLite store is closed")
            cursor = self._conn.execute(query, params)
            self._conn.commit()
            return cursor.rowcount

    def fetch_one(self, query: str, params: _SqlParams) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def fetch_all(self, query: str, params: _SqlParams) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    # -- synchronous operations, run off the event loop via asyncio.to_thread --

    def create_sync(self, record: OperationRecord) -> None:
        columns = ", ".join(_RECORD_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in _RECORD_COLUMNS)
        try:
            self.execute(
                f"INSERT INTO bulk_operations ({columns}) VALUES ({placeholders})",
                _record_params(record),
            )
        except sqlite3.IntegrityError as exc:
            raise StoreError(f"Operation {record.id} already exists") from exc

    def get_sync(self, operation_id: str) -> OperationRecord | None:
        row = self.fetch_one("SELECT * FROM bulk_operations WHERE id = ?", (operation_id,))
        if row is None:
            return None
        return _row_to_record(row)

    def save_sync(self, record: OperationRecord) -> None:
        assignments = ", ".join(f"{c} = :{c}" for c in _RECORD_COLUMNS if c != "id")
        updated = self.execute(
            f"UPDATE bulk_operations SET {assignments} WHERE id = :id",
            _record_params(record),
        )
        if updated != 1:
            raise StoreError(f"Operation {record.id} does not exist")

    def claim_start_sync(self, operation_id: str, started_at: datetime) -> OperationRecord | None:
        """Conditional UPDATE so only one caller can win pending -> in_progress."""
        claimed = self.execute(
            "UPDATE bulk_operations SET status = ?, started_at = ? WHERE id = ? AND status = ?",
            (
                OperationStatus.IN_PROGRESS.value,
                _ts(started_at),
                operation_id,
                OperationStatus.PENDING.value,
            ),
        )
        if claimed != 1:
            return None
        return self.get_sync(operation_id)

    def cancel_pending_sync(self, operation_id: str, cancelled_at: datetime, reason: str) -> bool:
        cancelled = self.execute(
            (
                "UPDATE bulk_operations SET status = ?, completed_at = ?, error_message = ? "
                "WHERE id = ? AND status = ?"
            ),
            (
                OperationStatus.CANCELLED.value,
                _ts(cancelled_at),
                reason,
                operation_id,
                OperationStatus.PENDING.value,
            ),
        )
        return cancelled == 1

    def list_operations_sync(self, filters: OperationFilters) -> OperationPage:
        clauses: list[str] = []
        params: list[_SqlValue] = []
        if filters.user_id is not None:
            clauses.append("user_id = ?")
            params.append(filters.user_id)
        if filters.statuses:
            clauses.append(f"status IN ({','.join('?' for _ in filters.statuses)})")
            params.extend(status.value for status in filters.statuses)
        if filters.operation_type is not None:
            clauses.append("operation_type = ?")
            params.append(filters.operation_type.value)
        if filters.created_from is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(filters.created_from))
        if filters.created_to is not None:
            clauses.append("created_at <= ?")
            params.append(_ts(filters.created_to))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        count_row = self.fetch_one(f"SELECT COUNT(*) AS count FROM bulk_operations{where}", params)
        total = int(count_row["count"]) if count_row else 0

        query = f"SELECT * FROM bulk_operations{where} ORDER BY created_at DESC"
        page_params = list(params)
        if filters.limit is not None:
            query += " LIMIT ? OFFSET ?"
            page_params.extend([filters.limit, filters.offset])
        elif filters.offset:
            query += " LIMIT -1 OFFSET ?"
            page_params.append(filters.offset)
        rows = self.fetch_all(query, page_params)
        return OperationPage(records=[_row_to_record(row) for row in rows], total=total)

    def insert_audit_entry(self, entry: AuditEntry) -> None:
        self.execute(
            """
            INSERT INTO audit_logs (
                entry_id, operation_id, operation_type, target, outcome,
                detail, user_id, committed_ref, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.operation_id,
                entry.operation_type,
                entry.target,
                entry.outcome,
                entry.detail,
                entry.user_id,
                entry.committed_ref,
                _ts(entry.created_at),
            ),
        )

    def list_audit_entries(self, operation_id: str) -> list[AuditEntry]:
        rows = self.fetch_all(
            "SELECT * FROM audit_logs WHERE operation_id = ? ORDER BY created_at ASC",
            (operation_id,),
        )
        entries: list[AuditEntry] = []
        for row in rows:
            data = dict(row)
            created_at = parse_iso(data.pop("created_at"))
            entries.append(AuditEntry(created_at=created_at, **data))
        return entries

    # -- OperationStore --

    async def create(self, record: OperationRecord) -> None:
        await asyncio.to_thread(self.create_sync, record)

    async def get(self, operation_id: str) -> OperationRecord | None:
        return await asyncio.to_thread(self.get_sync, operation_id)

    async def save(self, record: OperationRecord) -> None:
        await asyncio.to_thread(self.save_sync, record)

    async def claim_start(self, operation_id: str, started_at: datetime) -> OperationRecord | None:
        return await asyncio.to_thread(self.claim_start_sync, operation_id, started_at)

    async def cancel_pending(self, operation_id: str, cancelled_at: datetime, reason: str) -> bool:
        return await asyncio.to_thread(self.cancel_pending_sync, operation_id, cancelled_at, reason)

    async def list_operations(self, filters: OperationFilters) -> OperationPage:
        return await asyncio.to_thread(self.list_operations_sync, filters)

    async def close(self) -> None:
        self.close_sync()

    def close_sync(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
