"""Audit trail records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from bulk_orchestrator.utils.time import utc_now


@dataclass(frozen=True)
class AuditEntry:
    operation_id: str
    operation_type: str
    target: str
    outcome: str
    detail: str
    user_id: str | None = None
    committed_ref: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    entry_id: str = field(default_factory=lambda: uuid4().hex)
