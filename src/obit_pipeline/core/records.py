"""
Record model and state enums.

A record moves through two independent state columns:

    status:        pending ──────────────► published
                      │                       │
                      └──► failed             └──► pending (audit requeue)

    audit_status:  NULL ─► needs_audit ─► pass | flagged | admin_review

``status = pending`` with an empty rewritten text means "waiting for the
rewrite stage"; ``status = pending`` with ``audit_status = needs_audit``
means "waiting for the audit stage".
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from obit_pipeline.core.timestamps import from_iso8601


class RecordStatus(str, Enum):
    """Publication state."""

    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class AuditStatus(str, Enum):
    """Audit state."""

    NEEDS_AUDIT = "needs_audit"
    PASS = "pass"
    FLAGGED = "flagged"
    ADMIN_REVIEW = "admin_review"


@dataclass(frozen=True)
class QuarantineMarker:
    """Explicit quarantine state of a record.

    ``quarantined_at`` is None when the record is not currently parked;
    ``cycles`` counts every quarantine the record has ever entered.
    """

    quarantined_at: datetime | None = None
    cycles: int = 0


@dataclass
class Record:
    """One biographical record as stored in ``pipeline_records``."""

    id: int
    name: str = ""
    original_text: str | None = None
    date_of_death: str | None = None
    date_of_birth: str | None = None
    age: int | None = None
    location: str | None = None
    organization: str | None = None
    rewritten_text: str | None = None
    rewritten_hash: str | None = None
    status: RecordStatus = RecordStatus.PENDING
    audit_status: AuditStatus | None = None
    audit_issues: list[dict[str, Any]] = field(default_factory=list)
    audit_reason: str | None = None
    audit_confidence: float | None = None
    last_audited_hash: str | None = None
    last_audit_outcome: str | None = None
    last_audit_at: datetime | None = None
    requeue_count: int = 0
    quarantine: QuarantineMarker = field(default_factory=QuarantineMarker)
    suppressed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_rewrite(self) -> bool:
        return bool(self.rewritten_text and self.rewritten_text.strip())

    @property
    def is_suppressed(self) -> bool:
        return self.suppressed_at is not None

    @classmethod
    def from_row(cls, row: Any) -> Record:
        """Build a Record from a ``sqlite3.Row`` (or any mapping)."""
        data = dict(row)
        issues_raw = data.get("audit_issues")
        try:
            issues = json.loads(issues_raw) if issues_raw else []
        except json.JSONDecodeError:
            issues = [{"type": "quality", "severity": "info", "detail": issues_raw}]
        audit_status = data.get("audit_status")
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            original_text=data.get("original_text"),
            date_of_death=data.get("date_of_death"),
            date_of_birth=data.get("date_of_birth"),
            age=data.get("age"),
            location=data.get("location"),
            organization=data.get("organization"),
            rewritten_text=data.get("rewritten_text"),
            rewritten_hash=data.get("rewritten_hash"),
            status=RecordStatus(data.get("status") or RecordStatus.PENDING.value),
            audit_status=AuditStatus(audit_status) if audit_status else None,
            audit_issues=issues,
            audit_reason=data.get("audit_reason"),
            audit_confidence=data.get("audit_confidence"),
            last_audited_hash=data.get("last_audited_hash"),
            last_audit_outcome=data.get("last_audit_outcome"),
            last_audit_at=from_iso8601(data.get("last_audit_at")),
            requeue_count=data.get("requeue_count") or 0,
            quarantine=QuarantineMarker(
                quarantined_at=from_iso8601(data.get("quarantined_at")),
                cycles=data.get("quarantine_cycles") or 0,
            ),
            suppressed_at=from_iso8601(data.get("suppressed_at")),
            created_at=from_iso8601(data.get("created_at")),
            updated_at=from_iso8601(data.get("updated_at")),
        )


__all__ = ["RecordStatus", "AuditStatus", "QuarantineMarker", "Record"]
