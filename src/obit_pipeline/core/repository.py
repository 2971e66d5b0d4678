"""
Record repository.

Parameterized selection queries for both stages and a guarded single-row
update that is the pipeline's real mutual-exclusion boundary.

Manifesto:
    - **Omit vs NULL:** ``update(id, {"age": None})`` writes NULL; leaving
      ``age`` out of the mapping leaves the column untouched
    - **Guarded writes:** ``expect={"rewritten_hash": h}`` applies the
      update only if the row still matches what the stage read, so two
      overlapping invocations can never both win
    - **Suppression everywhere:** every selection excludes suppressed rows

Architecture:
    ::

        RewriteStage ──► select_for_rewrite ─┐
        AuditStage   ──► select_for_audit    ├─► pipeline_records
                     ──► select_stale_passed │
        both         ──► update(expect=...) ─┘

Tags:
    repository, sqlite, compare-and-swap, selection

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from obit_pipeline.core.errors import StorageError
from obit_pipeline.core.protocols import Connection
from obit_pipeline.core.records import AuditStatus, Record, RecordStatus
from obit_pipeline.core.schema import PIPELINE_TABLES
from obit_pipeline.core.timestamps import to_iso8601, utc_now

logger = logging.getLogger(__name__)

TABLE = PIPELINE_TABLES["records"]

RECORD_COLUMNS = frozenset(
    {
        "name",
        "original_text",
        "date_of_death",
        "date_of_birth",
        "age",
        "location",
        "organization",
        "rewritten_text",
        "rewritten_hash",
        "status",
        "audit_status",
        "audit_issues",
        "audit_reason",
        "audit_confidence",
        "last_audited_hash",
        "last_audit_outcome",
        "last_audit_at",
        "requeue_count",
        "quarantined_at",
        "quarantine_cycles",
        "suppressed_at",
    }
)

_NOT_SUPPRESSED = "suppressed_at IS NULL"
_HAS_ORIGINAL = "TRIM(COALESCE(original_text, '')) != ''"
_HAS_REWRITE = "TRIM(COALESCE(rewritten_text, '')) != ''"
_NO_REWRITE = "TRIM(COALESCE(rewritten_text, '')) = ''"


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso8601(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


class RecordRepository:
    """Data access for ``pipeline_records``."""

    def __init__(self, conn: Connection, clock: Callable[[], datetime] = utc_now):
        self.conn = conn
        self._clock = clock

    def _execute(
        self,
        operation: str,
        sql: str,
        params: tuple = (),
        record_id: int | None = None,
    ) -> Any:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StorageError(f"record store {operation} failed: {e}", cause=e).with_context(
                operation=operation, record_id=record_id
            ) from e

    def _fetch_records(self, operation: str, sql: str, params: tuple = ()) -> list[Record]:
        self._execute(operation, sql, params)
        return [Record.from_row(row) for row in self.conn.fetchall()]

    def _scalar(self, operation: str, sql: str, params: tuple = ()) -> int:
        self._execute(operation, sql, params)
        row = self.conn.fetchone()
        return int(row[0] or 0) if row else 0

    # === Writes ===

    def insert(self, name: str, original_text: str, **fields: Any) -> int:
        """Insert a new pending record (used by ingestion and tests)."""
        unknown = set(fields) - RECORD_COLUMNS - {"created_at"}
        if unknown:
            raise ValueError(f"Unknown record columns: {sorted(unknown)}")
        values = {
            "name": name,
            "original_text": original_text,
            "status": RecordStatus.PENDING,
            **fields,
        }
        values.setdefault("created_at", self._clock())
        columns = list(values)
        placeholders = ", ".join("?" for _ in columns)
        cursor = self._execute(
            "insert",
            f"INSERT INTO {TABLE} ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(_to_db(values[c]) for c in columns),
        )
        self.conn.commit()
        return int(cursor.lastrowid)

    def update(
        self,
        record_id: int,
        changes: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> bool:
        """Apply ``changes`` to one record.

        Keys absent from ``changes`` are left untouched; a value of ``None``
        writes NULL. ``expect`` maps column → value the row must still have
        (``None`` means IS NULL). Returns False when the guard did not match.
        """
        unknown = (set(changes) | set(expect or {})) - RECORD_COLUMNS
        if unknown:
            raise ValueError(f"Unknown record columns: {sorted(unknown)}")
        if not changes:
            return True

        assignments = [f"{column} = ?" for column in changes]
        params: list[Any] = [_to_db(v) for v in changes.values()]
        assignments.append("updated_at = ?")
        params.append(to_iso8601(self._clock()))

        where = ["id = ?"]
        params.append(record_id)
        for column, value in (expect or {}).items():
            if value is None:
                where.append(f"{column} IS NULL")
            else:
                where.append(f"{column} = ?")
                params.append(_to_db(value))

        cursor = self._execute(
            "update",
            f"UPDATE {TABLE} SET {', '.join(assignments)} WHERE {' AND '.join(where)}",
            tuple(params),
            record_id=record_id,
        )
        self.conn.commit()
        applied = cursor.rowcount > 0
        if not applied:
            logger.info("records.update_skipped id=%d guard=%s", record_id, sorted(expect or {}))
        return applied

    def suppress(self, record_id: int) -> bool:
        """Set the legal-takedown flag. The pipeline never clears it."""
        return self.update(record_id, {"suppressed_at": self._clock()})

    # === Reads ===

    def get(self, record_id: int) -> Record | None:
        self._execute("get", f"SELECT * FROM {TABLE} WHERE id = ?", (record_id,), record_id)
        row = self.conn.fetchone()
        return Record.from_row(row) if row else None

    def _quarantine_cutoff(self, quarantine_seconds: int) -> str:
        return to_iso8601(self._clock() - timedelta(seconds=quarantine_seconds))

    def select_for_rewrite(self, limit: int, quarantine_seconds: int) -> list[Record]:
        """Pending records with source text and no rewrite, newest first.

        Records inside an active quarantine window are skipped.
        """
        return self._fetch_records(
            "select_for_rewrite",
            f"""
            SELECT * FROM {TABLE}
            WHERE status = ?
              AND {_NOT_SUPPRESSED}
              AND {_HAS_ORIGINAL}
              AND {_NO_REWRITE}
              AND (quarantined_at IS NULL OR quarantined_at <= ?)
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (RecordStatus.PENDING.value, self._quarantine_cutoff(quarantine_seconds), limit),
        )

    def count_rewrite_queue(self, quarantine_seconds: int, *, include_quarantined: bool = False) -> int:
        """Number of records the rewrite stage could still pick up."""
        sql = f"""
            SELECT COUNT(*) FROM {TABLE}
            WHERE status = ?
              AND {_NOT_SUPPRESSED}
              AND {_HAS_ORIGINAL}
              AND {_NO_REWRITE}
        """
        params: tuple = (RecordStatus.PENDING.value,)
        if not include_quarantined:
            sql += " AND (quarantined_at IS NULL OR quarantined_at <= ?)"
            params += (self._quarantine_cutoff(quarantine_seconds),)
        return self._scalar("count_rewrite_queue", sql, params)

    def select_for_audit(self, limit: int) -> list[Record]:
        """Records awaiting audit.

        Never-audited (``needs_audit``) records come first, then records
        whose rewritten hash diverged from the last audited hash; newest id
        first within each group. Records held for admin review and failed
        records are never selected.
        """
        return self._fetch_records(
            "select_for_audit",
            f"""
            SELECT *,
                CASE WHEN audit_status = ? THEN 0 ELSE 1 END AS audit_priority
            FROM {TABLE}
            WHERE {_NOT_SUPPRESSED}
              AND {_HAS_ORIGINAL}
              AND {_HAS_REWRITE}
              AND status != ?
              AND COALESCE(audit_status, '') != ?
              AND (
                    audit_status = ?
                 OR last_audited_hash IS NULL
                 OR rewritten_hash IS NULL
                 OR rewritten_hash != last_audited_hash
              )
            ORDER BY audit_priority ASC, id DESC
            LIMIT ?
            """,
            (
                AuditStatus.NEEDS_AUDIT.value,
                RecordStatus.FAILED.value,
                AuditStatus.ADMIN_REVIEW.value,
                AuditStatus.NEEDS_AUDIT.value,
                limit,
            ),
        )

    def select_stale_passed(self, limit: int, stale_days: int) -> list[Record]:
        """Oldest published records whose last passing audit is stale."""
        cutoff = to_iso8601(self._clock() - timedelta(days=stale_days))
        return self._fetch_records(
            "select_stale_passed",
            f"""
            SELECT * FROM {TABLE}
            WHERE {_NOT_SUPPRESSED}
              AND {_HAS_ORIGINAL}
              AND {_HAS_REWRITE}
              AND status = ?
              AND audit_status = ?
              AND last_audit_at IS NOT NULL
              AND last_audit_at < ?
            ORDER BY last_audit_at ASC, id ASC
            LIMIT ?
            """,
            (RecordStatus.PUBLISHED.value, AuditStatus.PASS.value, cutoff, limit),
        )

    def count_needs_audit(self) -> int:
        return self._scalar(
            "count_needs_audit",
            f"""
            SELECT COUNT(*) FROM {TABLE}
            WHERE audit_status = ? AND {_NOT_SUPPRESSED} AND {_HAS_REWRITE}
            """,
            (AuditStatus.NEEDS_AUDIT.value,),
        )

    def get_flagged(self, limit: int = 50) -> list[Record]:
        """Records flagged by the audit or held for admin review, most recent first."""
        return self._fetch_records(
            "get_flagged",
            f"""
            SELECT * FROM {TABLE}
            WHERE audit_status IN (?, ?)
            ORDER BY last_audit_at DESC, id DESC
            LIMIT ?
            """,
            (AuditStatus.FLAGGED.value, AuditStatus.ADMIN_REVIEW.value, limit),
        )

    def queue_stats(self, quarantine_seconds: int) -> dict[str, Any]:
        """Counts for the operator status view."""
        total = self._scalar("stats", f"SELECT COUNT(*) FROM {TABLE}")
        published = self._scalar(
            "stats",
            f"SELECT COUNT(*) FROM {TABLE} WHERE status = ? AND {_NOT_SUPPRESSED}",
            (RecordStatus.PUBLISHED.value,),
        )
        failed = self._scalar(
            "stats", f"SELECT COUNT(*) FROM {TABLE} WHERE status = ?", (RecordStatus.FAILED.value,)
        )
        rewritten = self._scalar("stats", f"SELECT COUNT(*) FROM {TABLE} WHERE {_HAS_REWRITE}")
        held = self._scalar(
            "stats",
            f"SELECT COUNT(*) FROM {TABLE} WHERE audit_status = ?",
            (AuditStatus.ADMIN_REVIEW.value,),
        )
        suppressed = self._scalar(
            "stats", f"SELECT COUNT(*) FROM {TABLE} WHERE suppressed_at IS NOT NULL"
        )
        pending_rewrite = self.count_rewrite_queue(quarantine_seconds, include_quarantined=True)
        selectable = self.count_rewrite_queue(quarantine_seconds)
        return {
            "total": total,
            "rewritten": rewritten,
            "published": published,
            "failed": failed,
            "pending_rewrite": pending_rewrite,
            "quarantined": pending_rewrite - selectable,
            "needs_audit": self.count_needs_audit(),
            "admin_review": held,
            "suppressed": suppressed,
            "pct_rewritten": round(rewritten / total * 100, 1) if total else 0.0,
        }


__all__ = ["RecordRepository", "RECORD_COLUMNS"]
