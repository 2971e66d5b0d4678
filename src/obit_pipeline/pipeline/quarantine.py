"""
Failure counting and quarantine for records that keep failing validation.

    hard validation failure
        │
        ▼
    failures += 1  (advisory counter, TTL 1h)
        │
        ├── failures < max_failures ──────────► VALIDATION_FAILED
        │
        ▼
    cycles = quarantine_cycles + 1
        ├── cycles < max_cycles ─► quarantined_at = now ─► QUARANTINED
        └── cycles = max_cycles ─► status=failed,
                                   audit_status=admin_review ─► RETIRED

A quarantined record drops out of rewrite selection until
``quarantine_seconds`` have passed, then becomes selectable again with its
cycle count kept. The cycle count never decreases.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from obit_pipeline.core.advisory import AdvisoryStore
from obit_pipeline.core.logging import get_logger
from obit_pipeline.core.records import AuditStatus, Record, RecordStatus
from obit_pipeline.core.repository import RecordRepository
from obit_pipeline.core.timestamps import utc_now
from obit_pipeline.pipeline.results import Outcome

logger = get_logger(__name__)


def failure_key(record_id: int) -> str:
    return f"rewrite:failures:{record_id}"


class QuarantinePolicy:
    """Applies the failure → quarantine → retire progression."""

    def __init__(
        self,
        repo: RecordRepository,
        advisory: AdvisoryStore,
        *,
        max_failures: int = 3,
        failure_ttl: int = 3600,
        max_cycles: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.advisory = advisory
        self.max_failures = max_failures
        self.failure_ttl = failure_ttl
        self.max_cycles = max_cycles
        self._clock = clock

    def record_failure(self, record: Record, reason: str) -> Outcome:
        """Count one hard validation failure and quarantine if needed."""
        failures = self.advisory.increment(failure_key(record.id), self.failure_ttl)
        if failures < self.max_failures:
            logger.info(
                "quarantine.failure_counted",
                record_id=record.id,
                failures=failures,
                max_failures=self.max_failures,
                reason=reason,
            )
            return Outcome.VALIDATION_FAILED

        self.advisory.delete(failure_key(record.id))
        cycles = record.quarantine.cycles + 1
        now = self._clock()

        if cycles >= self.max_cycles:
            applied = self.repo.update(
                record.id,
                {
                    "status": RecordStatus.FAILED,
                    "audit_status": AuditStatus.ADMIN_REVIEW,
                    "quarantined_at": now,
                    "quarantine_cycles": cycles,
                    "audit_reason": f"rewrite failed validation in {cycles} quarantine cycles ({reason})",
                },
                expect={"status": RecordStatus.PENDING},
            )
            if not applied:
                return Outcome.SKIPPED
            logger.warning("quarantine.record_retired", record_id=record.id, cycles=cycles, reason=reason)
            return Outcome.RETIRED

        applied = self.repo.update(
            record.id,
            {"quarantined_at": now, "quarantine_cycles": cycles},
            expect={"status": RecordStatus.PENDING},
        )
        if not applied:
            return Outcome.SKIPPED
        logger.warning(
            "quarantine.record_quarantined",
            record_id=record.id,
            cycles=cycles,
            max_cycles=self.max_cycles,
            reason=reason,
        )
        return Outcome.QUARANTINED

    def clear_failures(self, record_id: int) -> None:
        """Forget the failure counter after a successful rewrite."""
        self.advisory.delete(failure_key(record_id))


__all__ = ["QuarantinePolicy", "failure_key"]
