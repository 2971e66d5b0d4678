"""
Audit stage: fact-fidelity check of rewritten records before publication.

The audit runs only when the idle gate is open, holds the ``audit``
advisory lock, and sends each selected record's original text, structured
fields and rewritten text to a stronger model that answers with a verdict.
Nothing is published without a ``pass`` verdict against the current
rewritten hash.

Manifesto:
    - **Fail toward review:** unparsable, empty or contradictory verdicts
      end in ``admin_review``, never in ``published``
    - **No churn:** a record whose text has not changed since its last
      ``pass`` is confirmed without another LLM call
    - **Bounded requeues:** a flagged record is sent back for a rewrite at
      most ``requeue_ceiling - 1`` times per publish cycle
    - **Guarded writes:** every update is conditional on the rewritten hash
      read at selection time

Architecture:
    ::

        AuditStage.run(batch_size)
          ├── IdleGate.evaluate() ──── closed ─► gate_reason, return
          ├── acquire lock:audit
          ├── select_for_audit(limit) ─ empty ─► select_stale_passed (reverify)
          └── for record (paced, time-boxed):
                unchanged since pass? ─► confirm, no call
                client.complete(...)
                parse_audit_response ── failure ─► admin_review, confidence 0
                resolve_action(verdict)
                  pass         ─► published / pass, requeue_count = 0
                  requeue      ─► pending / flagged, text cleared, count + 1
                  admin_review ─► held, issues stored

    Decision table (verdict status × recommendation):

        ============  ============  ============
        status        recommends    action
        ============  ============  ============
        pass          pass          pass
        pass          requeue       requeue
        pass          admin_review  admin_review
        flagged       requeue       requeue
        flagged       pass          admin_review
        flagged       admin_review  admin_review
        ============  ============  ============

Tags:
    audit, llm, fact-checking, publication, batch

Doc-Types:
    - API Reference
    - Operations Guide
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from obit_pipeline.core.advisory import AUDIT_LOCK, AdvisoryStore, Lease
from obit_pipeline.core.errors import (
    AuthError,
    BudgetExhaustedError,
    NetworkError,
    RateLimitError,
    StorageError,
    ValidationError,
)
from obit_pipeline.core.hashing import content_hash
from obit_pipeline.core.logging import LogContext, get_logger
from obit_pipeline.core.records import AuditStatus, Record, RecordStatus
from obit_pipeline.core.repository import RecordRepository
from obit_pipeline.core.settings import PipelineSettings
from obit_pipeline.core.timestamps import utc_now
from obit_pipeline.execution.pacing import BatchPacer
from obit_pipeline.llm.client import BudgetedLLMClient
from obit_pipeline.pipeline.extraction import (
    check_age,
    check_birth_date,
    check_death_date,
    check_location,
    parse_calendar_date,
)
from obit_pipeline.pipeline.idle_gate import IdleGate
from obit_pipeline.pipeline.prompts import build_audit_messages
from obit_pipeline.pipeline.results import BatchResult, Outcome
from obit_pipeline.pipeline.schemas import AuditVerdict, ParseFailure, parse_audit_response

logger = get_logger(__name__)

STAGE = "audit"
JSON_OBJECT = {"type": "json_object"}
AUDIT_TEMPERATURE = 0.2

CORRECTABLE_FIELDS = ("date_of_death", "date_of_birth", "age", "location")

ACTION_PASS = "pass"
ACTION_REQUEUE = "requeue"
ACTION_ADMIN_REVIEW = "admin_review"


def resolve_action(verdict: AuditVerdict) -> str:
    """Map a verdict to pass / requeue / admin_review (see the module table)."""
    if verdict.status == "pass":
        return verdict.recommendation or ACTION_PASS
    if verdict.recommendation == ACTION_REQUEUE:
        return ACTION_REQUEUE
    return ACTION_ADMIN_REVIEW


class AuditStage:
    """Fact-fidelity audit batch job.

    Args:
        repo: Record repository
        client: Budgeted LLM client for the ``auditor`` consumer
        advisory: Advisory store for the stage lock
        gate: Idle gate evaluated before anything else
        settings: Pipeline settings
        sleep: Blocking sleep used for pacing
        clock: Returns the current aware UTC datetime
        monotonic: Monotonic clock for the wall-clock budget
    """

    def __init__(
        self,
        repo: RecordRepository,
        client: BudgetedLLMClient,
        advisory: AdvisoryStore,
        gate: IdleGate,
        settings: PipelineSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.repo = repo
        self.client = client
        self.advisory = advisory
        self.gate = gate
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic

    def new_pacer(self) -> BatchPacer:
        return BatchPacer(
            base_delay=self.settings.audit_request_delay,
            max_delay=self.settings.audit_max_delay,
            halt_after=self.settings.rate_limit_halt_after,
            time_budget=self.settings.audit_time_budget,
            sleep=self._sleep,
            clock=self._monotonic,
        )

    # === Batch ===

    def run(self, batch_size: int | None = None) -> BatchResult:
        result = BatchResult(stage=STAGE, started_at=self._clock())
        limit = batch_size or self.settings.audit_batch_size

        decision = self.gate.evaluate()
        if not decision.open:
            result.gate_reason = decision.reason
            result.completed_at = self._clock()
            logger.info("audit.gate_closed", reason=decision.reason, checks=decision.checks)
            return result

        lease = self.advisory.acquire(AUDIT_LOCK, self.settings.audit_lock_ttl)
        if lease is None:
            result.gate_reason = "audit already running"
            result.completed_at = self._clock()
            logger.info("audit.skipped", reason=result.gate_reason)
            return result

        try:
            with LogContext(stage=STAGE, lock_token=lease.token):
                self._process(result, limit, self.new_pacer(), lease)
        finally:
            self.advisory.release(lease)
            result.completed_at = self._clock()

        logger.info(
            "audit.batch_complete",
            selected=result.selected,
            processed=result.processed,
            succeeded=result.succeeded,
            halted_reason=result.halted_reason,
            counts={o.value: n for o, n in result.counts.items()},
        )
        return result

    def _process(self, result: BatchResult, limit: int, pacer: BatchPacer, lease: Lease) -> None:
        records = self.repo.select_for_audit(limit)
        reverify = False
        if not records:
            records = self.repo.select_stale_passed(limit, self.settings.stale_audit_days)
            reverify = bool(records)
            if reverify:
                logger.info("audit.stale_reverify", count=len(records))
        result.selected = len(records)

        for record in records:
            if pacer.out_of_time:
                result.halted_reason = "time_budget"
                break
            if not self.advisory.still_holds(lease):
                result.halted_reason = "lock_lost"
                logger.warning("audit.lock_lost", token=lease.token)
                break

            needs_call = reverify or not self.is_unchanged_pass(record)
            if needs_call:
                pacer.wait_before_request()
            try:
                outcome, detail = self.audit_record(record, reverify=reverify)
            except RateLimitError as e:
                pacer.record_rate_limit(e.retry_after)
                result.add(record.id, Outcome.RATE_LIMITED, e.message)
                logger.warning(
                    "audit.rate_limited",
                    record_id=record.id,
                    local=isinstance(e, BudgetExhaustedError),
                    retry_after=e.retry_after,
                    consecutive=pacer.consecutive_rate_limits,
                )
                if pacer.should_halt:
                    result.halted_reason = "rate_limited"
                    break
                continue
            except AuthError as e:
                result.add(record.id, Outcome.FAILED, e.message)
                result.auth_error = True
                result.halted_reason = "auth_error"
                logger.error("audit.auth_failed", record_id=record.id, alert=True, error=e.to_dict())
                break
            except NetworkError as e:
                result.add(record.id, Outcome.FAILED, e.message)
                logger.warning("audit.network_error", record_id=record.id, error=e.to_dict())
                continue
            except StorageError as e:
                result.add(record.id, Outcome.FAILED, e.message)
                logger.error(
                    "audit.storage_failed",
                    record_id=record.id,
                    operation=e.context.operation,
                    error=e.message,
                )
                continue

            if needs_call:
                pacer.record_success()
            result.add(record.id, outcome, detail)

    # === Single record ===

    @staticmethod
    def is_unchanged_pass(record: Record) -> bool:
        return (
            bool(record.rewritten_hash)
            and record.rewritten_hash == record.last_audited_hash
            and record.last_audit_outcome == ACTION_PASS
        )

    def audit_record(self, record: Record, *, reverify: bool = False) -> tuple[Outcome, str]:
        """Audit one record and persist the decision.

        ``reverify`` forces a fresh LLM call even when the text is unchanged
        since its last pass.
        """
        if not reverify and self.is_unchanged_pass(record):
            return self._confirm_pass(record)

        try:
            response = self.client.complete(
                build_audit_messages(record),
                temperature=AUDIT_TEMPERATURE,
                max_tokens=self.settings.audit_max_tokens,
                response_format=JSON_OBJECT,
            )
        except ValidationError as e:
            return self._hold_unparsable(record, e.reason)

        verdict = parse_audit_response(response.content)
        if isinstance(verdict, ParseFailure):
            return self._hold_unparsable(record, verdict.reason)

        action = resolve_action(verdict)
        if action == ACTION_REQUEUE and record.requeue_count + 1 >= self.settings.requeue_ceiling:
            logger.info(
                "audit.requeue_ceiling",
                record_id=record.id,
                requeue_count=record.requeue_count,
                ceiling=self.settings.requeue_ceiling,
            )
            action = ACTION_ADMIN_REVIEW

        changes = self._base_changes(record)
        changes.update(self.corrections_for(record, verdict))
        changes["audit_issues"] = [issue.model_dump() for issue in verdict.issues]
        changes["audit_confidence"] = verdict.confidence

        if action == ACTION_PASS:
            changes.update(
                status=RecordStatus.PUBLISHED,
                audit_status=AuditStatus.PASS,
                audit_issues=[],
                audit_reason=None,
                requeue_count=0,
                last_audit_outcome=ACTION_PASS,
            )
            outcome = Outcome.PASSED
        elif action == ACTION_REQUEUE:
            changes.update(
                status=RecordStatus.PENDING,
                audit_status=AuditStatus.FLAGGED,
                rewritten_text=None,
                rewritten_hash=None,
                audit_reason=verdict.summary() or "flagged by audit",
                requeue_count=record.requeue_count + 1,
                last_audit_outcome=ACTION_REQUEUE,
            )
            outcome = Outcome.REQUEUED
        else:
            changes.update(
                audit_status=AuditStatus.ADMIN_REVIEW,
                audit_reason=verdict.summary() or "held for admin review",
                last_audit_outcome=ACTION_ADMIN_REVIEW,
            )
            outcome = Outcome.HELD

        if not self._write(record, changes):
            return Outcome.SKIPPED, "record changed since selection"

        logger.info(
            "audit.decided",
            record_id=record.id,
            outcome=outcome.value,
            verdict=verdict.status,
            recommendation=verdict.recommendation,
            confidence=verdict.confidence,
            issues=len(verdict.issues),
            critical=len(verdict.critical_issues),
            corrected=sorted(k for k in CORRECTABLE_FIELDS if k in changes),
            reverify=reverify,
        )
        return outcome, changes.get("audit_reason") or ""

    def _current_hash(self, record: Record) -> str:
        return record.rewritten_hash or content_hash(record.rewritten_text or "")

    def _base_changes(self, record: Record) -> dict[str, Any]:
        current = self._current_hash(record)
        changes: dict[str, Any] = {"last_audited_hash": current, "last_audit_at": self._clock()}
        if record.rewritten_hash is None:
            changes["rewritten_hash"] = current
        return changes

    def _write(self, record: Record, changes: dict[str, Any]) -> bool:
        applied = self.repo.update(
            record.id,
            changes,
            expect={"rewritten_hash": record.rewritten_hash, "suppressed_at": None},
        )
        if not applied:
            logger.info("audit.write_skipped", record_id=record.id)
        return applied

    def _confirm_pass(self, record: Record) -> tuple[Outcome, str]:
        applied = self._write(
            record,
            {"status": RecordStatus.PUBLISHED, "audit_status": AuditStatus.PASS},
        )
        if not applied:
            return Outcome.SKIPPED, "record changed since selection"
        logger.debug("audit.unchanged_since_pass", record_id=record.id)
        return Outcome.PASSED, "unchanged since last pass"

    def _hold_unparsable(self, record: Record, reason: str) -> tuple[Outcome, str]:
        changes = self._base_changes(record)
        changes.update(
            audit_status=AuditStatus.ADMIN_REVIEW,
            audit_confidence=0.0,
            audit_issues=[
                {"type": "quality", "severity": "critical", "detail": f"audit response unusable ({reason})"}
            ],
            audit_reason="audit response could not be parsed",
            last_audit_outcome=ACTION_ADMIN_REVIEW,
        )
        if not self._write(record, changes):
            return Outcome.SKIPPED, "record changed since selection"
        logger.warning("audit.unparsable_response", record_id=record.id, reason=reason)
        return Outcome.HELD, reason

    # === Corrections ===

    def corrections_for(self, record: Record, verdict: AuditVerdict) -> dict[str, Any]:
        """Field corrections that are enabled, confident, valid and different."""
        raw = verdict.corrections
        if not raw or not self.settings.auto_correct_enabled:
            return {}
        if verdict.confidence < self.settings.correction_confidence_threshold:
            logger.info(
                "audit.corrections_dropped",
                record_id=record.id,
                confidence=verdict.confidence,
                threshold=self.settings.correction_confidence_threshold,
            )
            return {}

        ignored = sorted(set(raw) - set(CORRECTABLE_FIELDS))
        if ignored:
            logger.info("audit.corrections_ignored", record_id=record.id, fields=ignored)

        today = self._clock().date()
        accepted: dict[str, Any] = {}

        if "date_of_death" in raw:
            death = check_death_date(raw["date_of_death"], today)
            if death is not None and death.isoformat() != record.date_of_death:
                accepted["date_of_death"] = death.isoformat()

        if "date_of_birth" in raw:
            death = parse_calendar_date(accepted.get("date_of_death") or record.date_of_death)
            birth = check_birth_date(raw["date_of_birth"], death or today)
            if birth is not None and birth.isoformat() != record.date_of_birth:
                accepted["date_of_birth"] = birth.isoformat()

        if "age" in raw:
            age = check_age(raw["age"])
            if age is not None and age != record.age:
                accepted["age"] = age

        if "location" in raw:
            location = check_location(raw["location"])
            if location is not None and location != record.location:
                accepted["location"] = location

        not_applied = sorted((set(raw) & set(CORRECTABLE_FIELDS)) - set(accepted))
        if not_applied:
            logger.info("audit.corrections_not_applied", record_id=record.id, fields=not_applied)
        if accepted:
            logger.info("audit.corrections_applied", record_id=record.id, corrections=accepted)
        return accepted


__all__ = ["AuditStage", "resolve_action", "CORRECTABLE_FIELDS"]
