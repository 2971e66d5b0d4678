"""
Rewrite stage: structured extraction plus prose rewrite of pending records.

One invocation takes the ``rewrite`` advisory lock, selects a small batch of
pending records that have source text but no rewrite (newest first, active
quarantines excluded), and for each record makes exactly one budgeted LLM
call that returns the structured fields and the rewritten prose together.

Manifesto:
    - **Budget first:** the shared limiter is consulted before every call;
      a refusal is a rate limit, not an error
    - **Never blank a field:** only values that passed their checks are
      written; anything else keeps the stored value
    - **Guarded save:** the rewrite is persisted only while the record is
      still pending with the rewritten hash that was read at selection time
    - **Poisoned records park themselves:** repeated hard validation
      failures quarantine the record instead of stalling the queue

Architecture:
    ::

        RewriteStage.run(batch_size)
          ├── acquire lock:rewrite ──── busy ─► gate_reason, return
          ├── select_for_rewrite(limit)
          └── for record (paced, time-boxed):
                client.complete(...)          rate limit ─► backoff / halt
                parse_rewrite_response        auth error ─► abort batch
                extract_fields
                validate_rewrite ──── hard reject ─► QuarantinePolicy
                repo.update(expect=...) ──► pending / needs_audit

        RewriteStage.drain()
          └── run() repeatedly until the queue is empty, time runs out,
              an auth error occurs or several batches make no progress

Tags:
    rewrite, llm, extraction, validation, quarantine, batch

Doc-Types:
    - API Reference
    - Operations Guide
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from obit_pipeline.core.advisory import REWRITE_LOCK, AdvisoryStore, Lease
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
from obit_pipeline.pipeline.extraction import ExtractedFields, extract_fields
from obit_pipeline.pipeline.prompts import build_rewrite_messages
from obit_pipeline.pipeline.prose import ProseCheck, validate_rewrite
from obit_pipeline.pipeline.quarantine import QuarantinePolicy
from obit_pipeline.pipeline.results import BatchResult, Outcome
from obit_pipeline.pipeline.schemas import ParseFailure, parse_rewrite_response

logger = get_logger(__name__)

STAGE = "rewrite"
JSON_OBJECT = {"type": "json_object"}
REWRITE_TEMPERATURE = 0.1


class RewriteStage:
    """Extraction + rewrite batch job.

    Args:
        repo: Record repository
        client: Budgeted LLM client for the ``rewriter`` consumer
        advisory: Advisory store for the stage lock and failure counters
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
        settings: PipelineSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.repo = repo
        self.client = client
        self.advisory = advisory
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic
        self.quarantine = QuarantinePolicy(
            repo,
            advisory,
            max_failures=settings.max_validation_failures,
            failure_ttl=settings.failure_counter_ttl,
            max_cycles=settings.max_quarantine_cycles,
            clock=clock,
        )

    def new_pacer(self) -> BatchPacer:
        return BatchPacer(
            base_delay=self.settings.rewrite_request_delay,
            max_delay=self.settings.rewrite_max_delay,
            halt_after=self.settings.rate_limit_halt_after,
            time_budget=self.settings.rewrite_time_budget,
            sleep=self._sleep,
            clock=self._monotonic,
        )

    # === Batch ===

    def run(self, batch_size: int | None = None, *, pacer: BatchPacer | None = None) -> BatchResult:
        """Process one batch of pending records.

        A caller that runs several batches back to back passes its own
        ``pacer`` so delays and the wall-clock budget span all of them.
        """
        result = BatchResult(stage=STAGE, started_at=self._clock())
        limit = batch_size or self.settings.rewrite_batch_size

        lease = self.advisory.acquire(REWRITE_LOCK, self.settings.rewrite_lock_ttl)
        if lease is None:
            result.gate_reason = "rewrite already running"
            result.completed_at = self._clock()
            logger.info("rewrite.skipped", reason=result.gate_reason)
            return result

        try:
            with LogContext(stage=STAGE, lock_token=lease.token):
                self.advisory.cleanup_expired()
                self._process(result, limit, pacer or self.new_pacer(), lease)
        finally:
            self.advisory.release(lease)
            result.completed_at = self._clock()

        logger.info(
            "rewrite.batch_complete",
            selected=result.selected,
            processed=result.processed,
            succeeded=result.succeeded,
            halted_reason=result.halted_reason,
            counts={o.value: n for o, n in result.counts.items()},
        )
        return result

    def _process(self, result: BatchResult, limit: int, pacer: BatchPacer, lease: Lease) -> None:
        records = self.repo.select_for_rewrite(limit, self.settings.quarantine_seconds)
        result.selected = len(records)
        if not records:
            logger.debug("rewrite.queue_empty")
            return

        for record in records:
            if pacer.out_of_time:
                result.halted_reason = "time_budget"
                break
            if not self.advisory.still_holds(lease):
                result.halted_reason = "lock_lost"
                logger.warning("rewrite.lock_lost", token=lease.token)
                break

            pacer.wait_before_request()
            try:
                outcome, detail = self.rewrite_record(record)
            except RateLimitError as e:
                pacer.record_rate_limit(e.retry_after)
                result.add(record.id, Outcome.RATE_LIMITED, e.message)
                logger.warning(
                    "rewrite.rate_limited",
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
                logger.error("rewrite.auth_failed", record_id=record.id, alert=True, error=e.to_dict())
                break
            except NetworkError as e:
                result.add(record.id, Outcome.FAILED, e.message)
                logger.warning("rewrite.network_error", record_id=record.id, error=e.to_dict())
                continue
            except StorageError as e:
                result.add(record.id, Outcome.FAILED, e.message)
                logger.error(
                    "rewrite.storage_failed",
                    record_id=record.id,
                    operation=e.context.operation,
                    error=e.message,
                )
                continue

            pacer.record_success()
            result.add(record.id, outcome, detail)

    # === Single record ===

    def rewrite_record(self, record: Record) -> tuple[Outcome, str]:
        """Run one record through call → parse → checks → save.

        Rate-limit, auth, network and storage errors propagate to the batch
        loop; every validation failure is handled here.
        """
        try:
            response = self.client.complete(
                build_rewrite_messages(record),
                temperature=REWRITE_TEMPERATURE,
                max_tokens=self.settings.rewrite_max_tokens,
                response_format=JSON_OBJECT,
            )
        except ValidationError as e:
            return self._reject(record, e.reason, e.message)

        payload = parse_rewrite_response(response.content)
        if isinstance(payload, ParseFailure):
            return self._reject(record, payload.reason, payload.detail or payload.excerpt)

        fields = extract_fields(payload, today=self._clock().date(), known_death=record.date_of_death)
        check = validate_rewrite(
            fields.rewritten_text,
            record.name,
            fields,
            min_chars=self.settings.rewrite_min_chars,
            max_chars=self.settings.rewrite_max_chars,
        )
        if not check.ok:
            return self._reject(record, check.reason or "prose_rejected", check.detail)

        return self._save(record, fields, check, model=response.model)

    def _reject(self, record: Record, reason: str, detail: str) -> tuple[Outcome, str]:
        logger.warning("rewrite.validation_failed", record_id=record.id, reason=reason, detail=detail[:200])
        outcome = self.quarantine.record_failure(record, reason)
        return outcome, reason

    def _save(self, record: Record, fields: ExtractedFields, check: ProseCheck, model: str) -> tuple[Outcome, str]:
        changes: dict[str, Any] = dict(fields.non_empty())
        if "age" not in changes and record.age == 0:
            changes["age"] = None
        changes.update(
            rewritten_text=fields.rewritten_text,
            rewritten_hash=content_hash(fields.rewritten_text),
            status=RecordStatus.PENDING,
            audit_status=AuditStatus.NEEDS_AUDIT,
            last_audited_hash=None,
            quarantined_at=None,
        )

        applied = self.repo.update(
            record.id,
            changes,
            expect={
                "status": RecordStatus.PENDING,
                "rewritten_hash": record.rewritten_hash,
                "suppressed_at": None,
            },
        )
        if not applied:
            logger.info("rewrite.save_skipped", record_id=record.id)
            return Outcome.SKIPPED, "record changed since selection"

        self.quarantine.clear_failures(record.id)
        if fields.corrections:
            logger.info("rewrite.fields_corrected", record_id=record.id, corrections=fields.corrections)
        if check.warnings:
            logger.info("rewrite.prose_warnings", record_id=record.id, warnings=check.warnings)
        logger.info(
            "rewrite.saved",
            record_id=record.id,
            model=model,
            chars=len(fields.rewritten_text),
            fields=sorted(fields.non_empty()),
        )
        return Outcome.REWRITTEN, ""

    # === Drain ===

    def drain(self, batch_size: int | None = None) -> BatchResult:
        """Run batches until the queue is empty or a stop condition hits.

        Stops on: empty queue, spent wall-clock budget, auth error, a
        rate-limit halt, a lost lock, or ``drain_max_idle_batches``
        consecutive batches without a single success.
        """
        pacer = self.new_pacer()
        pacer.start()
        total = BatchResult(stage=STAGE, started_at=self._clock())
        idle_batches = 0

        while True:
            if pacer.out_of_time:
                total.halted_reason = "time_budget"
                break

            batch = self.run(batch_size, pacer=pacer)
            total.items.extend(batch.items)
            total.selected += batch.selected

            if batch.gate_reason:
                total.gate_reason = batch.gate_reason
                break
            if batch.selected == 0:
                break
            if batch.auth_error:
                total.auth_error = True
                total.halted_reason = batch.halted_reason
                break
            if batch.halted_reason:
                total.halted_reason = batch.halted_reason
                break

            idle_batches = 0 if batch.succeeded else idle_batches + 1
            if idle_batches >= self.settings.drain_max_idle_batches:
                total.halted_reason = "no_progress"
                break

        total.completed_at = self._clock()
        logger.info(
            "rewrite.drain_complete",
            processed=total.processed,
            succeeded=total.succeeded,
            halted_reason=total.halted_reason,
            elapsed=round(pacer.elapsed, 1),
        )
        return total


__all__ = ["RewriteStage", "JSON_OBJECT"]
