"""Idle gate: the audit stage only runs while the rest of the system is quiet.

Checks, in order, each read-only and free of budget consumption:

1. rewrite queue drained (active quarantines do not count)
2. rewrite stage not running
3. ingestion not running and not in its cooldown
4. next scheduled ingestion not within the safety buffer
5. the shared token budget could fit one audit call right now

The first failing check closes the gate and names the reason.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from obit_pipeline.core.advisory import (
    INGESTION_COOLDOWN_KEY,
    INGESTION_LOCK,
    REWRITE_LOCK,
    AdvisoryStore,
    next_ingestion_at,
)
from obit_pipeline.core.logging import get_logger
from obit_pipeline.core.repository import RecordRepository
from obit_pipeline.core.settings import PipelineSettings
from obit_pipeline.core.timestamps import utc_now
from obit_pipeline.execution.token_budget import TokenBudgetLimiter

logger = get_logger(__name__)

AUDIT_CONSUMER = "auditor"


@dataclass
class GateDecision:
    open: bool
    reason: str = ""
    checks: dict[str, bool] = field(default_factory=dict)


class IdleGate:
    """Evaluates whether the audit stage may start."""

    def __init__(
        self,
        repo: RecordRepository,
        advisory: AdvisoryStore,
        limiter: TokenBudgetLimiter,
        settings: PipelineSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.advisory = advisory
        self.limiter = limiter
        self.settings = settings
        self._clock = clock

    def evaluate(self) -> GateDecision:
        decision = GateDecision(open=False)

        pending = self.repo.count_rewrite_queue(self.settings.quarantine_seconds)
        decision.checks["rewrite_queue_drained"] = pending == 0
        if pending:
            return self._closed(decision, f"rewrite queue not drained ({pending} pending)")

        rewriting = self.advisory.is_locked(REWRITE_LOCK)
        decision.checks["rewrite_idle"] = not rewriting
        if rewriting:
            return self._closed(decision, "rewrite stage running")

        if self.advisory.is_locked(INGESTION_LOCK):
            decision.checks["ingestion_idle"] = False
            return self._closed(decision, "ingestion running")
        if self.advisory.get(INGESTION_COOLDOWN_KEY) is not None:
            decision.checks["ingestion_idle"] = False
            return self._closed(decision, "ingestion cooldown active")
        decision.checks["ingestion_idle"] = True

        next_run = next_ingestion_at(self.advisory)
        if next_run is not None:
            seconds_away = (next_run - self._clock()).total_seconds()
            due_soon = 0 <= seconds_away < self.settings.ingestion_buffer_seconds
            decision.checks["ingestion_not_due"] = not due_soon
            if due_soon:
                return self._closed(decision, f"ingestion due in {int(seconds_away)}s")
        else:
            decision.checks["ingestion_not_due"] = True

        fits = self.limiter.peek(self.settings.audit_token_estimate, AUDIT_CONSUMER)
        decision.checks["budget_available"] = fits
        if not fits:
            return self._closed(decision, "token budget insufficient")

        decision.open = True
        return decision

    def _closed(self, decision: GateDecision, reason: str) -> GateDecision:
        decision.reason = reason
        logger.info("idle_gate.closed", reason=reason)
        return decision


__all__ = ["IdleGate", "GateDecision", "AUDIT_CONSUMER"]
