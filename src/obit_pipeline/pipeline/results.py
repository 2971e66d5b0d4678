"""Batch and per-record results returned by the stages."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from obit_pipeline.core.timestamps import to_iso8601


class Outcome(str, Enum):
    """What happened to one record in one invocation."""

    # Rewrite stage
    REWRITTEN = "rewritten"
    VALIDATION_FAILED = "validation_failed"
    QUARANTINED = "quarantined"
    RETIRED = "retired"  # quarantine ceiling reached, permanently failed

    # Audit stage
    PASSED = "passed"
    REQUEUED = "requeued"
    HELD = "held"  # admin_review

    # Either stage
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"  # transient, auth or storage error
    SKIPPED = "skipped"  # guarded update lost to a concurrent writer


@dataclass
class RecordResult:
    record_id: int
    outcome: Outcome
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"record_id": self.record_id, "outcome": self.outcome.value, "detail": self.detail}


@dataclass
class BatchResult:
    """Result of one stage invocation.

    ``halted_reason`` is set when the batch stopped before working through
    everything it selected; ``gate_reason`` when it never started.
    """

    stage: str
    started_at: datetime
    completed_at: datetime | None = None
    items: list[RecordResult] = field(default_factory=list)
    halted_reason: str | None = None
    gate_reason: str | None = None
    auth_error: bool = False
    selected: int = 0

    def add(self, record_id: int, outcome: Outcome, detail: str = "") -> RecordResult:
        item = RecordResult(record_id, outcome, detail)
        self.items.append(item)
        return item

    @property
    def counts(self) -> Counter:
        return Counter(item.outcome for item in self.items)

    @property
    def processed(self) -> int:
        return len(self.items)

    @property
    def succeeded(self) -> int:
        counts = self.counts
        return counts[Outcome.REWRITTEN] + counts[Outcome.PASSED]

    @property
    def rate_limited(self) -> bool:
        return self.counts[Outcome.RATE_LIMITED] > 0

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "selected": self.selected,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "counts": {outcome.value: n for outcome, n in self.counts.items()},
            "halted_reason": self.halted_reason,
            "gate_reason": self.gate_reason,
            "auth_error": self.auth_error,
            "items": [item.to_dict() for item in self.items],
        }


__all__ = ["Outcome", "RecordResult", "BatchResult"]
