"""
The two pipeline stages and their building blocks.

::

    pending ──► RewriteStage ──► needs_audit ──► AuditStage ──► published
                    │                                │
                    └─► quarantine / failed          ├─► flagged (requeue)
                                                     └─► admin_review
"""

from obit_pipeline.pipeline.audit import AuditStage
from obit_pipeline.pipeline.idle_gate import GateDecision, IdleGate
from obit_pipeline.pipeline.quarantine import QuarantinePolicy
from obit_pipeline.pipeline.results import BatchResult, Outcome, RecordResult
from obit_pipeline.pipeline.rewrite import RewriteStage

__all__ = [
    "AuditStage",
    "GateDecision",
    "IdleGate",
    "QuarantinePolicy",
    "BatchResult",
    "Outcome",
    "RecordResult",
    "RewriteStage",
]
