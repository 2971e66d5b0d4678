"""Execution controls: the shared token budget and per-batch pacing.

::

    TokenBudgetLimiter   ─ persisted tokens-per-minute pools, CAS reserve
    BatchPacer           ─ inter-request delay, 429 backoff, time budget
"""

from obit_pipeline.execution.pacing import BatchPacer
from obit_pipeline.execution.token_budget import CONSUMER_POOLS, TokenBudgetLimiter

__all__ = ["BatchPacer", "TokenBudgetLimiter", "CONSUMER_POOLS"]
