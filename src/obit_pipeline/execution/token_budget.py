"""Token Budget Limiter: one tokens-per-minute budget shared by every
process that calls the LLM API.

WHY
───
The provider enforces a tokens-per-minute cap per API key. The rewrite
stage, the audit stage and the interactive chatbot all share that key and
run as separate, overlapping processes. Each one reserves its estimated
tokens here *before* sending a request so the provider's limit is never
the first line of defence.

ARCHITECTURE
────────────
::

    TokenBudgetLimiter(conn, budgets={"batch": 4400, "interactive": 1100})
    ├── .peek(estimate, consumer)                 → bool, no side effects
    ├── .reserve(estimate, consumer)              → bool, atomic
    ├── .release(estimate, consumer)              → return unused reservation
    ├── .record_actual(actual, consumer, estimated) → true-up by the delta
    ├── .seconds_until_reset()                    → advisory backoff hint
    └── .stats()                                  → per-pool usage

    consumer ──► pool       rewriter ─┐
                            auditor  ─┴─► batch        (80% of TPM)
                            chatbot  ───► interactive  (remainder)

    pipeline_token_window (pool, bucket=epoch_minute, tokens, calls, version)

    usage(now) = tokens[current minute]
               + tokens[previous minute] * (1 - seconds_into_minute / 60)

Every write is a version compare-and-swap retried at most
``MAX_CAS_RETRIES`` times. Reservation fails closed: an unknown consumer, a
non-positive estimate, CAS exhaustion or a storage error all mean "no".
Adjustments never drive a bucket below zero.

Example::

    limiter = TokenBudgetLimiter.from_settings(conn, settings)
    if limiter.reserve(1100, "rewriter"):
        try:
            response = call_llm()
        except Exception:
            limiter.release(1100, "rewriter")
            raise
        limiter.record_actual(response.usage.total_tokens, "rewriter", 1100)
"""

from __future__ import annotations

import logging
import math
import sqlite3
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from obit_pipeline.core.protocols import Connection
from obit_pipeline.core.schema import PIPELINE_TABLES

if TYPE_CHECKING:
    from obit_pipeline.core.settings import PipelineSettings

logger = logging.getLogger(__name__)

TABLE = PIPELINE_TABLES["token_window"]

WINDOW_SECONDS = 60
MAX_CAS_RETRIES = 3

BATCH_POOL = "batch"
INTERACTIVE_POOL = "interactive"

CONSUMER_POOLS: dict[str, str] = {
    "rewriter": BATCH_POOL,
    "auditor": BATCH_POOL,
    "chatbot": INTERACTIVE_POOL,
}


@dataclass(frozen=True)
class _Bucket:
    tokens: int
    calls: int
    version: int


@dataclass(frozen=True)
class WindowUsage:
    """Rolling-window usage of one pool at one instant."""

    pool: str
    bucket: int
    current_tokens: int
    previous_tokens: int
    elapsed_fraction: float
    current_version: int | None

    @property
    def weighted(self) -> float:
        return self.current_tokens + self.previous_tokens * (1.0 - self.elapsed_fraction)

    @property
    def used(self) -> int:
        return math.ceil(self.weighted)


class TokenBudgetLimiter:
    """Shared, persisted tokens-per-minute limiter.

    Args:
        conn: Connection to the database holding ``pipeline_token_window``
        budgets: Tokens per minute per pool
        consumer_pools: Consumer name → pool name
        clock: Returns epoch seconds (``time.time`` by default)
    """

    def __init__(
        self,
        conn: Connection,
        budgets: Mapping[str, int],
        consumer_pools: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.conn = conn
        self.budgets = dict(budgets)
        self.consumer_pools = dict(consumer_pools or CONSUMER_POOLS)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        conn: Connection,
        settings: PipelineSettings,
        clock: Callable[[], float] = time.time,
    ) -> TokenBudgetLimiter:
        return cls(
            conn,
            budgets={
                BATCH_POOL: settings.batch_pool_budget,
                INTERACTIVE_POOL: settings.interactive_pool_budget,
            },
            clock=clock,
        )

    # -- helpers -----------------------------------------------------------

    def _pool_for(self, consumer: str) -> str | None:
        pool = self.consumer_pools.get(consumer)
        if pool is None or pool not in self.budgets:
            logger.error("token_budget.unknown_consumer  consumer=%s  (refusing)", consumer)
            return None
        return pool

    def _read_bucket(self, pool: str, bucket: int) -> _Bucket | None:
        self.conn.execute(
            f"SELECT tokens, calls, version FROM {TABLE} WHERE pool = ? AND bucket = ?",
            (pool, bucket),
        )
        row = self.conn.fetchone()
        if row is None:
            return None
        return _Bucket(tokens=int(row[0]), calls=int(row[1]), version=int(row[2]))

    def _usage(self, pool: str, now: float) -> WindowUsage:
        bucket = int(now // WINDOW_SECONDS)
        elapsed = (now - bucket * WINDOW_SECONDS) / WINDOW_SECONDS
        current = self._read_bucket(pool, bucket)
        previous = self._read_bucket(pool, bucket - 1)
        return WindowUsage(
            pool=pool,
            bucket=bucket,
            current_tokens=current.tokens if current else 0,
            previous_tokens=previous.tokens if previous else 0,
            elapsed_fraction=elapsed,
            current_version=current.version if current else None,
        )

    def _insert_bucket(self, pool: str, bucket: int, tokens: int, calls: int) -> bool:
        cursor = self.conn.execute(
            f"""
            INSERT OR IGNORE INTO {TABLE} (pool, bucket, tokens, calls, version)
            VALUES (?, ?, ?, ?, 1)
            """,
            (pool, bucket, max(0, tokens), calls),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def _cas_update(self, pool: str, bucket: int, delta: int, calls: int, version: int) -> bool:
        cursor = self.conn.execute(
            f"""
            UPDATE {TABLE}
            SET tokens = MAX(0, tokens + ?), calls = calls + ?, version = version + 1
            WHERE pool = ? AND bucket = ? AND version = ?
            """,
            (delta, calls, pool, bucket, version),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # -- public API --------------------------------------------------------

    def peek(self, estimate: int, consumer: str) -> bool:
        """Would ``estimate`` tokens fit right now? Reserves nothing."""
        if estimate <= 0:
            return False
        pool = self._pool_for(consumer)
        if pool is None:
            return False
        try:
            usage = self._usage(pool, self._clock())
        except sqlite3.Error as e:
            logger.error("token_budget.peek_failed  consumer=%s  error=%s", consumer, e)
            return False
        return usage.weighted + estimate <= self.budgets[pool]

    def reserve(self, estimate: int, consumer: str) -> bool:
        """Atomically reserve ``estimate`` tokens for ``consumer``."""
        if estimate <= 0:
            logger.warning(
                "token_budget.bad_estimate  consumer=%s  estimate=%d  (refusing)", consumer, estimate
            )
            return False
        pool = self._pool_for(consumer)
        if pool is None:
            return False
        budget = self.budgets[pool]

        try:
            for attempt in range(MAX_CAS_RETRIES):
                usage = self._usage(pool, self._clock())
                if usage.weighted + estimate > budget:
                    logger.info(
                        "token_budget.refused  consumer=%s  pool=%s  used=%d  estimate=%d  budget=%d",
                        consumer,
                        pool,
                        usage.used,
                        estimate,
                        budget,
                    )
                    return False

                if usage.current_version is None:
                    won = self._insert_bucket(pool, usage.bucket, estimate, 1)
                    if won:
                        self.prune()
                else:
                    won = self._cas_update(pool, usage.bucket, estimate, 1, usage.current_version)

                if won:
                    logger.debug(
                        "token_budget.reserved  consumer=%s  pool=%s  estimate=%d  used=%d",
                        consumer,
                        pool,
                        estimate,
                        usage.used + estimate,
                    )
                    return True
                logger.debug("token_budget.cas_retry  consumer=%s  attempt=%d", consumer, attempt + 1)
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.error("token_budget.reserve_failed  consumer=%s  error=%s", consumer, e)
            return False

        logger.warning("token_budget.cas_exhausted  consumer=%s  (refusing)", consumer)
        return False

    def release(self, estimate: int, consumer: str) -> None:
        """Return an unused reservation."""
        self.record_actual(0, consumer, estimate)

    def record_actual(self, actual: int, consumer: str, estimated: int) -> None:
        """Adjust the pool by ``actual - estimated`` (never below zero)."""
        pool = self._pool_for(consumer)
        if pool is None:
            return
        delta = max(0, actual) - max(0, estimated)
        if delta == 0:
            return
        try:
            if delta > 0:
                applied = self._add(pool, delta)
            else:
                applied = self._drain(pool, -delta)
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.error("token_budget.adjust_failed  consumer=%s  delta=%d  error=%s", consumer, delta, e)
            return
        if not applied:
            # Leaves the reservation standing, which over-counts.
            logger.warning("token_budget.adjust_cas_exhausted  consumer=%s  delta=%d", consumer, delta)
        else:
            logger.debug("token_budget.adjusted  consumer=%s  delta=%d", consumer, delta)

    def _add(self, pool: str, amount: int) -> bool:
        for _ in range(MAX_CAS_RETRIES):
            bucket = int(self._clock() // WINDOW_SECONDS)
            row = self._read_bucket(pool, bucket)
            if row is None:
                if self._insert_bucket(pool, bucket, amount, 0):
                    return True
            elif self._cas_update(pool, bucket, amount, 0, row.version):
                return True
        return False

    def _drain(self, pool: str, amount: int) -> bool:
        """Remove ``amount`` tokens, current minute first, then the previous one."""
        remaining = amount
        bucket = int(self._clock() // WINDOW_SECONDS)
        for target in (bucket, bucket - 1):
            for _ in range(MAX_CAS_RETRIES):
                row = self._read_bucket(pool, target)
                if row is None or row.tokens <= 0:
                    break
                take = min(remaining, row.tokens)
                if self._cas_update(pool, target, -take, 0, row.version):
                    remaining -= take
                    break
            else:
                return False
            if remaining <= 0:
                break
        return True

    def seconds_until_reset(self) -> int:
        """Seconds until the oldest counted minute leaves the window.

        0 when no pool has usage inside the window.
        """
        now = self._clock()
        bucket = int(now // WINDOW_SECONDS)
        self.conn.execute(
            f"SELECT COALESCE(SUM(tokens), 0) FROM {TABLE} WHERE bucket >= ?",
            (bucket - 1,),
        )
        row = self.conn.fetchone()
        if not row or int(row[0]) <= 0:
            return 0
        return max(1, math.ceil((bucket + 1) * WINDOW_SECONDS - now))

    def prune(self) -> int:
        """Delete buckets that can no longer affect the window."""
        bucket = int(self._clock() // WINDOW_SECONDS)
        cursor = self.conn.execute(f"DELETE FROM {TABLE} WHERE bucket < ?", (bucket - 1,))
        self.conn.commit()
        return cursor.rowcount

    def stats(self) -> dict[str, Any]:
        """Per-pool usage snapshot."""
        now = self._clock()
        pools: dict[str, Any] = {}
        for pool, budget in self.budgets.items():
            usage = self._usage(pool, now)
            current = self._read_bucket(pool, usage.bucket)
            pools[pool] = {
                "used": usage.used,
                "budget": budget,
                "remaining": max(0, budget - usage.used),
                "calls_this_minute": current.calls if current else 0,
                "consumers": sorted(c for c, p in self.consumer_pools.items() if p == pool),
            }
        return {
            "window_seconds": WINDOW_SECONDS,
            "seconds_until_reset": self.seconds_until_reset(),
            "pools": pools,
        }


__all__ = [
    "TokenBudgetLimiter",
    "WindowUsage",
    "CONSUMER_POOLS",
    "BATCH_POOL",
    "INTERACTIVE_POOL",
    "MAX_CAS_RETRIES",
    "WINDOW_SECONDS",
]
