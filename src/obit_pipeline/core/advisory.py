"""
Advisory store: TTL'd key/value entries, locks with fencing tokens,
and ingestion activity flags.

Manifesto:
    Scheduler invocations overlap. Stages coordinate through a small
    persisted table rather than in-process state:

    - **Locks:** ``rewrite`` / ``audit`` / ``ingestion`` with a TTL so a
      crashed process cannot hold a lock forever
    - **Fencing tokens:** every acquisition bumps a per-lock counter; a
      holder whose TTL lapsed can detect that it was superseded
    - **Flags and counters:** ingestion cooldown, next ingestion run,
      per-record validation failure counters

    Locks are advisory. The record store's guarded single-row update is the
    real mutual-exclusion boundary; a lock only keeps two stages from
    wasting budget on the same work.

Architecture:
    ::

        pipeline_advisory
        ┌───────────────────────┬────────┬──────────┬───────┬────────────┐
        │ key                   │ value  │ holder   │ token │ expires_at │
        ├───────────────────────┼────────┼──────────┼───────┼────────────┤
        │ lock:rewrite          │        │ 01J...   │ 17    │ +300s      │
        │ lock:ingestion        │        │ NULL     │ 4     │ (released) │
        │ ingestion:cooldown    │ 1      │          │ 0     │ +600s      │
        │ ingestion:next_run_at │ 2026.. │          │ 0     │ NULL       │
        │ rewrite:failures:42   │ 2      │          │ 0     │ +3600s     │
        └───────────────────────┴────────┴──────────┴───────┴────────────┘

        acquire(name):
          1. UPDATE ... token = token + 1 WHERE free or expired
          2. else INSERT OR IGNORE (token = 1)
          3. else refresh if we already hold it
          4. else None

Examples:
    >>> store = AdvisoryStore(conn)
    >>> lease = store.acquire("rewrite", ttl_seconds=300)
    >>> store.is_locked("rewrite")
    True
    >>> store.release(lease)
    True

Tags:
    locking, ttl, fencing-token, coordination, sqlite

Doc-Types:
    - API Reference
    - Concurrency Guide
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from obit_pipeline.core.errors import StorageError
from obit_pipeline.core.protocols import Connection
from obit_pipeline.core.schema import PIPELINE_TABLES
from obit_pipeline.core.timestamps import from_iso8601, generate_ulid, to_iso8601, utc_now

logger = logging.getLogger(__name__)

TABLE = PIPELINE_TABLES["advisory"]

REWRITE_LOCK = "rewrite"
AUDIT_LOCK = "audit"
INGESTION_LOCK = "ingestion"
INGESTION_COOLDOWN_KEY = "ingestion:cooldown"
INGESTION_NEXT_RUN_KEY = "ingestion:next_run_at"


@dataclass(frozen=True)
class Lease:
    """A held advisory lock."""

    name: str
    holder: str
    token: int
    expires_at: datetime


def _lock_key(name: str) -> str:
    return f"lock:{name}"


class AdvisoryStore:
    """TTL'd key/value store and advisory lock manager.

    Args:
        conn: Database connection
        holder: Identity written into acquired locks (defaults to a ULID)
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        conn: Connection,
        holder: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.conn = conn
        self.holder = holder or generate_ulid()
        self._clock = clock

    def _execute(self, operation: str, sql: str, params: tuple = ()) -> Any:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StorageError(f"advisory {operation} failed: {e}", cause=e).with_context(
                operation=f"advisory.{operation}"
            ) from e

    # === Locks ===

    def acquire(self, name: str, ttl_seconds: int = 300) -> Lease | None:
        """Acquire the named lock, or return None if someone else holds it.

        Re-acquiring a lock this holder already owns refreshes its expiry
        and keeps the same fencing token.
        """
        key = _lock_key(name)
        now = self._clock()
        expires = now + timedelta(seconds=ttl_seconds)
        now_s, exp_s = to_iso8601(now), to_iso8601(expires)

        cursor = self._execute(
            "acquire",
            f"""
            UPDATE {TABLE}
            SET holder = ?, token = token + 1, expires_at = ?, updated_at = ?
            WHERE key = ? AND (holder IS NULL OR expires_at IS NULL OR expires_at <= ?)
            """,
            (self.holder, exp_s, now_s, key, now_s),
        )
        acquired = cursor.rowcount > 0

        if not acquired:
            cursor = self._execute(
                "acquire",
                f"""
                INSERT OR IGNORE INTO {TABLE} (key, holder, token, expires_at, updated_at)
                VALUES (?, ?, 1, ?, ?)
                """,
                (key, self.holder, exp_s, now_s),
            )
            acquired = cursor.rowcount > 0

        if not acquired:
            cursor = self._execute(
                "acquire",
                f"""
                UPDATE {TABLE} SET expires_at = ?, updated_at = ?
                WHERE key = ? AND holder = ? AND expires_at > ?
                """,
                (exp_s, now_s, key, self.holder, now_s),
            )
            if cursor.rowcount > 0:
                acquired = True
                logger.debug("advisory.lock_refreshed name=%s holder=%s", name, self.holder)

        self.conn.commit()

        if not acquired:
            logger.debug("advisory.lock_busy name=%s", name)
            return None

        self._execute("acquire", f"SELECT token FROM {TABLE} WHERE key = ?", (key,))
        token = int(self.conn.fetchone()[0])
        logger.debug("advisory.lock_acquired name=%s holder=%s token=%d", name, self.holder, token)
        return Lease(name=name, holder=self.holder, token=token, expires_at=expires)

    def release(self, lease: Lease) -> bool:
        """Release a lease. No-op (False) if the lease was superseded."""
        now_s = to_iso8601(self._clock())
        cursor = self._execute(
            "release",
            f"""
            UPDATE {TABLE} SET holder = NULL, expires_at = ?, updated_at = ?
            WHERE key = ? AND holder = ? AND token = ?
            """,
            (now_s, now_s, _lock_key(lease.name), lease.holder, lease.token),
        )
        self.conn.commit()
        released = cursor.rowcount > 0
        if not released:
            logger.warning(
                "advisory.release_superseded name=%s token=%d", lease.name, lease.token
            )
        return released

    def force_release(self, name: str) -> bool:
        """Release a lock regardless of holder (operator recovery, external jobs)."""
        now_s = to_iso8601(self._clock())
        cursor = self._execute(
            "force_release",
            f"""
            UPDATE {TABLE} SET holder = NULL, expires_at = ?, updated_at = ?
            WHERE key = ? AND holder IS NOT NULL
            """,
            (now_s, now_s, _lock_key(name)),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held by anyone."""
        now_s = to_iso8601(self._clock())
        self._execute(
            "is_locked",
            f"""
            SELECT 1 FROM {TABLE}
            WHERE key = ? AND holder IS NOT NULL AND expires_at > ?
            """,
            (_lock_key(name), now_s),
        )
        return self.conn.fetchone() is not None

    def still_holds(self, lease: Lease) -> bool:
        """True while ``lease`` is unexpired and has not been superseded."""
        now_s = to_iso8601(self._clock())
        self._execute(
            "still_holds",
            f"""
            SELECT 1 FROM {TABLE}
            WHERE key = ? AND holder = ? AND token = ? AND expires_at > ?
            """,
            (_lock_key(lease.name), lease.holder, lease.token, now_s),
        )
        return self.conn.fetchone() is not None

    # === Key/value entries ===

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Set ``key`` to ``value``; ``ttl_seconds=None`` never expires."""
        now = self._clock()
        expires = to_iso8601(now + timedelta(seconds=ttl_seconds)) if ttl_seconds else None
        self._execute(
            "put",
            f"""
            INSERT INTO {TABLE} (key, value, expires_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """,
            (key, value, expires, to_iso8601(now)),
        )
        self.conn.commit()

    def get(self, key: str) -> str | None:
        """Return the value for ``key`` unless it is missing or expired."""
        now_s = to_iso8601(self._clock())
        self._execute(
            "get",
            f"""
            SELECT value FROM {TABLE}
            WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)
            """,
            (key, now_s),
        )
        row = self.conn.fetchone()
        return row[0] if row else None

    def delete(self, key: str) -> bool:
        cursor = self._execute("delete", f"DELETE FROM {TABLE} WHERE key = ?", (key,))
        self.conn.commit()
        return cursor.rowcount > 0

    def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment an integer counter and refresh its TTL.

        An expired counter restarts at 1.
        """
        now = self._clock()
        now_s = to_iso8601(now)
        exp_s = to_iso8601(now + timedelta(seconds=ttl_seconds))

        cursor = self._execute(
            "increment",
            f"""
            UPDATE {TABLE}
            SET value = CAST(COALESCE(value, '0') AS INTEGER) + 1,
                expires_at = ?, updated_at = ?
            WHERE key = ? AND expires_at > ?
            """,
            (exp_s, now_s, key, now_s),
        )
        if cursor.rowcount == 0:
            self._execute(
                "increment",
                f"""
                INSERT INTO {TABLE} (key, value, expires_at, updated_at)
                VALUES (?, '1', ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = '1', expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
                """,
                (key, exp_s, now_s),
            )
        self.conn.commit()

        self._execute("increment", f"SELECT value FROM {TABLE} WHERE key = ?", (key,))
        return int(self.conn.fetchone()[0])

    # === Maintenance ===

    def cleanup_expired(self) -> int:
        """Remove expired key/value entries.

        Lock rows are kept so their fencing tokens stay monotonic.
        """
        now_s = to_iso8601(self._clock())
        cursor = self._execute(
            "cleanup",
            f"""
            DELETE FROM {TABLE}
            WHERE key NOT LIKE 'lock:%' AND expires_at IS NOT NULL AND expires_at <= ?
            """,
            (now_s,),
        )
        self.conn.commit()
        count = cursor.rowcount
        if count > 0:
            logger.info("advisory.cleanup removed=%d", count)
        return count

    def list_active(self) -> list[dict]:
        """List held locks and unexpired entries."""
        now_s = to_iso8601(self._clock())
        self._execute(
            "list_active",
            f"""
            SELECT key, value, holder, token, expires_at FROM {TABLE}
            WHERE (key LIKE 'lock:%' AND holder IS NOT NULL AND expires_at > ?)
               OR (key NOT LIKE 'lock:%' AND (expires_at IS NULL OR expires_at > ?))
            ORDER BY key
            """,
            (now_s, now_s),
        )
        return [
            {
                "key": row[0],
                "value": row[1],
                "holder": row[2],
                "token": row[3],
                "expires_at": row[4],
            }
            for row in self.conn.fetchall()
        ]


# === Ingestion activity ===


def mark_ingestion_started(store: AdvisoryStore, ttl_seconds: int) -> Lease | None:
    """Called by the ingestion job when it starts."""
    return store.acquire(INGESTION_LOCK, ttl_seconds)


def mark_ingestion_finished(
    store: AdvisoryStore,
    cooldown_seconds: int,
    lease: Lease | None = None,
) -> None:
    """Release the ingestion lock and open the post-ingestion cooldown.

    Without a lease (ingestion ran in another process) the lock is force
    released.
    """
    if lease is not None:
        store.release(lease)
    else:
        store.force_release(INGESTION_LOCK)
    if cooldown_seconds > 0:
        store.put(INGESTION_COOLDOWN_KEY, "1", ttl_seconds=cooldown_seconds)


def schedule_next_ingestion(store: AdvisoryStore, at: datetime) -> None:
    """Record when the scheduler will next run ingestion."""
    store.put(INGESTION_NEXT_RUN_KEY, to_iso8601(at))


def next_ingestion_at(store: AdvisoryStore) -> datetime | None:
    value = store.get(INGESTION_NEXT_RUN_KEY)
    if not value:
        return None
    try:
        return from_iso8601(value)
    except ValueError:
        logger.warning("advisory.bad_next_run value=%r", value)
        return None


__all__ = [
    "AdvisoryStore",
    "Lease",
    "REWRITE_LOCK",
    "AUDIT_LOCK",
    "INGESTION_LOCK",
    "INGESTION_COOLDOWN_KEY",
    "INGESTION_NEXT_RUN_KEY",
    "mark_ingestion_started",
    "mark_ingestion_finished",
    "schedule_next_ingestion",
    "next_ingestion_at",
]
