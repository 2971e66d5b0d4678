"""Database connection factory and SQLite adapter.

Wraps a raw :class:`sqlite3.Connection` to satisfy the
:class:`~obit_pipeline.core.protocols.Connection` protocol and builds one
from the configured ``database_url``.

Usage::

    from obit_pipeline.core.connection import create_connection

    conn, info = create_connection("sqlite:///data/obit.db", init_schema=True)
    conn.execute("SELECT COUNT(*) FROM pipeline_records")
    count = conn.fetchone()[0]
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from obit_pipeline.core.errors import ConfigError

logger = logging.getLogger(__name__)


class SqliteConnection:
    """Adapter: ``sqlite3.Connection`` → ``Connection`` protocol.

    Maintains a single cursor so that ``execute`` / ``fetchone`` /
    ``fetchall`` operate on the same result set. ``busy_timeout`` makes
    overlapping scheduler invocations wait on the file lock instead of
    failing immediately.
    """

    def __init__(
        self,
        path: str = ":memory:",
        *,
        row_factory: Any = sqlite3.Row,
        busy_timeout: float = 5.0,
    ) -> None:
        self._conn = sqlite3.connect(path, timeout=busy_timeout, check_same_thread=False)
        self._conn.row_factory = row_factory
        self._cursor = self._conn.cursor()

    def execute(self, sql: str, params: tuple = ()) -> Any:
        self._cursor.execute(sql, params)
        return self._cursor

    def fetchone(self) -> Any:
        return self._cursor.fetchone()

    def fetchall(self) -> list:
        return self._cursor.fetchall()

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    @property
    def raw(self) -> sqlite3.Connection:
        """Access the underlying ``sqlite3.Connection`` (e.g. for pragmas)."""
        return self._conn

    def __repr__(self) -> str:
        return f"SqliteConnection({self._conn!r})"


@dataclass(frozen=True)
class ConnectionInfo:
    """Metadata about a created connection."""

    backend: str
    persistent: bool
    url: str
    resolved_path: str | None = None


def _parse_url(db: str | None) -> tuple[str, str]:
    """Parse a database URL into ``(scheme, target)``."""
    if db is None or db in ("", "memory", ":memory:"):
        return "memory", ":memory:"

    for prefix in ("sqlite:///", "sqlite://"):
        if db.startswith(prefix):
            path = db[len(prefix):]
            if not path or path == ":memory:":
                return "memory", ":memory:"
            return "sqlite", path

    if "://" in db:
        return db.split("://", 1)[0], db

    return "sqlite", db


def create_connection(
    db: str | None = None,
    *,
    init_schema: bool = False,
) -> tuple[SqliteConnection, ConnectionInfo]:
    """Create a database connection from a URL, path, or keyword.

    Parameters
    ----------
    db:
        ``None`` / ``"memory"`` for in-memory SQLite, a bare file path, or
        ``sqlite:///path/to/file.db``.
    init_schema:
        If ``True``, create the pipeline tables (idempotent).

    Raises
    ------
    ConfigError
        For URL schemes other than SQLite.
    """
    scheme, target = _parse_url(db)

    if scheme == "memory":
        conn = SqliteConnection(":memory:")
        info = ConnectionInfo(backend="sqlite", persistent=False, url=":memory:")
    elif scheme == "sqlite":
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        resolved = str(path.resolve())
        conn = SqliteConnection(resolved)
        info = ConnectionInfo(
            backend="sqlite", persistent=True, url=target, resolved_path=resolved
        )
    else:
        raise ConfigError(f"Unsupported database URL scheme: {scheme!r}").with_context(
            operation="create_connection"
        )

    logger.debug("connection.created backend=%s path=%s", info.backend, info.resolved_path or info.url)

    if init_schema:
        from obit_pipeline.core.schema import create_pipeline_tables

        create_pipeline_tables(conn)

    return conn, info


__all__ = ["SqliteConnection", "ConnectionInfo", "create_connection"]
