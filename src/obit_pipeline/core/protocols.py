"""
Protocol definitions shared by the record store, advisory store and
token-budget limiter.

Manifesto:
    Domain code depends on the *shape* of a connection, not on sqlite3.
    Any DB-API style adapter exposing ``execute`` / ``fetchone`` /
    ``fetchall`` / ``commit`` / ``rollback`` can back the pipeline.

Architecture:
    ::

        Connection Protocol:
        ┌────────────────────────────────────────────────────────┐
        │ execute(sql, params)   → cursor (exposes .rowcount)    │
        │ fetchone()             → Get one result row            │
        │ fetchall()             → Get all result rows           │
        │ commit()               → Commit transaction            │
        │ rollback()             → Rollback transaction          │
        └────────────────────────────────────────────────────────┘

        Implementations:
            SqliteConnection (core/connection.py)

Tags:
    protocol, connection, database

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """Minimal synchronous connection interface.

    ``execute`` must return an object with a ``rowcount`` attribute; the
    compare-and-swap updates in the limiter and repository rely on it.
    """

    def execute(self, sql: str, params: tuple = ()) -> Any:
        """Execute SQL statement with optional parameters."""
        ...

    def fetchone(self) -> Any:
        """Fetch one row from last query."""
        ...

    def fetchall(self) -> list:
        """Fetch all rows from last query."""
        ...

    def commit(self) -> None:
        """Commit the current transaction."""
        ...

    def rollback(self) -> None:
        """Roll back the current transaction."""
        ...


__all__ = ["Connection"]
