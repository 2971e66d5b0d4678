"""
Shared pytest fixtures for obit-pipeline tests.

This module provides:
- An in-memory SQLite connection with the pipeline tables
- A controllable clock (wall time, epoch seconds, monotonic, sleep)
- Settings that never read the environment's .env file
- Repository, advisory store, limiter and mock provider fixtures
- Builders for records and LLM JSON responses

Usage:
    def test_something(runtime, make_record, clock):
        record_id = make_record(name="Jane Doe")
        clock.advance(60)
        ...
"""

from __future__ import annotations

import json
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from obit_pipeline.core.advisory import AdvisoryStore
from obit_pipeline.core.connection import SqliteConnection
from obit_pipeline.core.repository import RecordRepository
from obit_pipeline.core.schema import create_pipeline_tables
from obit_pipeline.core.settings import PipelineSettings, clear_settings_cache
from obit_pipeline.execution.token_budget import TokenBudgetLimiter
from obit_pipeline.llm.mock import MockLLMProvider
from obit_pipeline.runtime import PipelineRuntime, create_runtime

ORIGINAL_TEXT = (
    "DOE, Jane Margaret. Peacefully at Sunnybrook Hospital in Toronto on March 2, 2025, "
    "Jane Doe passed away in her 79th year. Beloved wife of the late Robert Doe (2019). "
    "Loving mother of Anne and Paul. Visitation at Ridley Funeral Home, Toronto."
)

REWRITTEN_TEXT = (
    "Jane Margaret Doe died peacefully at Sunnybrook Hospital in Toronto on March 2, 2025, "
    "at the age of 78. She was predeceased by her husband, Robert Doe, and is remembered "
    "by her children, Anne and Paul. Visitation will be held at Ridley Funeral Home in Toronto."
)


class FakeClock:
    """Deterministic clock shared by every component under test.

    ``sleep`` records the requested delay and advances all clocks by it.
    """

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 3, 10, 12, 0, 5, tzinfo=UTC)
        self.mono = 1_000.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.mono += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


# =============================================================================
# Core fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings_cache() -> Generator[None, None, None]:
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def conn() -> Generator[SqliteConnection, None, None]:
    connection = SqliteConnection(":memory:")
    create_pipeline_tables(connection)
    yield connection
    connection.close()


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(
        _env_file=None,
        llm_api_key="test-key",
        database_url="memory",
        fallback_models=[],
    )


@pytest.fixture
def repo(conn: SqliteConnection, clock: FakeClock) -> RecordRepository:
    return RecordRepository(conn, clock=clock.now)


@pytest.fixture
def advisory(conn: SqliteConnection, clock: FakeClock) -> AdvisoryStore:
    return AdvisoryStore(conn, holder="test-holder", clock=clock.now)


@pytest.fixture
def limiter(conn: SqliteConnection, settings: PipelineSettings, clock: FakeClock) -> TokenBudgetLimiter:
    return TokenBudgetLimiter.from_settings(conn, settings, clock=clock.time)


@pytest.fixture
def provider() -> MockLLMProvider:
    return MockLLMProvider(usage_tokens=900)


@pytest.fixture
def runtime(
    settings: PipelineSettings,
    conn: SqliteConnection,
    provider: MockLLMProvider,
    clock: FakeClock,
) -> Generator[PipelineRuntime, None, None]:
    rt = create_runtime(
        settings,
        provider=provider,
        conn=conn,
        sleep=clock.sleep,
        clock=clock.now,
        epoch_clock=clock.time,
        monotonic=clock.monotonic,
    )
    yield rt
    rt.close()


# =============================================================================
# Builders
# =============================================================================


@pytest.fixture
def make_record(repo: RecordRepository) -> Callable[..., int]:
    """Insert a pending record; keyword arguments override columns."""

    def _make(name: str = "Jane Doe", original_text: str = ORIGINAL_TEXT, **fields: Any) -> int:
        return repo.insert(name, original_text, **fields)

    return _make


@pytest.fixture
def make_rewritten(make_record: Callable[..., int]) -> Callable[..., int]:
    """Insert a record that has been rewritten and awaits audit."""
    from obit_pipeline.core.hashing import content_hash

    def _make(text: str = REWRITTEN_TEXT, **fields: Any) -> int:
        values: dict[str, Any] = {
            "rewritten_text": text,
            "rewritten_hash": content_hash(text),
            "audit_status": "needs_audit",
            "date_of_death": "2025-03-02",
            "age": 78,
            "location": "Toronto",
        }
        values.update(fields)
        return make_record(**values)

    return _make


def rewrite_json(**overrides: Any) -> str:
    """A well-formed extraction + rewrite response."""
    body: dict[str, Any] = {
        "date_of_death": "2025-03-02",
        "date_of_birth": None,
        "age": 78,
        "location": "Toronto",
        "organization": "Ridley Funeral Home",
        "rewritten_text": REWRITTEN_TEXT,
    }
    body.update(overrides)
    return json.dumps(body)


def audit_json(**overrides: Any) -> str:
    """A well-formed audit response (``pass`` unless overridden)."""
    body: dict[str, Any] = {
        "status": "pass",
        "issues": [],
        "corrections": {},
        "confidence": 0.95,
        "recommendation": "pass",
    }
    body.update(overrides)
    return json.dumps(body)
