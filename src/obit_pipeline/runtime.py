"""
Runtime wiring: settings → connection → stores → limiter → clients → stages.

Every CLI invocation builds one ``PipelineRuntime``, uses it for a single
stage run and closes it. Tests build the same object around an in-memory
database and a mock provider.

Example:
    >>> settings = PipelineSettings(_env_file=None, database_url="memory", llm_api_key="k")
    >>> with create_runtime(settings, provider=MockLLMProvider()) as rt:
    ...     rt.rewrite_stage.run().selected
    0
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from obit_pipeline.core.advisory import AdvisoryStore
from obit_pipeline.core.connection import ConnectionInfo, SqliteConnection, create_connection
from obit_pipeline.core.errors import ConfigError
from obit_pipeline.core.repository import RecordRepository
from obit_pipeline.core.settings import PipelineSettings
from obit_pipeline.core.timestamps import utc_now
from obit_pipeline.execution.token_budget import TokenBudgetLimiter
from obit_pipeline.llm.client import BudgetedLLMClient
from obit_pipeline.llm.http import ChatCompletionsProvider
from obit_pipeline.llm.protocol import LLMProvider
from obit_pipeline.pipeline.audit import AuditStage
from obit_pipeline.pipeline.idle_gate import AUDIT_CONSUMER, IdleGate
from obit_pipeline.pipeline.rewrite import RewriteStage

REWRITE_CONSUMER = "rewriter"


def create_provider(settings: PipelineSettings) -> ChatCompletionsProvider:
    """HTTP provider from settings; a missing API key is a configuration error."""
    api_key = settings.api_key
    if not api_key:
        raise ConfigError("No LLM API key configured (set OBIT_LLM_API_KEY)").with_context(
            operation="create_provider"
        )
    return ChatCompletionsProvider(api_key, settings.llm_api_url, timeout=settings.rewrite_timeout)


@dataclass
class PipelineRuntime:
    """All collaborators of one pipeline invocation."""

    settings: PipelineSettings
    conn: SqliteConnection
    info: ConnectionInfo
    repo: RecordRepository
    advisory: AdvisoryStore
    limiter: TokenBudgetLimiter
    provider: LLMProvider
    rewrite_client: BudgetedLLMClient
    audit_client: BudgetedLLMClient
    idle_gate: IdleGate
    rewrite_stage: RewriteStage
    audit_stage: AuditStage
    _closers: list[Callable[[], None]] = field(default_factory=list, repr=False)

    def close(self) -> None:
        for closer in self._closers:
            closer()
        self._closers.clear()

    def __enter__(self) -> PipelineRuntime:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def create_runtime(
    settings: PipelineSettings,
    *,
    provider: LLMProvider | None = None,
    conn: SqliteConnection | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utc_now,
    epoch_clock: Callable[[], float] = time.time,
    monotonic: Callable[[], float] = time.monotonic,
) -> PipelineRuntime:
    """Build a runtime.

    Without ``provider`` the HTTP provider is created from settings (and
    closed with the runtime). Without ``conn`` the database at
    ``settings.database_url`` is opened and its tables are created.
    """
    closers: list[Callable[[], None]] = []

    if conn is None:
        conn, info = create_connection(settings.database_url, init_schema=True)
        closers.append(conn.close)
    else:
        info = ConnectionInfo(backend="sqlite", persistent=False, url="external")

    if provider is None:
        http_provider = create_provider(settings)
        closers.append(http_provider.close)
        provider = http_provider

    repo = RecordRepository(conn, clock=clock)
    advisory = AdvisoryStore(conn, clock=clock)
    limiter = TokenBudgetLimiter.from_settings(conn, settings, clock=epoch_clock)

    rewrite_client = BudgetedLLMClient(
        provider,
        limiter,
        consumer=REWRITE_CONSUMER,
        estimate=settings.rewrite_token_estimate,
        model=settings.rewrite_model,
        fallback_models=settings.fallback_models,
        timeout=settings.rewrite_timeout,
        fallback_pause=settings.fallback_pause_seconds,
        sleep=sleep,
    )
    audit_client = BudgetedLLMClient(
        provider,
        limiter,
        consumer=AUDIT_CONSUMER,
        estimate=settings.audit_token_estimate,
        model=settings.audit_model,
        fallback_models=settings.fallback_models,
        timeout=settings.audit_timeout,
        fallback_pause=settings.fallback_pause_seconds,
        sleep=sleep,
    )

    idle_gate = IdleGate(repo, advisory, limiter, settings, clock=clock)
    rewrite_stage = RewriteStage(
        repo, rewrite_client, advisory, settings, sleep=sleep, clock=clock, monotonic=monotonic
    )
    audit_stage = AuditStage(
        repo, audit_client, advisory, idle_gate, settings, sleep=sleep, clock=clock, monotonic=monotonic
    )

    return PipelineRuntime(
        settings=settings,
        conn=conn,
        info=info,
        repo=repo,
        advisory=advisory,
        limiter=limiter,
        provider=provider,
        rewrite_client=rewrite_client,
        audit_client=audit_client,
        idle_gate=idle_gate,
        rewrite_stage=rewrite_stage,
        audit_stage=audit_stage,
        _closers=closers,
    )


__all__ = ["PipelineRuntime", "create_runtime", "create_provider", "REWRITE_CONSUMER"]
