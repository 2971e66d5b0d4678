"""
Root Typer application for the ``obit-pipeline`` CLI.

The scheduler calls ``obit-pipeline rewrite`` and ``obit-pipeline audit`` on
a fixed cadence; operators use ``status`` and ``check-key``; the ingestion
job reports its activity through the ``ingestion`` sub-commands so the
audit stage's idle gate can see it.
"""

from __future__ import annotations

from datetime import timedelta

import typer

from obit_pipeline import __version__
from obit_pipeline.cli.utils import fail, load_settings, output
from obit_pipeline.core.advisory import (
    AdvisoryStore,
    mark_ingestion_finished,
    mark_ingestion_started,
    next_ingestion_at,
    schedule_next_ingestion,
)
from obit_pipeline.core.connection import SqliteConnection, create_connection
from obit_pipeline.core.errors import ConfigError, PipelineError
from obit_pipeline.core.repository import RecordRepository
from obit_pipeline.core.settings import PipelineSettings
from obit_pipeline.core.timestamps import from_iso8601, to_iso8601, utc_now
from obit_pipeline.execution.token_budget import TokenBudgetLimiter
from obit_pipeline.pipeline.idle_gate import IdleGate
from obit_pipeline.runtime import create_provider, create_runtime

app = typer.Typer(
    name="obit-pipeline",
    help="obit-pipeline: LLM rewrite and fact-audit stages for obituary records.",
    no_args_is_help=True,
)

ingestion_app = typer.Typer(no_args_is_help=True)
app.add_typer(ingestion_app, name="ingestion", help="Report ingestion activity to the idle gate.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"obit-pipeline {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """obit-pipeline CLI: run stages, inspect queues, manage ingestion flags."""


# ── Database ─────────────────────────────────────────────────────────────


@app.command("init-db")
def init_db(
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL or path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Create the pipeline tables (idempotent)."""
    settings = load_settings(database)
    try:
        conn, info = create_connection(settings.database_url, init_schema=True)
    except ConfigError as e:
        fail(e.message)
    conn.close()
    output(
        {"backend": info.backend, "path": info.resolved_path or info.url, "initialized": True},
        as_json=json_out,
        title="Database Init",
    )


# ── Stages ───────────────────────────────────────────────────────────────


@app.command()
def rewrite(
    batch_size: int | None = typer.Option(None, "--batch-size", "-n", min=1, help="Records per batch"),
    drain: bool = typer.Option(False, "--drain", help="Keep running batches until the queue is empty"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run the rewrite stage once (or drain the queue)."""
    settings = load_settings(database)
    try:
        with create_runtime(settings) as rt:
            stage = rt.rewrite_stage
            result = stage.drain(batch_size) if drain else stage.run(batch_size)
    except PipelineError as e:
        fail(e.message)
    output(result, as_json=json_out, title="Rewrite")
    if result.auth_error:
        raise typer.Exit(code=1)


@app.command()
def audit(
    batch_size: int | None = typer.Option(None, "--batch-size", "-n", min=1, help="Records per batch"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run the audit stage once, if the idle gate is open."""
    settings = load_settings(database)
    try:
        with create_runtime(settings) as rt:
            result = rt.audit_stage.run(batch_size)
    except PipelineError as e:
        fail(e.message)
    output(result, as_json=json_out, title="Audit")
    if result.auth_error:
        raise typer.Exit(code=1)


# ── Operator views ───────────────────────────────────────────────────────


@app.command()
def status(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Queue counts, token budget usage, active flags and the idle gate."""
    settings = load_settings(database)
    conn, _info = create_connection(settings.database_url, init_schema=True)
    try:
        repo = RecordRepository(conn)
        advisory = AdvisoryStore(conn)
        limiter = TokenBudgetLimiter.from_settings(conn, settings)
        gate = IdleGate(repo, advisory, limiter, settings).evaluate()
        report = {
            "queue": repo.queue_stats(settings.quarantine_seconds),
            "budget": limiter.stats(),
            "advisory": advisory.list_active(),
            "audit_gate": {"open": gate.open, "reason": gate.reason, "checks": gate.checks},
        }
    except PipelineError as e:
        fail(e.message)
    finally:
        conn.close()
    output(report, as_json=json_out, title="Pipeline Status")


@app.command()
def flagged(
    limit: int = typer.Option(50, "--limit", "-n", min=1),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Records flagged by the audit or held for admin review."""
    settings = load_settings(database)
    conn, _info = create_connection(settings.database_url, init_schema=True)
    try:
        records = RecordRepository(conn).get_flagged(limit)
    except PipelineError as e:
        fail(e.message)
    finally:
        conn.close()
    rows = [
        {
            "id": r.id,
            "name": r.name,
            "status": r.status.value,
            "audit_status": r.audit_status.value if r.audit_status else None,
            "requeue_count": r.requeue_count,
            "reason": r.audit_reason,
        }
        for r in records
    ]
    output({"count": len(rows), "records": rows}, as_json=json_out, title="Flagged Records")


@app.command("check-key")
def check_key(
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Probe the configured API key against the rewrite and fallback models."""
    settings = load_settings()
    try:
        provider = create_provider(settings)
    except ConfigError as e:
        fail(e.message)
    models = [settings.rewrite_model, *[m for m in settings.fallback_models if m != settings.rewrite_model]]
    with provider:
        check = provider.check_credentials(models, timeout=settings.credential_check_timeout)
    output(
        {"valid": check.valid, "status": check.status, "message": check.message, "model": check.model},
        as_json=json_out,
        title="API Key",
    )
    if not check.valid:
        raise typer.Exit(code=1)


# ── Ingestion flags ──────────────────────────────────────────────────────


def _ingestion_store(database: str | None) -> tuple[PipelineSettings, SqliteConnection, AdvisoryStore]:
    settings = load_settings(database)
    conn, _info = create_connection(settings.database_url, init_schema=True)
    return settings, conn, AdvisoryStore(conn, holder="ingestion")


@ingestion_app.command("start")
def ingestion_start(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Mark ingestion as running (closes the audit gate)."""
    settings, conn, store = _ingestion_store(database)
    try:
        lease = mark_ingestion_started(store, settings.ingestion_lock_ttl)
    finally:
        conn.close()
    if lease is None:
        fail("ingestion already marked as running by another holder")
    output(
        {"running": True, "token": lease.token, "expires_at": to_iso8601(lease.expires_at)},
        as_json=json_out,
        title="Ingestion",
    )


@ingestion_app.command("finish")
def ingestion_finish(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Mark ingestion as finished and open the post-ingestion cooldown."""
    settings, conn, store = _ingestion_store(database)
    try:
        mark_ingestion_finished(store, settings.ingestion_cooldown_seconds)
    finally:
        conn.close()
    output(
        {"running": False, "cooldown_seconds": settings.ingestion_cooldown_seconds},
        as_json=json_out,
        title="Ingestion",
    )


@ingestion_app.command("schedule")
def ingestion_schedule(
    at: str | None = typer.Option(None, "--at", help="ISO-8601 time of the next ingestion run"),
    in_minutes: int | None = typer.Option(None, "--in-minutes", min=0, help="Minutes from now"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Record when the scheduler will next run ingestion."""
    if (at is None) == (in_minutes is None):
        fail("pass exactly one of --at or --in-minutes", code=2)
    if at is not None:
        try:
            when = from_iso8601(at)
        except ValueError:
            fail(f"not an ISO-8601 time: {at}", code=2)
    else:
        when = utc_now() + timedelta(minutes=in_minutes)

    _settings, conn, store = _ingestion_store(database)
    try:
        schedule_next_ingestion(store, when)
        stored = next_ingestion_at(store)
    finally:
        conn.close()
    output({"next_run_at": to_iso8601(stored)}, as_json=json_out, title="Ingestion")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
