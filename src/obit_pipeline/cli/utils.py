"""
CLI utility helpers: settings loading and output formatting.
"""

from __future__ import annotations

import json
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.markup import escape

from obit_pipeline.core.logging import configure_logging
from obit_pipeline.core.settings import PipelineSettings, get_settings

console = Console()
err_console = Console(stderr=True)


def load_settings(database: str | None = None) -> PipelineSettings:
    """Read settings fresh for this invocation and configure logging."""
    settings = get_settings(_force_reload=True)
    if database:
        settings = settings.model_copy(update={"database_url": database})
    configure_logging(settings.log_level, json_format=settings.log_json)
    return settings


def _to_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a result object or dict to the terminal."""
    payload = _to_dict(data)
    if as_json:
        console.print_json(json.dumps(payload, default=str))
        return
    if title:
        console.print(f"[bold]{title}[/bold]")
    for key, value in payload.items():
        if isinstance(value, list) and value and isinstance(value[0], dict):
            console.print(f"  [cyan]{key}[/cyan]:")
            for item in value:
                console.print("    " + escape("  ".join(f"{k}={v}" for k, v in item.items())))
        else:
            console.print(f"  [cyan]{key}[/cyan]: {escape(str(value))}")


def fail(message: str, code: int = 1) -> NoReturn:
    """Print an error and exit with ``code``."""
    err_console.print(f"[bold red]Error[/bold red]: {escape(message)}")
    raise typer.Exit(code=code)
