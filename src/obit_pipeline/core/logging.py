"""
Structured logging for the obituary pipeline.

Manifesto:
    Batch stages run unattended under a scheduler, so every log line must
    be machine-readable and carry the record it is about. This module:

    - **Structures:** JSON lines for log aggregation, console output on a TTY
    - **Correlates:** ``stage`` / ``lock_token`` bound for the length of a
      batch via contextvars, ``record_id`` passed per event
    - **Unifies:** stdlib loggers (token budget, advisory store, repository)
      are rendered by the same processor chain as structlog loggers
    - **Redacts:** credential-looking keys never reach the output

Architecture:
    ::

        configure_logging(level="INFO", json_format=None)
            │
            ▼
        shared chain (structlog and stdlib records):
          merge_contextvars ─ add_log_level ─ add_logger_name
          ─ TimeStamper(iso) ─ _add_service ─ _redact_secrets
            │
            ▼
        ProcessorFormatter on one stderr handler:
          JSONRenderer | ConsoleRenderer

        logger = get_logger(__name__)
        logger.info("rewrite.record_succeeded", record_id=7, warnings=1)

    Logs go to stderr so ``--json`` command output on stdout stays
    parseable.

Tags:
    logging, structlog, observability, json-logging

Doc-Types:
    - API Reference
    - Observability Guide
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SERVICE = "obit-pipeline"

_SECRET_KEYS = frozenset({"api_key", "llm_api_key", "authorization", "token_secret"})
_HANDLER_NAME = "obit-pipeline"


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE)
    return event_dict


def _redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in _SECRET_KEYS & event_dict.keys():
        event_dict[key] = "***"
    return event_dict


class _StderrHandler(logging.StreamHandler):
    """Writes to whatever ``sys.stderr`` is at emit time."""

    def __init__(self) -> None:
        super().__init__(sys.stderr)

    @property
    def stream(self) -> Any:
        return sys.stderr

    @stream.setter
    def stream(self, value: Any) -> None:
        pass


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service,
        _redact_secrets,
    ]


def configure_logging(level: str = "INFO", json_format: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger for this process.

    Safe to call more than once; the handler installed by a previous call is
    replaced.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON lines, False for the console renderer,
            None to pick JSON unless stderr is a TTY
    """
    if json_format is None:
        json_format = not sys.stderr.isatty()
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer: Processor
    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *([structlog.processors.format_exc_info] if json_format else []),
            renderer,
        ],
    )
    handler = _StderrHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


class LogContext:
    """Bind keys to every log line emitted inside the block.

    Example:
        with LogContext(stage="rewrite", lock_token=lease.token):
            logger.info("rewrite.record_started", record_id=7)
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


__all__ = ["configure_logging", "get_logger", "LogContext", "SERVICE"]
