"""
Core primitives shared by both pipeline stages.

Record storage, the advisory key/value and lock store, typed errors,
structured logging and settings. Nothing in here talks to the LLM.
"""

from obit_pipeline.core.advisory import AdvisoryStore, Lease
from obit_pipeline.core.connection import SqliteConnection, create_connection
from obit_pipeline.core.errors import (
    AuthError,
    ConfigError,
    ErrorCategory,
    PipelineError,
    StorageError,
    TransientError,
    ValidationError,
)
from obit_pipeline.core.logging import configure_logging, get_logger
from obit_pipeline.core.records import AuditStatus, QuarantineMarker, Record, RecordStatus
from obit_pipeline.core.repository import RecordRepository
from obit_pipeline.core.schema import create_pipeline_tables
from obit_pipeline.core.settings import PipelineSettings, get_settings

__all__ = [
    "AdvisoryStore",
    "Lease",
    "SqliteConnection",
    "create_connection",
    "AuthError",
    "ConfigError",
    "ErrorCategory",
    "PipelineError",
    "StorageError",
    "TransientError",
    "ValidationError",
    "configure_logging",
    "get_logger",
    "AuditStatus",
    "QuarantineMarker",
    "Record",
    "RecordStatus",
    "RecordRepository",
    "create_pipeline_tables",
    "PipelineSettings",
    "get_settings",
]
