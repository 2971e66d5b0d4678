"""
Structured error types for the obituary pipeline.

Every failure the pipeline can observe is raised as a typed error that
carries its own retry semantics. Stage code never inspects HTTP status codes
or sqlite exceptions directly; it branches on these classes instead.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure domain
    - **Explicit Retry Semantics:** Each error knows if it is retryable
    - **Rich Context:** Errors carry record id, stage, model and consumer
    - **Error Chaining:** The underlying exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       PipelineError                             │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  TransientError        AuthError            ValidationError     │
        │  (retryable=True)      (AUTH)               (VALIDATION)        │
        │       │                    │                     │              │
        │  NetworkError          AuthenticationError  ResponseFormatError │
        │  RateLimitError        ModelBlockedError    EmptyResponseError  │
        │   └ BudgetExhaustedError                                        │
        │                                                                 │
        │  StorageError          ConfigError                              │
        │  (STORAGE)             (CONFIG)                                 │
        └─────────────────────────────────────────────────────────────────┘

How the stages react:
    - TransientError: reservation released, record stays selectable,
      the next scheduled run picks it up.
    - AuthError: the whole batch aborts; logged at error level.
    - ValidationError: record-scoped, drives failure counters/quarantine.
    - StorageError: logged with record id and operation, counted as a
      failed item, the batch continues.

Examples:
    >>> err = RateLimitError("provider throttled", retry_after=17)
    >>> err.retryable, err.retry_after
    (True, 17)
    >>> err.with_context(record_id=42, consumer="rewriter").context.record_id
    42

Tags:
    error-handling, exception-hierarchy, retry-logic, llm, storage

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing, logging and retry decisions."""

    NETWORK = "NETWORK"  # Connection, timeout, provider throttling
    BUDGET = "BUDGET"  # Local token budget exhausted
    AUTH = "AUTH"  # Bad key, model blocked for the key
    VALIDATION = "VALIDATION"  # Malformed or implausible LLM output
    STORAGE = "STORAGE"  # Record or advisory store failures
    CONFIG = "CONFIG"  # Missing or invalid settings
    INTERNAL = "INTERNAL"  # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to a pipeline error.

    Only fields that were set are emitted by ``to_dict()`` so the log line
    stays short.

    Attributes:
        stage: Pipeline stage ("rewrite", "audit")
        record_id: Record being processed
        consumer: Token-budget consumer that made the call
        model: LLM model identifier
        operation: Storage or provider operation name
        http_status: HTTP status code if applicable
        metadata: Additional key-value pairs
    """

    stage: str | None = None
    record_id: int | None = None
    consumer: str | None = None
    model: str | None = None
    operation: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["stage", "record_id", "consumer", "model", "operation", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance.

    Examples:
        >>> err = PipelineError("boom")
        >>> err.category, err.retryable
        (<ErrorCategory.INTERNAL: 'INTERNAL'>, False)
        >>> PipelineError("boom").to_dict()["error_type"]
        'PipelineError'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> PipelineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StorageError("update failed").with_context(
                record_id=7, operation="update"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable on the next scheduled run)
# =============================================================================


class TransientError(PipelineError):
    """Temporary error that may succeed when the record is selected again."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Transport failure, timeout or 5xx from the LLM provider."""

    default_category = ErrorCategory.NETWORK


class RateLimitError(TransientError):
    """The provider throttled the request (HTTP 429)."""

    default_category = ErrorCategory.NETWORK

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class BudgetExhaustedError(RateLimitError):
    """The shared token budget refused a reservation. No request was sent."""

    default_category = ErrorCategory.BUDGET


# =============================================================================
# AUTH ERRORS (Abort the batch)
# =============================================================================


class AuthError(PipelineError):
    """Authorization-class failure. Retrying the next record cannot help."""

    default_category = ErrorCategory.AUTH
    default_retryable = False


class AuthenticationError(AuthError):
    """The API key was rejected (HTTP 401)."""

    pass


class ModelBlockedError(AuthError):
    """The key may not use the requested model (HTTP 403)."""

    def __init__(self, message: str, *, model: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.model = model
        if model is not None:
            self.context.model = model


# =============================================================================
# VALIDATION ERRORS (Record-scoped)
# =============================================================================


class ValidationError(PipelineError):
    """LLM output failed a hard validation rule for one record."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, message: str, *, reason: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.reason = reason or "validation_failed"


class ResponseFormatError(ValidationError):
    """The LLM response could not be parsed into the expected shape."""

    pass


class EmptyResponseError(ResponseFormatError):
    """The provider answered 200 but returned no content."""

    def __init__(self, message: str = "LLM returned empty content", **kwargs: Any):
        kwargs.setdefault("reason", "empty_response")
        super().__init__(message, **kwargs)


# =============================================================================
# STORAGE / CONFIG ERRORS
# =============================================================================


class StorageError(PipelineError):
    """Reading or writing the record or advisory store failed."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


class ConfigError(PipelineError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, PipelineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "PipelineError",
    "TransientError",
    "NetworkError",
    "RateLimitError",
    "BudgetExhaustedError",
    "AuthError",
    "AuthenticationError",
    "ModelBlockedError",
    "ValidationError",
    "ResponseFormatError",
    "EmptyResponseError",
    "StorageError",
    "ConfigError",
    "is_retryable",
]
