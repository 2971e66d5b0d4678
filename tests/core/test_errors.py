"""Tests for obit_pipeline.core.errors module."""

import pytest

from obit_pipeline.core.errors import (
    AuthenticationError,
    AuthError,
    BudgetExhaustedError,
    ConfigError,
    EmptyResponseError,
    ErrorCategory,
    ErrorContext,
    ModelBlockedError,
    NetworkError,
    PipelineError,
    RateLimitError,
    ResponseFormatError,
    StorageError,
    TransientError,
    ValidationError,
    is_retryable,
)


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_empty_context_serializes_to_empty_dict(self):
        """Unset fields are left out of the log payload."""
        assert ErrorContext().to_dict() == {}

    def test_context_with_fields(self):
        """Set fields and metadata are merged into one dict."""
        ctx = ErrorContext(stage="rewrite", record_id=7, metadata={"attempt": 2})
        assert ctx.to_dict() == {"stage": "rewrite", "record_id": 7, "attempt": 2}


class TestPipelineError:
    """Test the base error."""

    def test_defaults(self):
        err = PipelineError("boom")
        assert err.message == "boom"
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert err.retry_after is None

    def test_with_context_sets_known_fields_and_metadata(self):
        """Known fields land on the context, unknown keys in metadata."""
        err = StorageError("update failed").with_context(record_id=3, operation="update", table="x")
        assert err.context.record_id == 3
        assert err.context.operation == "update"
        assert err.context.metadata == {"table": "x"}

    def test_cause_is_chained(self):
        cause = ValueError("inner")
        err = PipelineError("outer", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "inner"

    def test_to_dict(self):
        err = RateLimitError("slow down", retry_after=12).with_context(consumer="rewriter")
        data = err.to_dict()
        assert data["error_type"] == "RateLimitError"
        assert data["category"] == "NETWORK"
        assert data["retryable"] is True
        assert data["retry_after"] == 12
        assert data["context"] == {"consumer": "rewriter"}


class TestHierarchy:
    """Each failure domain maps to one branch of the hierarchy."""

    def test_transient_errors_are_retryable(self):
        assert NetworkError("x").retryable
        assert RateLimitError().retryable
        assert isinstance(RateLimitError(), TransientError)

    def test_budget_refusal_is_a_rate_limit(self):
        """A local budget refusal is handled exactly like a provider 429."""
        err = BudgetExhaustedError("no budget", retry_after=40)
        assert isinstance(err, RateLimitError)
        assert err.category == ErrorCategory.BUDGET
        assert err.retry_after == 40

    def test_auth_errors_are_not_retryable(self):
        assert isinstance(AuthenticationError("bad key"), AuthError)
        assert not AuthenticationError("bad key").retryable
        blocked = ModelBlockedError("blocked", model="m1")
        assert isinstance(blocked, AuthError)
        assert blocked.model == "m1"
        assert blocked.context.model == "m1"

    def test_validation_reason(self):
        assert ValidationError("bad").reason == "validation_failed"
        assert ResponseFormatError("bad", reason="bad_envelope").reason == "bad_envelope"
        empty = EmptyResponseError()
        assert isinstance(empty, ValidationError)
        assert empty.reason == "empty_response"

    def test_categories(self):
        assert StorageError("x").category == ErrorCategory.STORAGE
        assert ConfigError("x").category == ErrorCategory.CONFIG
        assert ValidationError("x").category == ErrorCategory.VALIDATION


class TestIsRetryable:
    """Test is_retryable helper."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (NetworkError("x"), True),
            (AuthenticationError("x"), False),
            (ValidationError("x"), False),
            (ConnectionError(), True),
            (TimeoutError(), True),
            (ValueError(), False),
        ],
    )
    def test_is_retryable(self, error, expected):
        assert is_retryable(error) is expected

    def test_instance_override(self):
        assert is_retryable(StorageError("locked", retryable=True))
