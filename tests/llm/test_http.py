"""Tests for obit_pipeline.llm.http (httpx.MockTransport, no network)."""

import json

import httpx
import pytest

from obit_pipeline.core.errors import (
    AuthenticationError,
    EmptyResponseError,
    ModelBlockedError,
    NetworkError,
    RateLimitError,
    ResponseFormatError,
)
from obit_pipeline.llm.http import ChatCompletionsProvider
from obit_pipeline.llm.protocol import Message

URL = "https://llm.test/v1/chat/completions"


def completion(content, model="m1", total_tokens=321):
    return {
        "id": "cmpl-1",
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 300, "completion_tokens": 21, "total_tokens": total_tokens},
    }


def make_provider(handler):
    return ChatCompletionsProvider("gsk_test", URL, timeout=5.0, transport=httpx.MockTransport(handler))


MESSAGES = [Message.system("be brief"), Message.user("hello")]


class TestComplete:
    """Test the success path."""

    def test_parses_envelope(self):
        provider = make_provider(lambda request: httpx.Response(200, json=completion("  hi there  ")))
        response = provider.complete(MESSAGES, "m1")
        assert response.content == "hi there"
        assert response.model == "m1"
        assert response.usage.total_tokens == 321
        assert response.finish_reason == "stop"
        assert response.metadata["id"] == "cmpl-1"

    def test_request_payload(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion("{}"))

        with make_provider(handler) as provider:
            provider.complete(
                MESSAGES, "m1", temperature=0.1, max_tokens=50, response_format={"type": "json_object"}
            )

        assert seen["auth"] == "Bearer gsk_test"
        body = seen["body"]
        assert body["model"] == "m1"
        assert body["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hello"},
        ]
        assert body["temperature"] == 0.1
        assert body["max_tokens"] == 50
        assert body["top_p"] == 0.95
        assert body["response_format"] == {"type": "json_object"}

    def test_no_response_format_by_default(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion("ok"))

        make_provider(handler).complete(MESSAGES, "m1")
        assert "response_format" not in seen["body"]

    def test_missing_usage_is_zero(self):
        body = completion("ok")
        del body["usage"]
        response = make_provider(lambda request: httpx.Response(200, json=body)).complete(MESSAGES, "m1")
        assert response.usage.total_tokens == 0


class TestErrorMapping:
    """HTTP semantics map onto the typed errors."""

    def test_401(self):
        provider = make_provider(
            lambda request: httpx.Response(401, json={"error": {"message": "Invalid API Key"}})
        )
        with pytest.raises(AuthenticationError, match="Invalid API Key") as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.context.http_status == 401

    def test_403(self):
        provider = make_provider(lambda request: httpx.Response(403, json={"error": {"message": "blocked"}}))
        with pytest.raises(ModelBlockedError) as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.model == "m1"

    def test_429_retry_after_header(self):
        provider = make_provider(
            lambda request: httpx.Response(429, headers={"retry-after": "7"}, json={"error": {"message": "slow"}})
        )
        with pytest.raises(RateLimitError) as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.retry_after == 7

    def test_429_retry_after_in_body(self):
        message = "Rate limit reached for tokens per minute. Please try again in 7.5s."
        provider = make_provider(lambda request: httpx.Response(429, json={"error": {"message": message}}))
        with pytest.raises(RateLimitError) as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.retry_after == 8

    def test_429_retry_after_minutes_in_body(self):
        provider = make_provider(lambda request: httpx.Response(429, text="Please try again in 1m2.5s"))
        with pytest.raises(RateLimitError) as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.retry_after == 63

    def test_429_without_hint(self):
        provider = make_provider(lambda request: httpx.Response(429, json={"error": {"message": "slow"}}))
        with pytest.raises(RateLimitError) as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.retry_after is None

    @pytest.mark.parametrize("status", [400, 500, 503])
    def test_other_statuses_are_network_errors(self, status):
        provider = make_provider(lambda request: httpx.Response(status, text="upstream failure"))
        with pytest.raises(NetworkError) as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.context.http_status == status

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError, match="transport"):
            make_provider(handler).complete(MESSAGES, "m1")

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(NetworkError, match="timed out"):
            make_provider(handler).complete(MESSAGES, "m1")

    def test_non_json_envelope(self):
        provider = make_provider(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        with pytest.raises(ResponseFormatError) as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.reason == "bad_envelope"

    @pytest.mark.parametrize("content", ["", "   ", None])
    def test_empty_content(self, content):
        provider = make_provider(lambda request: httpx.Response(200, json=completion(content)))
        with pytest.raises(EmptyResponseError):
            provider.complete(MESSAGES, "m1")

    def test_no_choices(self):
        provider = make_provider(lambda request: httpx.Response(200, json={"choices": []}))
        with pytest.raises(EmptyResponseError):
            provider.complete(MESSAGES, "m1")

    def test_null_message(self):
        body = {"choices": [{"message": None, "finish_reason": "stop"}]}
        provider = make_provider(lambda request: httpx.Response(200, json=body))
        with pytest.raises(EmptyResponseError):
            provider.complete(MESSAGES, "m1")

    @pytest.mark.parametrize(
        "choices",
        [
            ["plain text"],
            [{"message": "plain text"}],
            [{"message": {"role": "assistant", "content": {"text": "hi"}}}],
        ],
    )
    def test_malformed_choice(self, choices):
        provider = make_provider(lambda request: httpx.Response(200, json={"choices": choices}))
        with pytest.raises(ResponseFormatError) as exc_info:
            provider.complete(MESSAGES, "m1")
        assert exc_info.value.reason == "bad_envelope"


class TestCheckCredentials:
    """Test the key probe."""

    def test_valid_key(self):
        provider = make_provider(lambda request: httpx.Response(200, json=completion("p")))
        check = provider.check_credentials(["m1"])
        assert (check.valid, check.status, check.model) == (True, "ok", "m1")

    def test_invalid_key(self):
        provider = make_provider(lambda request: httpx.Response(401, json={"error": {"message": "bad"}}))
        check = provider.check_credentials(["m1", "m2"])
        assert (check.valid, check.status) == (False, "invalid_key")

    def test_blocked_model_falls_through(self):
        def handler(request):
            model = json.loads(request.content)["model"]
            if model == "m1":
                return httpx.Response(403, json={"error": {"message": "blocked"}})
            return httpx.Response(200, json=completion("p", model=model))

        check = make_provider(handler).check_credentials(["m1", "m2"])
        assert (check.valid, check.status, check.model) == (True, "ok", "m2")

    def test_all_models_blocked(self):
        provider = make_provider(lambda request: httpx.Response(403, json={"error": {"message": "blocked"}}))
        check = provider.check_credentials(["m1", "m2"])
        assert (check.valid, check.status, check.model) == (False, "model_blocked", "m2")

    def test_rate_limited_key_is_valid(self):
        provider = make_provider(lambda request: httpx.Response(429, json={"error": {"message": "slow"}}))
        check = provider.check_credentials(["m1"])
        assert (check.valid, check.status) == (True, "rate_limited")

    def test_one_token_reply_counts_as_valid(self):
        provider = make_provider(lambda request: httpx.Response(200, json=completion("")))
        assert provider.check_credentials(["m1"]).valid

    def test_network_error(self):
        provider = make_provider(lambda request: httpx.Response(502, text="bad gateway"))
        check = provider.check_credentials(["m1"])
        assert (check.valid, check.status) == (False, "network_error")
