"""OpenAI-compatible chat-completions provider built on httpx.

Maps the provider's HTTP semantics onto the pipeline's typed errors:

    401            → AuthenticationError
    403            → ModelBlockedError (caller may try a fallback model)
    429            → RateLimitError(retry_after from header or body)
    5xx, transport → NetworkError
    200, no text   → EmptyResponseError

Example::

    with ChatCompletionsProvider(api_key="gsk_...", base_url=URL) as provider:
        resp = provider.complete(
            [Message.system("..."), Message.user("...")],
            model="llama-3.1-8b-instant",
            response_format={"type": "json_object"},
            timeout=45,
        )
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from obit_pipeline.core.errors import (
    AuthenticationError,
    EmptyResponseError,
    ModelBlockedError,
    NetworkError,
    RateLimitError,
    ResponseFormatError,
)
from obit_pipeline.llm.protocol import LLMResponse, Message, TokenUsage

logger = logging.getLogger(__name__)

_RETRY_IN_BODY = re.compile(r"try again in\s+(?:(\d+)m)?\s*([\d.]+)s", re.IGNORECASE)


def _parse_retry_after(response: httpx.Response) -> int | None:
    """Seconds to wait, from the ``retry-after`` header or the error body."""
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(0, int(float(header)))
        except ValueError:
            pass
    match = _RETRY_IN_BODY.search(response.text or "")
    if match:
        minutes = int(match.group(1) or 0)
        return int(minutes * 60 + float(match.group(2))) + 1
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "")[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", ""))[:200]
    return str(error or body)[:200]


@dataclass(frozen=True)
class CredentialCheck:
    """Outcome of a credential probe."""

    valid: bool
    status: str
    message: str
    model: str | None = None


class ChatCompletionsProvider:
    """Synchronous chat-completions client.

    Args:
        api_key: Bearer token
        base_url: Full chat-completions endpoint URL
        timeout: Default per-request timeout in seconds
        transport: Optional httpx transport (``httpx.MockTransport`` in tests)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 45.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    def __enter__(self) -> ChatCompletionsProvider:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def complete(
        self,
        messages: list[Message],
        model: str,
        *,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        response_format: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "top_p": 0.95,
        }
        if response_format is not None:
            payload["response_format"] = response_format

        try:
            response = self._client.post(
                self.base_url,
                json=payload,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"LLM request timed out: {e}", cause=e).with_context(model=model) from e
        except httpx.TransportError as e:
            raise NetworkError(f"LLM transport error: {e}", cause=e).with_context(model=model) from e

        self._raise_for_status(response, model)

        try:
            body = response.json()
        except ValueError as e:
            raise ResponseFormatError(
                "LLM returned a non-JSON envelope", reason="bad_envelope", cause=e
            ).with_context(model=model, http_status=response.status_code) from e
        if not isinstance(body, dict):
            raise ResponseFormatError("LLM envelope is not an object", reason="bad_envelope")

        choices = body.get("choices") or []
        choice = choices[0] if isinstance(choices, list) and choices else {}
        if not isinstance(choice, dict):
            raise ResponseFormatError("LLM choice is not an object", reason="bad_envelope").with_context(
                model=model, http_status=response.status_code
            )
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise ResponseFormatError("LLM message is not an object", reason="bad_envelope").with_context(
                model=model, http_status=response.status_code
            )
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise ResponseFormatError("LLM content is not text", reason="bad_envelope").with_context(
                model=model, http_status=response.status_code
            )
        content = content.strip()
        if not content:
            raise EmptyResponseError().with_context(model=model, http_status=response.status_code)

        usage = body.get("usage") or {}
        return LLMResponse(
            content=content,
            model=body.get("model") or model,
            usage=TokenUsage(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            ),
            metadata={"provider": "chat-completions", "id": body.get("id")},
            finish_reason=choice.get("finish_reason") or "stop",
        )

    def _raise_for_status(self, response: httpx.Response, model: str) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = _error_message(response)
        if status == 401:
            raise AuthenticationError(f"API key rejected: {detail}").with_context(
                model=model, http_status=status
            )
        if status == 403:
            raise ModelBlockedError(
                f"Model {model} not permitted for this key: {detail}", model=model
            ).with_context(http_status=status)
        if status == 429:
            retry_after = _parse_retry_after(response)
            raise RateLimitError(
                f"Provider rate limit: {detail}", retry_after=retry_after
            ).with_context(model=model, http_status=status)
        raise NetworkError(f"LLM HTTP {status}: {detail}").with_context(model=model, http_status=status)

    def check_credentials(
        self,
        models: list[str],
        timeout: float = 15.0,
    ) -> CredentialCheck:
        """Probe the key with a one-token request against each model in turn.

        A 429 still proves the key is valid. 403 moves on to the next model.
        """
        probe = [Message.user("ping")]
        last_blocked: str | None = None
        for model in models:
            try:
                self.complete(probe, model, temperature=0.0, max_tokens=1, timeout=timeout)
            except AuthenticationError as e:
                return CredentialCheck(False, "invalid_key", e.message, model)
            except ModelBlockedError:
                logger.warning("llm.credential_probe_blocked  model=%s", model)
                last_blocked = model
                continue
            except RateLimitError:
                return CredentialCheck(True, "rate_limited", "Key valid (currently rate limited)", model)
            except ResponseFormatError:
                return CredentialCheck(True, "ok", "Key valid", model)
            except NetworkError as e:
                return CredentialCheck(False, "network_error", e.message, model)
            return CredentialCheck(True, "ok", "Key valid", model)
        return CredentialCheck(
            False, "model_blocked", "Key is blocked from every configured model", last_blocked
        )


__all__ = ["ChatCompletionsProvider", "CredentialCheck"]
