"""LLM Provider Protocol: the interface both stages call through.

ARCHITECTURE
────────────
::

    LLMProvider (Protocol)
      └── .complete(messages, model, *, temperature, max_tokens,
                    response_format, timeout) → LLMResponse

    Message(role, content)        - chat message
    Role                          - system | user | assistant
    TokenUsage(prompt, completion, total)
    LLMResponse(content, model, usage, metadata, finish_reason)

Providers raise the typed errors of ``obit_pipeline.core.errors``
(``AuthenticationError``, ``ModelBlockedError``, ``RateLimitError``,
``NetworkError``, ``EmptyResponseError``) instead of returning status codes.

Related modules:
    http.py      - OpenAI-compatible chat-completions provider (httpx)
    mock.py      - MockLLMProvider for tests
    client.py    - budget reservation + model fallback around a provider
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class Role(str, Enum):
    """Message role in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A single chat message."""

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role=Role.ASSISTANT, content=content)

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class TokenUsage:
    """Token usage statistics for an LLM call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class LLMResponse:
    """Response from an LLM provider.

    Attributes:
        content: Generated text.
        model: Model identifier that actually answered.
        usage: Token usage reported by the provider (zeros if absent).
        metadata: Provider-specific metadata.
        finish_reason: Why generation stopped.
    """

    content: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    metadata: dict[str, Any] = field(default_factory=dict)
    finish_reason: str = "stop"


@runtime_checkable
class LLMProvider(Protocol):
    """Protocol for LLM backends."""

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
        """Generate a completion.

        Raises
        ------
        AuthenticationError, ModelBlockedError
            Authorization-class failures.
        RateLimitError
            Provider throttled the request; ``retry_after`` when known.
        NetworkError
            Transport failure, timeout or server error.
        EmptyResponseError
            The provider answered without content.
        """
        ...


__all__ = ["Role", "Message", "TokenUsage", "LLMResponse", "LLMProvider"]
