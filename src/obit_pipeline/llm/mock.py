"""Mock LLM Provider: deterministic provider for testing.

ARCHITECTURE
────────────
::

    MockLLMProvider
      ├── .complete(messages, model) → LLMResponse (scripted) or raises
      ├── .calls                     → list of all calls made
      └── .call_count                → total calls

    Configuration:
      default_response   - text returned when the sequence is exhausted
      sequence           - items returned in order; an Exception instance
                           in the sequence is raised instead
      blocked_models     - models that raise ModelBlockedError
      usage_tokens       - total_tokens reported per call (None = estimate)

Example::

    provider = MockLLMProvider(sequence=[RateLimitError(retry_after=3), '{"status": "pass"}'])
    with pytest.raises(RateLimitError):
        provider.complete([Message.user("1")], "m")
    assert provider.complete([Message.user("2")], "m").content == '{"status": "pass"}'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from obit_pipeline.core.errors import EmptyResponseError, ModelBlockedError
from obit_pipeline.llm.protocol import LLMResponse, Message, TokenUsage


@dataclass
class MockLLMProvider:
    """Deterministic LLM provider for testing."""

    default_response: str = "Mock LLM response"
    sequence: list[str | Exception] = field(default_factory=list)
    blocked_models: set[str] = field(default_factory=set)
    usage_tokens: int | None = None
    tokens_per_char: float = 0.25

    calls: list[dict[str, Any]] = field(default_factory=list, repr=False)
    _sequence_index: int = field(default=0, repr=False)

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
        self.calls.append(
            {
                "messages": [m.to_dict() for m in messages],
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": response_format,
                "timeout": timeout,
            }
        )

        if model in self.blocked_models:
            raise ModelBlockedError(f"Model {model} blocked", model=model)

        if self._sequence_index < len(self.sequence):
            item = self.sequence[self._sequence_index]
            self._sequence_index += 1
        else:
            item = self.default_response

        if isinstance(item, Exception):
            raise item
        if not item.strip():
            raise EmptyResponseError().with_context(model=model)

        prompt_text = " ".join(m.content for m in messages)
        prompt_tokens = max(1, int(len(prompt_text) * self.tokens_per_char))
        completion_tokens = max(1, int(len(item) * self.tokens_per_char))
        total = self.usage_tokens if self.usage_tokens is not None else prompt_tokens + completion_tokens
        return LLMResponse(
            content=item,
            model=model,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total,
            ),
            metadata={"provider": "mock"},
        )

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def reset(self) -> None:
        self.calls.clear()
        self._sequence_index = 0


__all__ = ["MockLLMProvider"]
