"""Budgeted LLM client: reservation discipline around one provider call.

ARCHITECTURE
────────────
::

    BudgetedLLMClient.complete(messages)
      1. limiter.reserve(estimate, consumer)  ── refused ─► BudgetExhaustedError
      2. provider.complete(primary model)
           └─ ModelBlockedError ─► pause, try next fallback model
      3a. success ─► limiter.record_actual(usage or estimate, consumer, estimate)
      3b. any error ─► limiter.release(estimate, consumer); re-raise

Every reservation is either released or trued-up exactly once.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from obit_pipeline.core.errors import BudgetExhaustedError, ConfigError, ModelBlockedError
from obit_pipeline.execution.token_budget import TokenBudgetLimiter
from obit_pipeline.llm.protocol import LLMProvider, LLMResponse, Message

logger = logging.getLogger(__name__)


class BudgetedLLMClient:
    """Calls a provider only after reserving budget for it.

    Args:
        provider: The LLM backend
        limiter: Shared token budget limiter
        consumer: Consumer name the limiter routes to a pool
        estimate: Fixed token estimate reserved per call
        model: Primary model
        fallback_models: Tried in order when the key is blocked from a model
        timeout: Per-call timeout in seconds
        fallback_pause: Seconds to wait before trying the next model
        sleep: Blocking sleep function
    """

    def __init__(
        self,
        provider: LLMProvider,
        limiter: TokenBudgetLimiter,
        *,
        consumer: str,
        estimate: int,
        model: str,
        fallback_models: Sequence[str] = (),
        timeout: float | None = None,
        fallback_pause: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.limiter = limiter
        self.consumer = consumer
        self.estimate = estimate
        self.model = model
        self.fallback_models = [m for m in fallback_models if m and m != model]
        if not model and not self.fallback_models:
            raise ConfigError("No model configured for LLM calls").with_context(consumer=consumer)
        self.timeout = timeout
        self.fallback_pause = fallback_pause
        self._sleep = sleep

    def complete(
        self,
        messages: list[Message],
        *,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        response_format: dict[str, Any] | None = None,
    ) -> LLMResponse:
        if not self.limiter.reserve(self.estimate, self.consumer):
            raise BudgetExhaustedError(
                "Shared token budget exhausted",
                retry_after=self.limiter.seconds_until_reset(),
            ).with_context(consumer=self.consumer)

        try:
            response = self._call_with_fallbacks(
                messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format=response_format,
            )
        except BaseException:
            self.limiter.release(self.estimate, self.consumer)
            raise

        actual = response.usage.total_tokens or self.estimate
        self.limiter.record_actual(actual, self.consumer, self.estimate)
        return response

    def _call_with_fallbacks(self, messages: list[Message], **kwargs: Any) -> LLMResponse:
        models = [m for m in (self.model, *self.fallback_models) if m]
        blocked: ModelBlockedError | None = None
        for index, model in enumerate(models):
            if index > 0:
                logger.warning(
                    "llm.model_fallback  consumer=%s  blocked=%s  trying=%s",
                    self.consumer,
                    models[index - 1],
                    model,
                )
                if self.fallback_pause > 0:
                    self._sleep(self.fallback_pause)
            try:
                return self.provider.complete(messages, model, timeout=self.timeout, **kwargs)
            except ModelBlockedError as e:
                blocked = e
                continue
        raise ModelBlockedError(
            f"Key blocked from all models: {', '.join(models)}",
            model=models[0],
            cause=blocked,
        ).with_context(consumer=self.consumer)


__all__ = ["BudgetedLLMClient"]
