"""LLM access: provider protocol, HTTP and mock providers, budgeted client."""

from obit_pipeline.llm.client import BudgetedLLMClient
from obit_pipeline.llm.http import ChatCompletionsProvider, CredentialCheck
from obit_pipeline.llm.mock import MockLLMProvider
from obit_pipeline.llm.protocol import LLMProvider, LLMResponse, Message, Role, TokenUsage

__all__ = [
    "BudgetedLLMClient",
    "ChatCompletionsProvider",
    "CredentialCheck",
    "MockLLMProvider",
    "LLMProvider",
    "LLMResponse",
    "Message",
    "Role",
    "TokenUsage",
]
