from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from codeloop.stream_events import StreamEvent
from codeloop.tool import ToolDescriptor


@dataclass
class ModelRequest:
    model: str
    max_output_tokens: int
    system_prompt: str
    messages: list[dict]
    tools: list[ToolDescriptor] = field(default_factory=list)
    temperature: float = 1.0


@runtime_checkable
class LLMProvider(Protocol):
    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Stream one response as typed events.

        Raises ``BackendUnavailableError`` for failures that may succeed on a
        later attempt and ``BackendFatalError`` for ones that never will.
        """
        ...

    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        """Non-streaming message creation (used for compaction/summarization)."""
        ...


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from codeloop.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from codeloop.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
