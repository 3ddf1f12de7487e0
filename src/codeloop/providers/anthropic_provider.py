from __future__ import annotations

from collections.abc import AsyncIterator

import anthropic
from loguru import logger
from tenacity import retry

from codeloop.errors import AgentLoopError, BackendFatalError, BackendUnavailableError
from codeloop.provider import ModelRequest
from codeloop.providers.common import default_retry_kwargs, ensure_user_first
from codeloop.stream_events import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    MessageStart,
    MessageStop,
    StreamEvent,
    StreamUsage,
)


def map_anthropic_error(ex: Exception) -> AgentLoopError:
    if isinstance(ex, (anthropic.AuthenticationError, anthropic.PermissionDeniedError, anthropic.NotFoundError)):
        return BackendFatalError(f"{type(ex).__name__}: {ex}")
    if isinstance(ex, (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.InternalServerError)):
        return BackendUnavailableError(f"{type(ex).__name__}: {ex}", retryable=True)
    if isinstance(ex, anthropic.APIStatusError):
        retryable = ex.status_code >= 500
        return BackendUnavailableError(f"{type(ex).__name__}: {ex}", retryable=retryable)
    return BackendUnavailableError(f"{type(ex).__name__}: {ex}", retryable=False)


def _usage_from(usage: object | None) -> StreamUsage:
    if usage is None:
        return StreamUsage()
    return StreamUsage(
        input_tokens=getattr(usage, "input_tokens", 0) or 0,
        output_tokens=getattr(usage, "output_tokens", 0) or 0,
        cache_read_tokens=getattr(usage, "cache_read_input_tokens", 0) or 0,
        cache_write_tokens=getattr(usage, "cache_creation_input_tokens", 0) or 0,
    )


def translate_event(event: object) -> list[StreamEvent]:
    """Map one raw SDK stream event onto zero or more typed events."""
    event_type = getattr(event, "type", "")
    if event_type == "message_start":
        message = event.message
        return [MessageStart(message_id=message.id, model=message.model, usage=_usage_from(message.usage))]
    if event_type == "content_block_start":
        block = event.content_block
        if block.type == "tool_use":
            return [ContentBlockStart(event.index, "tool_use", tool_use_id=block.id, tool_name=block.name)]
        out: list[StreamEvent] = [ContentBlockStart(event.index, block.type)]
        if block.type == "text" and getattr(block, "text", ""):
            out.append(ContentBlockDelta(event.index, text=block.text))
        return out
    if event_type == "content_block_delta":
        delta = event.delta
        if delta.type == "text_delta":
            return [ContentBlockDelta(event.index, text=delta.text)]
        if delta.type == "input_json_delta":
            return [ContentBlockDelta(event.index, partial_json=delta.partial_json)]
        return []
    if event_type == "content_block_stop":
        return [ContentBlockStop(event.index)]
    if event_type == "message_delta":
        return [MessageDelta(stop_reason=event.delta.stop_reason, usage=_usage_from(event.usage))]
    if event_type == "message_stop":
        return [MessageStop()]
    return []


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        kwargs: dict = dict(
            model=request.model,
            max_tokens=request.max_output_tokens,
            temperature=request.temperature,
            system=request.system_prompt,
            messages=ensure_user_first(request.messages),
            stream=True,
        )
        if request.tools:
            kwargs["tools"] = [t.to_dict() for t in request.tools]

        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_output_tokens}, "
            f"messages={len(request.messages)}, tools={len(request.tools)}"
        )
        try:
            stream = await self._client.messages.create(**kwargs)
            async for raw in stream:
                for event in translate_event(raw):
                    if isinstance(event, MessageDelta):
                        logger.debug(
                            f"API response: stop_reason={event.stop_reason}, "
                            f"output_tokens={event.usage.output_tokens}"
                        )
                    yield event
        except anthropic.APIError as ex:
            raise map_anthropic_error(ex) from ex

    @retry(**default_retry_kwargs())
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        """Non-streaming message creation (used for compaction/summarization)."""
        logger.debug(f"Compaction API request: model={model}, messages={len(messages)}")
        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=ensure_user_first(messages),
            )
        except anthropic.APIError as ex:
            raise map_anthropic_error(ex) from ex
        usage = response.usage
        logger.debug(
            f"Compaction API response: input_tokens={usage.input_tokens}, "
            f"output_tokens={usage.output_tokens}"
        )
        return "".join(getattr(block, "text", "") for block in response.content)
