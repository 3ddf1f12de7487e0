from __future__ import annotations

import json
from collections.abc import AsyncIterator

import openai
from loguru import logger
from tenacity import retry

from codeloop.errors import AgentLoopError, BackendFatalError, BackendUnavailableError
from codeloop.provider import ModelRequest
from codeloop.providers.common import default_retry_kwargs
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
from codeloop.tool import ToolDescriptor

# Map OpenAI finish reasons to Anthropic-style stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}

_TEXT_INDEX = 0


def _to_openai_messages(
    system_prompt: str,
    messages: list[dict],
) -> list[dict]:
    """Convert internal (Anthropic-style) messages to OpenAI chat format."""
    out: list[dict] = []

    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg["role"]
        content = msg.get("content", "")

        if role == "assistant":
            if isinstance(content, str):
                out.append({"role": "assistant", "content": content})
                continue

            text_parts: list[str] = []
            tool_calls: list[dict] = []
            for block in content:
                if block.get("type") == "text":
                    text_parts.append(block["text"])
                elif block.get("type") == "tool_use":
                    tool_calls.append({
                        "id": block["id"],
                        "type": "function",
                        "function": {
                            "name": block["name"],
                            "arguments": json.dumps(block["input"]),
                        },
                    })

            oai_msg: dict = {"role": "assistant", "content": "\n".join(text_parts) if text_parts else None}
            if tool_calls:
                oai_msg["tool_calls"] = tool_calls
            out.append(oai_msg)

        elif role == "user":
            if isinstance(content, str):
                out.append({"role": "user", "content": content})
                continue

            # Tool results become role=tool messages; remaining text follows them.
            text_parts_user: list[str] = []
            for block in content:
                if isinstance(block, str):
                    text_parts_user.append(block)
                elif block.get("type") == "text":
                    text_parts_user.append(block["text"])
                elif block.get("type") == "tool_result":
                    tool_content = block.get("content", "")
                    if isinstance(tool_content, list):
                        tool_content = "\n".join(
                            sub.get("text", "")
                            for sub in tool_content
                            if isinstance(sub, dict) and sub.get("type") == "text"
                        )
                    out.append({
                        "role": "tool",
                        "tool_call_id": block["tool_use_id"],
                        "content": str(tool_content),
                    })
                elif block.get("type") == "image":
                    text_parts_user.append("[image omitted]")

            if text_parts_user:
                out.append({"role": "user", "content": "\n".join(text_parts_user)})

    return out


def _to_openai_tools(tools: list[ToolDescriptor]) -> list[dict]:
    """Convert tool descriptors to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


def map_openai_error(ex: Exception) -> AgentLoopError:
    if isinstance(ex, (openai.AuthenticationError, openai.PermissionDeniedError, openai.NotFoundError)):
        return BackendFatalError(f"{type(ex).__name__}: {ex}")
    if isinstance(ex, (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError)):
        return BackendUnavailableError(f"{type(ex).__name__}: {ex}", retryable=True)
    if isinstance(ex, openai.APIStatusError):
        return BackendUnavailableError(f"{type(ex).__name__}: {ex}", retryable=ex.status_code >= 500)
    return BackendUnavailableError(f"{type(ex).__name__}: {ex}", retryable=False)


class ChunkTranslator:
    """Turns chat-completion chunks into the Anthropic-shaped event stream.

    Text always lives in block 0; tool call ``i`` becomes block ``i + 1``.
    """

    def __init__(self, model: str):
        self._model = model
        self._started = False
        self._open: set[int] = set()
        self._finish_reason: str | None = None
        self._usage = StreamUsage()

    def feed(self, chunk: object) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if not self._started:
            self._started = True
            events.append(MessageStart(message_id=getattr(chunk, "id", "") or "", model=self._model))

        usage = getattr(chunk, "usage", None)
        if usage is not None:
            self._usage = StreamUsage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            )

        choice = chunk.choices[0] if getattr(chunk, "choices", None) else None
        if choice is None:
            return events
        if choice.finish_reason:
            self._finish_reason = choice.finish_reason

        delta = choice.delta
        if delta is None:
            return events

        if delta.content:
            if _TEXT_INDEX not in self._open:
                self._open.add(_TEXT_INDEX)
                events.append(ContentBlockStart(_TEXT_INDEX, "text"))
            events.append(ContentBlockDelta(_TEXT_INDEX, text=delta.content))

        for tc_delta in delta.tool_calls or []:
            index = tc_delta.index + 1
            function = tc_delta.function
            if index not in self._open:
                self._open.add(index)
                events.append(
                    ContentBlockStart(
                        index,
                        "tool_use",
                        tool_use_id=tc_delta.id or f"call_{tc_delta.index}",
                        tool_name=(function.name if function and function.name else ""),
                    )
                )
            if function and function.arguments:
                events.append(ContentBlockDelta(index, partial_json=function.arguments))
        return events

    def finish(self) -> list[StreamEvent]:
        events: list[StreamEvent] = [ContentBlockStop(i) for i in sorted(self._open)]
        self._open.clear()
        stop_reason = _STOP_REASON_MAP.get(self._finish_reason or "stop", "end_turn")
        events.append(MessageDelta(stop_reason=stop_reason, usage=self._usage))
        events.append(MessageStop())
        return events


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key, max_retries=0)

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        oai_messages = _to_openai_messages(request.system_prompt, request.messages)
        oai_tools = _to_openai_tools(request.tools)
        kwargs: dict = dict(
            model=request.model,
            max_tokens=request.max_output_tokens,
            temperature=request.temperature,
            messages=oai_messages,
            stream=True,
            stream_options={"include_usage": True},
        )
        if oai_tools:
            kwargs["tools"] = oai_tools

        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_output_tokens}, "
            f"messages={len(oai_messages)}, tools={len(oai_tools)}"
        )
        translator = ChunkTranslator(request.model)
        try:
            stream = await self._client.chat.completions.create(**kwargs)
            async for chunk in stream:
                for event in translator.feed(chunk):
                    yield event
        except openai.APIError as ex:
            raise map_openai_error(ex) from ex

        for event in translator.finish():
            if isinstance(event, MessageDelta):
                logger.debug(
                    f"API response: stop_reason={event.stop_reason}, "
                    f"output_tokens={event.usage.output_tokens}"
                )
            yield event

    @retry(**default_retry_kwargs())
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        """Non-streaming message creation (used for compaction/summarization)."""
        oai_messages = _to_openai_messages("", messages)
        logger.debug(f"Compaction API request: model={model}, messages={len(oai_messages)}")
        try:
            response = await self._client.chat.completions.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=oai_messages,
            )
        except openai.APIError as ex:
            raise map_openai_error(ex) from ex
        text = response.choices[0].message.content or ""
        logger.debug(f"Compaction API response: len={len(text)}")
        return text
