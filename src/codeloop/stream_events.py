"""Typed model-stream events and the assembler that rebuilds content blocks.

Providers translate their SDK streams into these events. Tool-call input
arrives as JSON fragments that are only syntactically valid once the block
is complete, so fragments are buffered per block index and parsed when the
block's ``ContentBlockStop`` arrives.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class StreamUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    def merge(self, other: StreamUsage) -> None:
        # Backends report running totals, so the larger value is the latest.
        self.input_tokens = max(self.input_tokens, other.input_tokens)
        self.output_tokens = max(self.output_tokens, other.output_tokens)
        self.cache_read_tokens = max(self.cache_read_tokens, other.cache_read_tokens)
        self.cache_write_tokens = max(self.cache_write_tokens, other.cache_write_tokens)


@dataclass
class MessageStart:
    message_id: str = ""
    model: str = ""
    usage: StreamUsage = field(default_factory=StreamUsage)


@dataclass
class ContentBlockStart:
    index: int
    block_type: str
    tool_use_id: str = ""
    tool_name: str = ""


@dataclass
class ContentBlockDelta:
    index: int
    text: str = ""
    partial_json: str = ""


@dataclass
class ContentBlockStop:
    index: int


@dataclass
class MessageDelta:
    stop_reason: str | None = None
    usage: StreamUsage = field(default_factory=StreamUsage)


@dataclass
class MessageStop:
    pass


StreamEvent = Union[MessageStart, ContentBlockStart, ContentBlockDelta, ContentBlockStop, MessageDelta, MessageStop]


class ToolInputParseError(ValueError):
    pass


_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def parse_tool_input(raw: str) -> dict[str, Any]:
    """Parse a completed tool-input buffer.

    Accepts an empty buffer as ``{}``, tolerates raw control characters in
    strings and trailing commas, and rejects anything that is not a JSON
    object. Truncated JSON is not completed.
    """
    text = raw.strip()
    if not text:
        return {}
    try:
        value = json.loads(text, strict=False)
    except json.JSONDecodeError:
        try:
            value = json.loads(_TRAILING_COMMA.sub(r"\1", text), strict=False)
        except json.JSONDecodeError as ex:
            raise ToolInputParseError(f"Tool input is not valid JSON ({ex.msg} at char {ex.pos})") from ex
    if not isinstance(value, dict):
        raise ToolInputParseError(f"Tool input must be a JSON object, got {type(value).__name__}")
    return value


@dataclass
class _BlockBuffer:
    block_type: str
    tool_use_id: str = ""
    tool_name: str = ""
    parts: list[str] = field(default_factory=list)
    complete: bool = False
    block: dict | None = None


@dataclass
class AssembledMessage:
    content: list[dict]
    stop_reason: str | None
    usage: StreamUsage
    parse_errors: dict[str, str] = field(default_factory=dict)

    @property
    def tool_calls(self) -> list[dict]:
        return [b for b in self.content if b.get("type") == "tool_use"]

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.content if b.get("type") == "text")


class StreamAssembler:
    def __init__(self) -> None:
        self._blocks: dict[int, _BlockBuffer] = {}
        self._stop_reason: str | None = None
        self._usage = StreamUsage()
        self._parse_errors: dict[str, str] = {}
        self._finished = False

    @property
    def usage(self) -> StreamUsage:
        return self._usage

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def has_content(self) -> bool:
        return any(buf.parts for buf in self._blocks.values())

    def feed(self, event: StreamEvent) -> None:
        if isinstance(event, MessageStart):
            self._usage.merge(event.usage)
        elif isinstance(event, ContentBlockStart):
            self._blocks[event.index] = _BlockBuffer(event.block_type, event.tool_use_id, event.tool_name)
        elif isinstance(event, ContentBlockDelta):
            buf = self._blocks.get(event.index)
            if buf is None:
                # Delta without a start: infer the block type from the payload.
                buf = self._blocks[event.index] = _BlockBuffer("tool_use" if event.partial_json else "text")
            fragment = event.partial_json if buf.block_type == "tool_use" else event.text
            if fragment:
                buf.parts.append(fragment)
        elif isinstance(event, ContentBlockStop):
            buf = self._blocks.get(event.index)
            if buf is not None and not buf.complete:
                buf.block = self._finish_block(buf)
                buf.complete = True
        elif isinstance(event, MessageDelta):
            if event.stop_reason:
                self._stop_reason = event.stop_reason
            self._usage.merge(event.usage)
        elif isinstance(event, MessageStop):
            self._finished = True

    def _finish_block(self, buf: _BlockBuffer) -> dict | None:
        raw = "".join(buf.parts)
        if buf.block_type == "text":
            return {"type": "text", "text": raw} if raw else None
        if buf.block_type == "tool_use":
            try:
                tool_input = parse_tool_input(raw)
            except ToolInputParseError as ex:
                self._parse_errors[buf.tool_use_id] = str(ex)
                tool_input = {}
            return {"type": "tool_use", "id": buf.tool_use_id, "name": buf.tool_name, "input": tool_input}
        return None

    def finalize(self) -> AssembledMessage:
        """Close every open block and return the message in block order."""
        for buf in self._blocks.values():
            if not buf.complete:
                buf.block = self._finish_block(buf)
                buf.complete = True
        content = [self._blocks[i].block for i in sorted(self._blocks) if self._blocks[i].block is not None]
        return AssembledMessage(
            content=content,
            stop_reason=self._stop_reason,
            usage=self._usage,
            parse_errors=dict(self._parse_errors),
        )

    def partial_content(self) -> list[dict]:
        """Text streamed so far. Tool calls are left out since they never ran."""
        blocks = []
        for index in sorted(self._blocks):
            buf = self._blocks[index]
            if buf.block_type == "text" and buf.parts:
                blocks.append({"type": "text", "text": "".join(buf.parts)})
        return blocks
