from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from codeloop.errors import CompressionFailureError
from codeloop.session import Session
from codeloop.tokens import estimate_message, estimate_total

SUMMARY_HEADER = "[SUMMARY OF PRIOR CONVERSATION]"
SUMMARY_FOOTER = "[END SUMMARY]"
_TRUNCATION_MARKER = "\n\n[... output truncated: {omitted:,} characters omitted ...]"
# Room kept for the marker so a truncated block stays within the ceiling.
_MARKER_RESERVE = 80


@dataclass(frozen=True)
class ContextBudget:
    max_tokens: int
    compression_threshold_ratio: float = 0.7

    @property
    def target_tokens(self) -> int:
        return int(self.max_tokens * self.compression_threshold_ratio)

    def usage_ratio(self, used_tokens: int) -> float:
        if self.max_tokens <= 0:
            return 0.0
        return used_tokens / self.max_tokens


@dataclass
class CompressionResult:
    messages: list[dict]
    strategy: str
    tokens_before: int
    tokens_after: int
    summarized_turns: int = 0
    dropped_turns: int = 0

    @property
    def changed(self) -> bool:
        return self.strategy != "none"


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, transcript: str) -> str: ...


_SUMMARIZE_PROMPT = """\
Summarize the following conversation history between a user and an AI coding assistant.
Preserve these details precisely:
- The original user request and any specific criteria or instructions
- All decisions made and their reasoning
- File paths, commands, identifiers and error messages that may be needed later
- Changes already made to the codebase
- Current task status and next steps

Do NOT include raw tool output (file contents, long logs);
just note what was retrieved and key findings.

Format as a concise narrative summary.

---
CONVERSATION HISTORY:

"""

_MAX_TRANSCRIPT_CHARS = 100_000


class ProviderSummarizer:
    """Summarizes through the provider's non-streaming ``create_message``."""

    def __init__(self, provider: Any, model: str, *, max_tokens: int = 4096):
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens

    async def summarize(self, transcript: str) -> str:
        if len(transcript) > _MAX_TRANSCRIPT_CHARS:
            half = _MAX_TRANSCRIPT_CHARS // 2
            transcript = (
                transcript[:half]
                + "\n\n[...middle of conversation omitted for brevity...]\n\n"
                + transcript[-half:]
            )
        logger.debug(f"Summarization request: model={self._model}, input_chars={len(transcript):,}")
        return await self._provider.create_message(
            self._model,
            self._max_tokens,
            0,
            [{"role": "user", "content": _SUMMARIZE_PROMPT + transcript}],
        )


class ContextCompressor:
    def __init__(
        self,
        summarizer: Summarizer | None,
        *,
        keep_recent_turns: int = 6,
        max_tool_output_chars: int = 30_000,
    ):
        self._summarizer = summarizer
        self._keep_recent_turns = max(1, keep_recent_turns)
        self._max_tool_output_chars = max(_MARKER_RESERVE * 2, max_tool_output_chars) if max_tool_output_chars > 0 else 0

    def should_compress(self, session: Session, budget: ContextBudget) -> bool:
        return should_compress_messages(session.messages, budget)

    async def compress(self, session: Session, budget: ContextBudget) -> CompressionResult:
        return await self.compress_messages(session.messages, budget)

    async def compress_messages(self, messages: list[dict], budget: ContextBudget) -> CompressionResult:
        tokens_before = estimate_total(messages)
        target = budget.target_tokens

        lightened = self.lighten(messages)
        lightened_tokens = estimate_total(lightened)
        lightened_changed = lightened != messages
        if lightened_tokens <= target:
            return CompressionResult(
                messages=lightened if lightened_changed else messages,
                strategy="truncate_outputs" if lightened_changed else "none",
                tokens_before=tokens_before,
                tokens_after=lightened_tokens,
            )

        boundaries = _summary_boundaries(lightened, self._keep_recent_turns)
        if not boundaries:
            logger.info(
                f"Compaction: ~{lightened_tokens:,} tokens over target {target:,} "
                "but no older turns can be summarized"
            )
            return CompressionResult(
                messages=lightened if lightened_changed else messages,
                strategy="truncate_outputs" if lightened_changed else "none",
                tokens_before=tokens_before,
                tokens_after=lightened_tokens,
            )

        logger.info(
            f"Compaction: estimated ~{lightened_tokens:,} tokens, target {target:,}"
            f" ({budget.compression_threshold_ratio:.0%} of {budget.max_tokens:,})"
        )

        try:
            result = await self._summarize_until_fits(lightened, boundaries, target)
        except CompressionFailureError as ex:
            logger.warning(f"Compaction summary failed: {ex}. Falling back to dropping oldest turns.")
            result = None

        if result is None:
            return self._drop_oldest(lightened, tokens_before, target, lightened=lightened_changed)

        logger.info(
            f"Compaction: summarized {result.summarized_turns} turns,"
            f" ~{tokens_before:,} -> ~{result.tokens_after:,} estimated tokens"
        )
        result.tokens_before = tokens_before
        return result

    def lighten(self, messages: list[dict]) -> list[dict]:
        """Truncate oversized tool output and collapse runs of blank space."""
        out: list[dict] = []
        for message in messages:
            content = message.get("content")
            if not isinstance(content, list) or not any(_is_tool_result(b) for b in content):
                out.append(message)
                continue
            new_content = [self._lighten_block(b) if _is_tool_result(b) else b for b in content]
            out.append({**message, "content": new_content})
        return out

    def _lighten_block(self, block: dict) -> dict:
        result_content = block.get("content")
        if isinstance(result_content, str):
            return {**block, "content": self._lighten_text(result_content)}
        if isinstance(result_content, list):
            subs = [
                {**sub, "text": self._lighten_text(str(sub.get("text", "")))}
                if isinstance(sub, dict) and sub.get("type") == "text"
                else sub
                for sub in result_content
            ]
            return {**block, "content": subs}
        return block

    def _lighten_text(self, text: str) -> str:
        text = collapse_whitespace(text)
        return truncate_text(text, self._max_tool_output_chars)

    async def _summarize_until_fits(
        self,
        messages: list[dict],
        boundaries: list[int],
        target: int,
    ) -> CompressionResult | None:
        if self._summarizer is None:
            raise CompressionFailureError("No summarizer configured")

        best: CompressionResult | None = None
        for boundary in boundaries:
            prefix = messages[:boundary]
            suffix = _detach_suffix(messages[boundary:])
            try:
                summary = await self._summarizer.summarize(format_for_summarization(prefix))
            except Exception as ex:
                raise CompressionFailureError(str(ex)) from ex

            summary_turn = make_summary_turn(summary)
            if estimate_message(summary_turn) >= estimate_total(prefix):
                logger.debug("Compaction: summary is not smaller than the turns it replaces")
                continue

            candidate = [summary_turn, *suffix]
            tokens_after = estimate_total(candidate)
            if tokens_after >= estimate_total(messages):
                logger.debug("Compaction: summarized history is not smaller than the original")
                continue
            best = CompressionResult(
                messages=candidate,
                strategy="summarize",
                tokens_before=0,
                tokens_after=tokens_after,
                summarized_turns=len(prefix),
            )
            if tokens_after <= target:
                return best
            logger.debug(
                f"Compaction: ~{tokens_after:,} tokens still over target {target:,}, shrinking verbatim window"
            )
        return best

    def _drop_oldest(
        self, messages: list[dict], tokens_before: int, target: int, *, lightened: bool = False
    ) -> CompressionResult:
        boundaries = [i for i in range(1, len(messages)) if messages[i].get("role") == "user"]
        current = estimate_total(messages)
        result = messages
        dropped = 0
        for boundary in boundaries:
            candidate = _detach_suffix(messages[boundary:])
            # Detached tool results can outweigh the turns removed.
            if estimate_total(candidate) >= current:
                continue
            result = candidate
            dropped = boundary
            if estimate_total(result) <= target:
                break
        tokens_after = estimate_total(result)
        logger.info(f"Compaction: dropped {dropped} oldest turns, ~{tokens_before:,} -> ~{tokens_after:,} tokens")
        return CompressionResult(
            messages=result,
            strategy="drop_oldest" if dropped else ("truncate_outputs" if lightened else "none"),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            dropped_turns=dropped,
        )


def should_compress_messages(messages: list[dict], budget: ContextBudget) -> bool:
    if budget.max_tokens <= 0:
        return False
    return estimate_total(messages) / budget.max_tokens >= budget.compression_threshold_ratio


def make_summary_turn(summary: str) -> dict:
    return {
        "role": "assistant",
        "content": [{"type": "text", "text": f"{SUMMARY_HEADER}\n{summary.strip()}\n{SUMMARY_FOOTER}"}],
    }


def is_summary_turn(message: dict) -> bool:
    content = message.get("content")
    if message.get("role") != "assistant" or not isinstance(content, list) or not content:
        return False
    first = content[0]
    return isinstance(first, dict) and str(first.get("text", "")).startswith(SUMMARY_HEADER)


def collapse_whitespace(text: str) -> str:
    text = re.sub(r"[ \t]+\n", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text)


def truncate_text(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    kept = text[: max(0, max_chars - _MARKER_RESERVE)].rstrip()
    omitted = len(text) - len(kept)
    return kept + _TRUNCATION_MARKER.format(omitted=omitted)


def _is_tool_result(block: Any) -> bool:
    return isinstance(block, dict) and block.get("type") == "tool_result"


def _summary_boundaries(messages: list[dict], keep_recent_turns: int) -> list[int]:
    """Candidate split points, largest verbatim suffix first.

    A split point is an index ``i > 0`` where ``messages[i]`` is a user turn,
    so a leading assistant summary keeps roles alternating. The most recent
    user turn is the floor.
    """
    start_limit = max(1, len(messages) - keep_recent_turns)
    candidates = [i for i in range(1, len(messages)) if messages[i].get("role") == "user"]
    preferred = [i for i in candidates if i <= start_limit]
    if preferred:
        first = preferred[-1]
        return [i for i in candidates if i >= first]
    return candidates


def _detach_suffix(suffix: list[dict]) -> list[dict]:
    """Turn tool results whose tool_use was compacted away into text blocks."""
    if not suffix:
        return suffix
    head = suffix[0]
    content = head.get("content")
    if not isinstance(content, list) or not any(_is_tool_result(b) for b in content):
        return suffix
    converted: list[Any] = []
    for block in content:
        if _is_tool_result(block):
            status = " (error)" if block.get("is_error") else ""
            converted.append(
                {
                    "type": "text",
                    "text": f"[Result of earlier tool call {block.get('tool_use_id', '')}{status}]: {_result_text(block)}",
                }
            )
        else:
            converted.append(block)
    return [{**head, "content": converted}, *suffix[1:]]


def format_for_summarization(messages: list[dict]) -> str:
    parts = []
    for msg in messages:
        role = msg.get("role", "unknown")
        content = msg.get("content", "")

        if isinstance(content, str):
            parts.append(f"[{role}]: {content}")
        elif isinstance(content, list):
            block_texts = []
            for block in content:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type", "")
                if block_type == "text":
                    block_texts.append(block.get("text", ""))
                elif block_type == "tool_use":
                    name = block.get("name", "")
                    inp = json.dumps(block.get("input", {}), indent=None, default=str)
                    if len(inp) > 200:
                        inp = inp[:200] + "..."
                    block_texts.append(f"[Tool call: {name}({inp})]")
                elif block_type == "tool_result":
                    tool_id = block.get("tool_use_id", "")
                    status = " (error)" if block.get("is_error") else ""
                    block_texts.append(f"[Tool result ({tool_id}){status}]: {_preview_text(_result_text(block))}")
                elif block_type == "image":
                    block_texts.append("[image]")
            parts.append(f"[{role}]: " + "\n".join(block_texts))

    return "\n\n".join(parts)


def _result_text(block: dict) -> str:
    result_content = block.get("content", "")
    if isinstance(result_content, str):
        return result_content
    if isinstance(result_content, list):
        return "\n".join(
            sub.get("text", "") for sub in result_content if isinstance(sub, dict) and sub.get("type") == "text"
        )
    return str(result_content)


def _preview_text(text: str) -> str:
    if len(text) <= 700:
        return text
    return text[:500] + "\n[...truncated...]\n" + text[-200:]
