"""Approximate token counting without calling the model.

Each character is costed by its own class: CJK characters and code symbols
(brackets, operators, quotes, newlines) cost about half a token, everything
else about one token per three and a half characters. Code therefore comes
out near three characters per token and prose near three and a half, and
appending text never lowers an estimate. Every function here is pure and
never raises.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable
from typing import Any

LATIN_CHARS_PER_TOKEN = 3.5
SYMBOL_CHARS_PER_TOKEN = 2.0
CJK_CHARS_PER_TOKEN = 2.0

_CODE_SYMBOLS = frozenset("{}[]()<>;:=+-*/\\|&^%$#@!~`\"'\n\t")

IMAGE_BLOCK_TOKENS = 1_600
UNKNOWN_BLOCK_MIN_TOKENS = 16
MESSAGE_OVERHEAD_TOKENS = 4


def _is_cjk(ch: str) -> bool:
    cp = ord(ch)
    return (
        0x4E00 <= cp <= 0x9FFF  # CJK unified ideographs
        or 0x3400 <= cp <= 0x4DBF
        or 0x3040 <= cp <= 0x30FF  # hiragana, katakana
        or 0xAC00 <= cp <= 0xD7AF  # hangul syllables
        or 0xF900 <= cp <= 0xFAFF
        or 0x3000 <= cp <= 0x303F  # CJK punctuation
        or 0xFF00 <= cp <= 0xFFEF  # full-width forms
    )


def estimate(text: str) -> int:
    if not text:
        return 0

    cjk = 0
    symbols = 0
    for ch in text:
        if _is_cjk(ch):
            cjk += 1
        elif ch in _CODE_SYMBOLS:
            symbols += 1

    other = len(text) - cjk - symbols
    return math.ceil(
        cjk / CJK_CHARS_PER_TOKEN + symbols / SYMBOL_CHARS_PER_TOKEN + other / LATIN_CHARS_PER_TOKEN
    )


def _estimate_unknown(block: Any) -> int:
    try:
        rendered = json.dumps(block, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return UNKNOWN_BLOCK_MIN_TOKENS
    return max(UNKNOWN_BLOCK_MIN_TOKENS, estimate(rendered))


def _estimate_tool_result_content(content: Any) -> int:
    if content is None:
        return 0
    if isinstance(content, str):
        return estimate(content)
    if isinstance(content, list):
        return sum(estimate_block(sub) for sub in content)
    return _estimate_unknown(content)


def estimate_block(block: Any) -> int:
    if isinstance(block, str):
        return estimate(block)
    if not isinstance(block, dict):
        return _estimate_unknown(block)

    block_type = block.get("type")
    if block_type == "text":
        return estimate(str(block.get("text", "")))
    if block_type == "tool_use":
        try:
            rendered_input = json.dumps(block.get("input", {}), default=str, ensure_ascii=False)
        except (TypeError, ValueError):
            rendered_input = str(block.get("input"))
        return estimate(str(block.get("name", ""))) + estimate(rendered_input)
    if block_type == "tool_result":
        return _estimate_tool_result_content(block.get("content"))
    if block_type == "image":
        return IMAGE_BLOCK_TOKENS
    return _estimate_unknown(block)


def estimate_message(turn: dict) -> int:
    content = turn.get("content", "") if isinstance(turn, dict) else turn
    if isinstance(content, str):
        body = estimate(content)
    elif isinstance(content, list):
        body = sum(estimate_block(block) for block in content)
    else:
        body = _estimate_unknown(content)
    return MESSAGE_OVERHEAD_TOKENS + body


def estimate_total(turns: Iterable[dict]) -> int:
    return sum(estimate_message(turn) for turn in turns)
