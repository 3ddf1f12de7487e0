from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input: float
    output: float
    cache_write: float
    cache_read: float


_OPUS = ModelPricing(input=15.0, output=75.0, cache_write=18.75, cache_read=1.5)
_SONNET = ModelPricing(input=3.0, output=15.0, cache_write=3.75, cache_read=0.3)
_HAIKU = ModelPricing(input=0.8, output=4.0, cache_write=1.0, cache_read=0.08)
_GPT_4O = ModelPricing(input=2.5, output=10.0, cache_write=2.5, cache_read=1.25)
_GPT_4O_MINI = ModelPricing(input=0.15, output=0.6, cache_write=0.15, cache_read=0.075)

MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-20250514": _OPUS,
    "claude-opus-4-5-20251101": ModelPricing(input=5.0, output=25.0, cache_write=6.25, cache_read=0.5),
    "claude-sonnet-4-20250514": _SONNET,
    "claude-sonnet-4-5-20250929": _SONNET,
    "claude-3-7-sonnet-20250219": _SONNET,
    "claude-3-5-sonnet-20241022": _SONNET,
    "claude-3-5-haiku-20241022": _HAIKU,
    "claude-haiku-4-5-20251001": ModelPricing(input=1.0, output=5.0, cache_write=1.25, cache_read=0.1),
    "gpt-4o": _GPT_4O,
    "gpt-4o-mini": _GPT_4O_MINI,
}

# Checked in order, so more specific families come first.
_FAMILY_PRICING: list[tuple[str, ModelPricing]] = [
    ("gpt-4o-mini", _GPT_4O_MINI),
    ("gpt-4o", _GPT_4O),
    ("opus", _OPUS),
    ("haiku", _HAIKU),
    ("sonnet", _SONNET),
]

DEFAULT_PRICING = _SONNET

DEFAULT_CONTEXT_WINDOW = 200_000
_EXTENDED_CONTEXT_WINDOW = 1_000_000

MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
}


def pricing_for(model: str) -> ModelPricing:
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    lowered = model.lower()
    for family, pricing in _FAMILY_PRICING:
        if family in lowered:
            return pricing
    return DEFAULT_PRICING


def cost_for(
    model: str,
    *,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_write_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> float:
    pricing = pricing_for(model)
    return (
        input_tokens * pricing.input
        + output_tokens * pricing.output
        + cache_write_tokens * pricing.cache_write
        + cache_read_tokens * pricing.cache_read
    ) / 1_000_000


def context_window_for(model: str) -> int:
    if "[1m]" in model:
        return _EXTENDED_CONTEXT_WINDOW
    if model in MODEL_CONTEXT_WINDOWS:
        return MODEL_CONTEXT_WINDOWS[model]
    for prefix, window in MODEL_CONTEXT_WINDOWS.items():
        if model.startswith(prefix):
            return window
    return DEFAULT_CONTEXT_WINDOW
