from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from codeloop.compaction import ContextCompressor
from codeloop.memory.session_store import SessionStore
from codeloop.provider import LLMProvider
from codeloop.session import Session
from codeloop.tool_registry import ToolRegistry


@dataclass
class AgentConfig:
    provider: LLMProvider
    registry: ToolRegistry
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192
    temperature: float = 1.0
    system_prompt: str | Callable[[Session], str] = ""
    working_directory: str = "."
    compressor: ContextCompressor | None = None
    context_window_tokens: int = 200_000
    compression_threshold_ratio: float = 0.7
    max_turns: int = 50
    max_budget_usd: float | None = None
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] | None = None
    retry_attempts: int = 4
    retry_initial_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    store: SessionStore | None = None
    session: Session | None = None
    line_prefix: str = "assistant> "
