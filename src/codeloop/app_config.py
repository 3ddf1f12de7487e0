from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from codeloop.permissions import PermissionMode

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str = "anthropic"
    model: str = DEFAULT_MODEL
    max_tokens: int = 8192
    temperature: float = 1.0
    context_window_tokens: int | None = None
    compression_threshold_ratio: float = 0.7
    keep_recent_turns: int = 6
    max_tool_output_chars: int = 30_000
    compaction_enabled: bool = True
    max_turns: int = 50
    max_budget_usd: float | None = None
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    permission_allow: list[str] = field(default_factory=list)
    permission_deny: list[str] = field(default_factory=list)
    working_directory: str | None = None
    sessions_directory: str = ".codeloop/sessions"
    resume_session_id: str | None = None
    continue_last_session: bool = False
    fork_session: bool = False
    fork_at_message: int | None = None
    max_sessions: int = 200
    session_retention_days: int = 30
    max_background_jobs: int = 16
    max_background_shells: int = 10
    max_sub_agents: int = 4
    retry_attempts: int = 4
    retry_initial_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    log_level: str = "INFO"
    log_consumers: list | None = None


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path is not None else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_int(value: object) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return int(value)


def _optional_float(value: object) -> float | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return float(value)


def _string_list(value: object) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part) for part in value]


def parse_app_config(config: dict) -> AppConfig:
    ratio = float(config.get("CompressionThresholdRatio", 0.7))
    if not 0 < ratio <= 1:
        raise ValueError(f"CompressionThresholdRatio must be in (0, 1], got {ratio}")

    return AppConfig(
        provider_name=str(config.get("Provider", "anthropic")).strip().lower(),
        model=config.get("Model", DEFAULT_MODEL),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        context_window_tokens=_optional_int(config.get("ContextWindowTokens")),
        compression_threshold_ratio=ratio,
        keep_recent_turns=int(config.get("KeepRecentTurns", 6)),
        max_tool_output_chars=int(config.get("MaxToolOutputChars", 30_000)),
        compaction_enabled=_to_bool(config.get("CompactionEnabled", True), default=True),
        max_turns=int(config.get("MaxTurns", 50)),
        max_budget_usd=_optional_float(config.get("MaxBudgetUsd")),
        allowed_tools=_string_list(config.get("AllowedTools")),
        disallowed_tools=_string_list(config.get("DisallowedTools")),
        permission_mode=PermissionMode.parse(config.get("PermissionMode")),
        permission_allow=_string_list(config.get("PermissionAllow")) or [],
        permission_deny=_string_list(config.get("PermissionDeny")) or [],
        working_directory=config.get("WorkingDirectory"),
        sessions_directory=str(config.get("SessionsDirectory", ".codeloop/sessions")),
        resume_session_id=str(config.get("ResumeSessionId", "") or "").strip() or None,
        continue_last_session=_to_bool(config.get("ContinueLastSession", False), default=False),
        fork_session=_to_bool(config.get("ForkSession", False), default=False),
        fork_at_message=_optional_int(config.get("ForkAtMessage")),
        max_sessions=int(config.get("MaxSessions", 200)),
        session_retention_days=int(config.get("SessionRetentionDays", 30)),
        max_background_jobs=int(config.get("MaxBackgroundJobs", 16)),
        max_background_shells=int(config.get("MaxBackgroundShells", 10)),
        max_sub_agents=int(config.get("MaxSubAgents", 4)),
        retry_attempts=int(config.get("RetryAttempts", 4)),
        retry_initial_seconds=float(config.get("RetryInitialSeconds", 2.0)),
        retry_max_seconds=float(config.get("RetryMaxSeconds", 60.0)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    if provider_name == "openai":
        provider_env_var = "OPENAI_API_KEY"
    else:
        provider_env_var = "ANTHROPIC_API_KEY"
    return RuntimeEnv(
        provider_api_key=os.environ.get(provider_env_var, ""),
        provider_env_var=provider_env_var,
    )
