from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from codeloop.agent import Agent
from codeloop.agent_config import AgentConfig
from codeloop.app_config import AppConfig, RuntimeEnv
from codeloop.background_jobs import BackgroundJobRegistry
from codeloop.compaction import ContextCompressor, ProviderSummarizer
from codeloop.console import ConsolePermissionPrompter, ConsoleRenderer
from codeloop.logging_config import setup_logging
from codeloop.memory import SessionStore, prune_sessions
from codeloop.model_info import context_window_for
from codeloop.permissions import RulePermissionPolicy
from codeloop.provider import create_provider
from codeloop.session import Session
from codeloop.system_prompt import build_system_prompt
from codeloop.tool import Tool
from codeloop.tool_registry import ToolRegistry
from codeloop.tools.task_tool import SubAgentRunner
from codeloop.toolset import get_all, get_sub_agent_tools


@dataclass
class AppRuntime:
    agent: Agent
    store: SessionStore
    tools: list[Tool]
    log_descriptions: list[str]
    resumed: bool = False


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    working_directory = os.path.abspath(os.path.expanduser(app.working_directory or os.getcwd()))
    provider = create_provider(app.provider_name, env.provider_api_key)
    context_window = app.context_window_tokens or context_window_for(app.model)

    compressor: ContextCompressor | None = None
    if app.compaction_enabled:
        compressor = ContextCompressor(
            ProviderSummarizer(provider, app.model),
            keep_recent_turns=app.keep_recent_turns,
            max_tool_output_chars=app.max_tool_output_chars,
        )

    renderer = ConsoleRenderer()
    policy = RulePermissionPolicy(mode=app.permission_mode, allow=app.permission_allow, deny=app.permission_deny)
    prompter = ConsolePermissionPrompter(renderer)
    registry = ToolRegistry(
        policy=policy,
        prompter=prompter,
        jobs=BackgroundJobRegistry(max_total_jobs=app.max_background_jobs),
    )

    sub_agent_runner = SubAgentRunner(
        provider=provider,
        model=app.model,
        max_output_tokens=app.max_tokens,
        tools_factory=lambda: get_sub_agent_tools(app.max_background_shells),
        policy=policy,
        prompter=prompter,
        compressor=compressor,
        context_window_tokens=context_window,
    )
    tools = get_all(
        registry=registry,
        sub_agent_runner=sub_agent_runner,
        max_background_shells=app.max_background_shells,
        max_sub_agents=app.max_sub_agents,
    )
    for tool in tools:
        registry.register(tool)

    sessions_dir = Path(app.sessions_directory)
    if not sessions_dir.is_absolute():
        sessions_dir = Path.cwd() / sessions_dir
    store = SessionStore(sessions_dir)

    session, resumed = _select_session(app, store, working_directory)
    prune_sessions(
        store,
        max_sessions=app.max_sessions,
        retention_days=app.session_retention_days,
        keep={session.session_id},
    )

    tool_names = [t.name for t in tools]
    agent = Agent(
        AgentConfig(
            provider=provider,
            registry=registry,
            model=app.model,
            max_tokens=app.max_tokens,
            temperature=app.temperature,
            system_prompt=lambda s: build_system_prompt(s.working_directory, tool_names),
            working_directory=working_directory,
            compressor=compressor,
            context_window_tokens=context_window,
            compression_threshold_ratio=app.compression_threshold_ratio,
            max_turns=app.max_turns,
            max_budget_usd=app.max_budget_usd,
            allowed_tools=app.allowed_tools,
            disallowed_tools=app.disallowed_tools,
            retry_attempts=app.retry_attempts,
            retry_initial_seconds=app.retry_initial_seconds,
            retry_max_seconds=app.retry_max_seconds,
            store=store,
            session=session,
            line_prefix=renderer.line_prefix,
        ),
        renderer=renderer,
    )

    return AppRuntime(
        agent=agent,
        store=store,
        tools=tools,
        log_descriptions=log_descriptions,
        resumed=resumed,
    )


def _select_session(app: AppConfig, store: SessionStore, working_directory: str) -> tuple[Session, bool]:
    """Pick the starting session: explicit resume, continue-last, or a fresh one. Forks if asked."""
    session: Session | None = None
    if app.resume_session_id:
        summary = store.resolve_session_identifier(app.resume_session_id)
        if summary is None:
            raise ValueError(f"Resume session not found: {app.resume_session_id}")
        session = store.load(summary.session_id)
    elif app.continue_last_session:
        latest = store.latest()
        if latest is not None:
            session = store.load(latest.session_id)
        else:
            logger.info("No previous session to continue; starting a new one")

    if session is None:
        return Session.create(working_directory), False

    if app.fork_session:
        session = store.fork(session.session_id, app.fork_at_message)
    logger.info(f"Resumed session {session.session_id} ({len(session.messages)} messages)")
    return session, True
