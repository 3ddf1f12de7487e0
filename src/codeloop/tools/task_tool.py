from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger

from codeloop.background_jobs import BackgroundJobRegistry
from codeloop.compaction import ContextCompressor
from codeloop.permissions import PermissionPolicy, PermissionPrompter
from codeloop.provider import LLMProvider
from codeloop.session import Session
from codeloop.tool import Tool, ToolContext, ToolOptions, ToolOutput
from codeloop.tool_registry import ToolRegistry
from codeloop.turn_engine import LoopEvent, TurnEngine, TurnOutcome

_SUB_AGENT_PROMPT = """\
You are a sub-agent handling one delegated task for a coding assistant.
Work autonomously with the tools you have, then reply with a concise report
of what you found or changed. Your final message is returned to the caller
verbatim, so make it self-contained.

Working directory: {working_directory}
"""


class SubAgentRunner:
    """Runs a prompt to completion in a fresh Session with a restricted tool set.

    Each call gets its own registry and job table. Permission policy and
    prompter are shared with the parent, so rules and prompts behave the same.
    """

    def __init__(
        self,
        *,
        provider: LLMProvider,
        model: str,
        max_output_tokens: int,
        tools_factory: Callable[[], list[Tool]],
        policy: PermissionPolicy | None = None,
        prompter: PermissionPrompter | None = None,
        compressor: ContextCompressor | None = None,
        context_window_tokens: int = 200_000,
        max_turns: int = 30,
    ):
        self._provider = provider
        self._model = model
        self._max_output_tokens = max_output_tokens
        self._tools_factory = tools_factory
        self._policy = policy
        self._prompter = prompter
        self._compressor = compressor
        self._context_window_tokens = context_window_tokens
        self._max_turns = max_turns

    async def __call__(self, prompt: str, description: str, context: ToolContext) -> str:
        session = Session.create(context.working_directory, title=description or None)
        registry = ToolRegistry(policy=self._policy, prompter=self._prompter, jobs=BackgroundJobRegistry(max_total_jobs=4))
        for tool in self._tools_factory():
            registry.register(tool)

        def on_event(event: LoopEvent) -> None:
            if event.type == "tool_started" and event.invocation is not None:
                context.progress(f"[{description or 'task'}] {event.invocation.tool_name}\n")

        engine = TurnEngine(
            provider=self._provider,
            registry=registry,
            model=self._model,
            max_output_tokens=self._max_output_tokens,
            system_prompt=_SUB_AGENT_PROMPT.format(working_directory=context.working_directory),
            compressor=self._compressor,
            context_window_tokens=self._context_window_tokens,
            max_turns=self._max_turns,
            on_event=on_event,
        )

        logger.info(f"Sub-agent {session.session_id[:8]} started: {description or prompt[:60]}")
        try:
            result = await engine.run(session, prompt, cancel_token=context.cancel_token.child())
        finally:
            await registry.jobs.shutdown()
        logger.info(
            f"Sub-agent {session.session_id[:8]} finished: {result.outcome.value} "
            f"after {result.round_trips} round-trips, ${session.usage.total_cost_usd:.4f}"
        )

        if result.outcome in (TurnOutcome.ERROR, TurnOutcome.FATAL):
            detail = result.error.describe() if result.error else result.outcome.value
            raise RuntimeError(f"Sub-agent failed: {detail}")
        if result.outcome == TurnOutcome.INTERRUPTED:
            context.cancel_token.raise_if_cancelled()
        text = result.final_text or _last_assistant_text(session)
        if result.outcome != TurnOutcome.COMPLETED:
            text = f"{text}\n\n[Sub-agent stopped early: {result.outcome.value}]".strip()
        return text


class TaskTool:
    def __init__(self, run_sub_agent: Callable[..., Any], max_sub_agents: int = 4):
        self._run_sub_agent = run_sub_agent
        self._options = ToolOptions(supports_background=True, max_concurrency=max_sub_agents)

    @property
    def name(self) -> str:
        return "task"

    @property
    def description(self) -> str:
        return (
            "Delegate a self-contained task to a sub-agent that has its own conversation and a "
            "restricted tool set (bash, read_file, write_file, web_fetch, todo_write). Returns the "
            "sub-agent's final report. Set run_in_background to keep working while it runs."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "description": {
                    "type": "string",
                    "description": "A short (3-5 word) description of the task",
                },
                "prompt": {
                    "type": "string",
                    "description": "The full instructions for the sub-agent",
                },
                "run_in_background": {
                    "type": "boolean",
                    "description": "Run the sub-agent as a background job",
                },
            },
            "required": ["description", "prompt"],
        }

    @property
    def options(self) -> ToolOptions:
        return self._options

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolOutput:
        report = await self._run_sub_agent(tool_input["prompt"], tool_input.get("description", ""), context)
        return ToolOutput(output=report or "(sub-agent returned no text)")


def _last_assistant_text(session: Session) -> str:
    for message in reversed(session.messages):
        if message.get("role") != "assistant":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text")
    return ""
