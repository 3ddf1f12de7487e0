from __future__ import annotations

import asyncio
import fnmatch
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass, replace
from typing import Any

from loguru import logger

from codeloop import schema
from codeloop.background_jobs import DEFAULT_POLL_TIMEOUT_MS, BackgroundJob, BackgroundJobRegistry, BackgroundJobSnapshot
from codeloop.errors import AgentLoopError, CapacityExceededError, ErrorKind, OperationCancelled
from codeloop.permissions import (
    AllowAllPolicy,
    DenyPrompter,
    PermissionDecision,
    PermissionDecisionKind,
    PermissionPolicy,
    PermissionPrompter,
    PermissionRequest,
    PermissionScope,
    invocation_pattern,
)
from codeloop.tool import Tool, ToolContext, ToolDescriptor, ToolInvocation, ToolOptions, ToolOutput, ToolResult

BACKGROUND_FLAG = "run_in_background"


@dataclass
class _Entry:
    tool: Tool
    options: ToolOptions


@dataclass
class PermissionHooks:
    """Per-dispatch view of the session's permission memory."""

    remembered: Collection[str] = ()
    remember: Callable[[str], None] | None = None
    on_wait: Callable[[bool], None] | None = None


class ToolRegistry:
    def __init__(
        self,
        *,
        policy: PermissionPolicy | None = None,
        prompter: PermissionPrompter | None = None,
        jobs: BackgroundJobRegistry | None = None,
    ):
        self._entries: dict[str, _Entry] = {}
        self._policy = policy or AllowAllPolicy()
        self._prompter = prompter or DenyPrompter()
        self._jobs = jobs or BackgroundJobRegistry()
        self._session_grants: set[str] = set()
        self._prompt_lock = asyncio.Lock()

    @property
    def jobs(self) -> BackgroundJobRegistry:
        return self._jobs

    @property
    def names(self) -> list[str]:
        return list(self._entries)

    def register(self, tool: Tool, options: ToolOptions | None = None) -> None:
        if tool.name in self._entries:
            raise ValueError(f"Tool already registered: {tool.name}")
        if options is None:
            options = getattr(tool, "options", None) or ToolOptions()
        schema.check_schema(tool.input_schema)
        self._entries[tool.name] = _Entry(tool, options)

    def get(self, name: str) -> Tool | None:
        entry = self._entries.get(name)
        return entry.tool if entry else None

    def options_for(self, name: str) -> ToolOptions | None:
        entry = self._entries.get(name)
        return entry.options if entry else None

    def list_available(
        self,
        allowlist: list[str] | None = None,
        denylist: list[str] | None = None,
    ) -> list[ToolDescriptor]:
        descriptors = []
        for name, entry in self._entries.items():
            if denylist and any(fnmatch.fnmatchcase(name, p) for p in denylist):
                continue
            if allowlist is not None and not any(fnmatch.fnmatchcase(name, p) for p in allowlist):
                continue
            descriptors.append(ToolDescriptor(name, entry.tool.description, entry.tool.input_schema))
        return descriptors

    def validate(self, tool_name: str, tool_input: Any) -> list[str]:
        """Schema errors for ``tool_input``, empty when it is valid."""
        entry = self._entries.get(tool_name)
        if entry is None:
            return [f"Unknown tool: {tool_name}"]
        return schema.validate(tool_input, entry.tool.input_schema)

    async def dispatch(
        self,
        invocation: ToolInvocation,
        context: ToolContext,
        *,
        permissions: PermissionHooks | None = None,
    ) -> ToolResult:
        """Run one invocation to a ``ToolResult``. Never raises.

        Invocations that set ``run_in_background`` on a background-capable
        tool are handed to the job table instead.
        """
        entry = self._entries.get(invocation.tool_name)
        if entry is not None and entry.options.supports_background and invocation.input.get(BACKGROUND_FLAG) is True:
            return await self.dispatch_background(invocation, context, permissions=permissions)

        rejected = await self._preflight(invocation, context, permissions)
        if rejected is not None:
            return rejected
        assert entry is not None
        return await self._invoke(entry, invocation, context, permissions)

    async def dispatch_background(
        self,
        invocation: ToolInvocation,
        context: ToolContext,
        *,
        permissions: PermissionHooks | None = None,
    ) -> ToolResult:
        rejected = await self._preflight(invocation, context, permissions)
        if rejected is not None:
            return rejected
        entry = self._entries[invocation.tool_name]
        if not entry.options.supports_background:
            return ToolResult.failure(
                ErrorKind.VALIDATION_ERROR,
                f"{invocation.tool_name} does not support background execution",
            )

        async def runner(job: BackgroundJob) -> ToolResult:
            job_context = replace(context, cancel_token=job.token, report_progress=job.append_output)
            return await self._invoke(entry, invocation, job_context, permissions)

        try:
            job = self._jobs.start(
                invocation.tool_name,
                runner,
                max_for_tool=entry.options.max_concurrency,
                description=_describe(invocation),
                invocation_id=invocation.invocation_id,
            )
        except CapacityExceededError as ex:
            return ToolResult.failure(ErrorKind.CAPACITY_EXCEEDED, str(ex))
        return ToolResult(success=True, job_id=job.job_id)

    async def poll_background_job(
        self,
        job_id: str,
        *,
        block: bool = False,
        timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS,
    ) -> BackgroundJobSnapshot:
        return await self._jobs.poll(job_id, block=block, timeout_ms=timeout_ms)

    def cancel_background_job(self, job_id: str) -> bool:
        return self._jobs.cancel(job_id)

    async def _preflight(
        self,
        invocation: ToolInvocation,
        context: ToolContext,
        permissions: PermissionHooks | None,
    ) -> ToolResult | None:
        entry = self._entries.get(invocation.tool_name)
        if entry is None:
            logger.warning(f"Model requested unknown tool {invocation.tool_name!r}")
            return ToolResult.failure(ErrorKind.UNKNOWN_TOOL, f'Unknown tool "{invocation.tool_name}"')

        errors = self.validate(invocation.tool_name, invocation.input)
        if errors:
            return ToolResult.failure(
                ErrorKind.VALIDATION_ERROR,
                f"Invalid input for {invocation.tool_name}: " + "; ".join(errors),
            )

        if not entry.options.requires_permission:
            return None
        try:
            allowed, reason = await self._authorize(entry, invocation.tool_name, invocation.input, context, permissions)
        except OperationCancelled as ex:
            return ToolResult.failure(ErrorKind.CANCELLED, str(ex))
        if not allowed:
            logger.info(f"Permission denied for {invocation.tool_name}: {reason}")
            return ToolResult.failure(
                ErrorKind.PERMISSION_DENIED,
                f"Permission to run {invocation.tool_name} was denied" + (f": {reason}" if reason else ""),
            )
        return None

    async def _authorize(
        self,
        entry: _Entry,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolContext,
        permissions: PermissionHooks | None,
    ) -> tuple[bool, str]:
        hooks = permissions or PermissionHooks()
        pattern = invocation_pattern(tool_name, tool_input)
        decision = self._policy.check(tool_name, tool_input, entry.options.risk)
        if decision.binding:
            return False, decision.reason
        if _is_remembered(tool_name, pattern, hooks.remembered) or _is_remembered(
            tool_name, pattern, self._session_grants
        ):
            return True, ""

        if decision.decision == PermissionDecisionKind.ASK:
            decision = await self._prompt(
                PermissionRequest(tool_name, tool_input, entry.options.risk, pattern), context, hooks
            )
        if decision.allowed:
            self._record_grant(pattern, decision, hooks)
            return True, ""
        return False, decision.reason

    async def _prompt(
        self,
        request: PermissionRequest,
        context: ToolContext,
        hooks: PermissionHooks,
    ) -> PermissionDecision:
        # One prompt at a time; other invocations in the batch keep running.
        async with self._prompt_lock:
            if _is_remembered(request.tool_name, request.pattern, self._session_grants):
                return PermissionDecision(PermissionDecisionKind.ALLOW, PermissionScope.SESSION)
            if hooks.on_wait is not None:
                hooks.on_wait(True)
            try:
                return await context.cancel_token.run(self._prompter.ask(request))
            finally:
                if hooks.on_wait is not None:
                    hooks.on_wait(False)

    def _record_grant(self, pattern: str, decision: PermissionDecision, hooks: PermissionHooks) -> None:
        if decision.scope == PermissionScope.ONCE:
            return
        self._session_grants.add(pattern)
        if decision.scope == PermissionScope.ALWAYS:
            if hooks.remember is not None:
                hooks.remember(pattern)
            add_rule = getattr(self._policy, "add_allow_rule", None)
            if add_rule is not None:
                add_rule(pattern)

    async def _invoke(
        self,
        entry: _Entry,
        invocation: ToolInvocation,
        context: ToolContext,
        permissions: PermissionHooks | None,
    ) -> ToolResult:
        async def check_permission(tool_name: str, tool_input: dict[str, Any]) -> bool:
            target = self._entries.get(tool_name)
            if target is None:
                return False
            if not target.options.requires_permission:
                return True
            allowed, _ = await self._authorize(target, tool_name, tool_input, context, permissions)
            return allowed

        context = replace(context, check_permission=check_permission)
        tool_input = {k: v for k, v in invocation.input.items() if k != BACKGROUND_FLAG}
        started = time.monotonic()
        try:
            raw = await context.cancel_token.run(entry.tool.execute(tool_input, context))
        except OperationCancelled as ex:
            return ToolResult.failure(ErrorKind.CANCELLED, str(ex), duration_ms=_elapsed_ms(started))
        except AgentLoopError as ex:
            return ToolResult.failure(ex.kind, ex.message, duration_ms=_elapsed_ms(started))
        except Exception as ex:
            message = str(ex) or type(ex).__name__
            logger.warning(f"Tool {invocation.tool_name} raised {type(ex).__name__}: {message}")
            return ToolResult.failure(ErrorKind.HANDLER_EXCEPTION, message, duration_ms=_elapsed_ms(started))
        return _normalize(raw, _elapsed_ms(started))


def _normalize(raw: Any, duration_ms: int) -> ToolResult:
    if isinstance(raw, ToolResult):
        raw.duration_ms = duration_ms
        return raw
    if isinstance(raw, ToolOutput):
        if raw.success:
            return ToolResult(
                success=True,
                output=raw.output,
                duration_ms=duration_ms,
                side_effects=list(raw.side_effects),
            )
        result = ToolResult.failure(
            ErrorKind.HANDLER_EXCEPTION,
            raw.error or "Tool reported failure",
            duration_ms=duration_ms,
        )
        result.output = raw.output
        result.side_effects = list(raw.side_effects)
        return result
    return ToolResult(success=True, output=raw, duration_ms=duration_ms)


def _is_remembered(tool_name: str, pattern: str, remembered: Collection[str]) -> bool:
    if tool_name in remembered or pattern in remembered:
        return True
    return any("(" in rule and fnmatch.fnmatchcase(pattern, rule) for rule in remembered)


def _describe(invocation: ToolInvocation) -> str:
    for key in ("description", "command", "prompt"):
        value = invocation.input.get(key)
        if isinstance(value, str) and value.strip():
            text = " ".join(value.split())
            return text if len(text) <= 80 else text[:77] + "..."
    return invocation.tool_name


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
