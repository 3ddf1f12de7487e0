from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger
from tenacity import AsyncRetrying

from codeloop.cancellation import CancellationToken
from codeloop.compaction import CompressionResult, ContextBudget, ContextCompressor
from codeloop.errors import (
    BackendFatalError,
    BackendUnavailableError,
    BudgetExceededError,
    ErrorKind,
    OperationCancelled,
)
from codeloop.model_info import cost_for
from codeloop.provider import LLMProvider, ModelRequest
from codeloop.providers.common import default_retry_kwargs
from codeloop.session import Session, TodoListHandle
from codeloop.stream_events import AssembledMessage, ContentBlockDelta, StreamAssembler
from codeloop.tokens import estimate_total
from codeloop.tool import ToolContext, ToolInvocation, ToolResult
from codeloop.tool_registry import PermissionHooks, ToolRegistry

MAX_TOKENS_CONTINUATION_PROMPT = (
    "Your response was cut off because it exceeded the token limit. "
    "Please continue, but be more concise. If you were writing a file, "
    "break it into smaller sections or shorten the content."
)


class LoopState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    INTERPRETING_RESPONSE = "interpreting_response"
    DISPATCHING_TOOLS = "dispatching_tools"
    AWAITING_PERMISSION = "awaiting_permission"
    TERMINATED = "terminated"


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    MAX_TURNS = "max_turns"
    BUDGET_EXCEEDED = "budget_exceeded"
    MAX_TOKENS = "max_tokens"
    INTERRUPTED = "interrupted"
    ERROR = "error"
    FATAL = "fatal"


@dataclass(frozen=True)
class ErrorReport:
    kind: ErrorKind
    message: str
    turn_index: int | None = None
    invocation_id: str | None = None
    tool_name: str | None = None

    def describe(self) -> str:
        where = []
        if self.turn_index is not None:
            where.append(f"turn {self.turn_index}")
        if self.invocation_id:
            where.append(f"invocation {self.invocation_id} ({self.tool_name})")
        suffix = f" [{', '.join(where)}]" if where else ""
        return f"{self.kind.value}: {self.message}{suffix}"


@dataclass
class TurnResult:
    outcome: TurnOutcome
    round_trips: int = 0
    final_text: str = ""
    error: ErrorReport | None = None


@dataclass
class LoopEvent:
    """Something the UI collaborator may want to render."""

    type: str
    text: str = ""
    state: LoopState | None = None
    invocation: ToolInvocation | None = None
    result: ToolResult | None = None
    compaction: CompressionResult | None = None
    data: dict[str, Any] = field(default_factory=dict)


class TurnEngine:
    """Drives one user input through model calls and tool dispatch.

    States move Idle -> AwaitingModel -> InterpretingResponse and then either
    back to Idle (no tool calls) or through DispatchingTools (and
    AwaitingPermission while a prompt is open) to the next model call.
    BackendFatal moves the engine to Terminated for good.
    """

    def __init__(
        self,
        *,
        provider: LLMProvider,
        registry: ToolRegistry,
        model: str,
        max_output_tokens: int,
        system_prompt: str | Callable[[Session], str],
        temperature: float = 1.0,
        compressor: ContextCompressor | None = None,
        context_window_tokens: int = 200_000,
        compression_threshold_ratio: float = 0.7,
        max_turns: int = 50,
        max_budget_usd: float | None = None,
        allowed_tools: list[str] | None = None,
        disallowed_tools: list[str] | None = None,
        retry_attempts: int = 4,
        retry_initial_seconds: float = 2.0,
        retry_max_seconds: float = 60.0,
        max_tokens_continuations: int = 3,
        on_event: Callable[[LoopEvent], None] | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._model = model
        self._max_output_tokens = max_output_tokens
        self._system_prompt = system_prompt
        self._temperature = temperature
        self._compressor = compressor
        self._context_window_tokens = context_window_tokens
        self._compression_threshold_ratio = compression_threshold_ratio
        self._max_turns = max(1, max_turns)
        self._max_budget_usd = max_budget_usd
        self._allowed_tools = allowed_tools
        self._disallowed_tools = disallowed_tools
        self._retry_attempts = retry_attempts
        self._retry_initial_seconds = retry_initial_seconds
        self._retry_max_seconds = retry_max_seconds
        self._max_tokens_continuations = max_tokens_continuations
        self._on_event = on_event
        self._state = LoopState.IDLE

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def model(self) -> str:
        return self._model

    @property
    def budget(self) -> ContextBudget:
        return ContextBudget(self._context_window_tokens, self._compression_threshold_ratio)

    def set_max_turns(self, max_turns: int) -> None:
        self._max_turns = max(1, max_turns)

    def set_max_budget_usd(self, max_budget_usd: float | None) -> None:
        self._max_budget_usd = max_budget_usd

    def set_tool_filters(self, allowed: list[str] | None, disallowed: list[str] | None) -> None:
        self._allowed_tools = allowed
        self._disallowed_tools = disallowed

    def terminate(self) -> None:
        self._set_state(LoopState.TERMINATED)

    async def run(
        self,
        session: Session,
        user_input: str | list[dict],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> TurnResult:
        if self._state == LoopState.TERMINATED:
            return TurnResult(
                TurnOutcome.FATAL,
                error=ErrorReport(ErrorKind.BACKEND_FATAL, "Conversation has been terminated"),
            )

        token = cancel_token or CancellationToken()
        session.append_user_content(user_input)
        round_trips = 0
        continuations = 0
        self._set_state(LoopState.AWAITING_MODEL)

        try:
            while True:
                if round_trips >= self._max_turns:
                    logger.warning(f"Turn stopped after {round_trips} model round-trips (limit {self._max_turns})")
                    self._append_note(
                        session,
                        f"[Stopped: reached the limit of {self._max_turns} model round-trips for this request. "
                        "Send a new message to continue.]",
                    )
                    return TurnResult(TurnOutcome.MAX_TURNS, round_trips)

                self._check_budget(session)

                self._set_state(LoopState.AWAITING_MODEL)
                await self._maybe_compress(session, token)
                round_trips += 1
                assembled = await self._call_model(session, token)

                self._set_state(LoopState.INTERPRETING_RESPONSE)
                content = assembled.content or [{"type": "text", "text": "(no content)"}]
                session.append_message("assistant", content)
                tool_calls = assembled.tool_calls

                if assembled.stop_reason == "max_tokens" and not tool_calls:
                    if continuations >= self._max_tokens_continuations:
                        self._append_note(
                            session,
                            f"[Stopped: response exceeded max_tokens ({self._max_output_tokens}) "
                            f"{continuations + 1} times in a row. Try increasing MaxTokens or simplifying "
                            "the request.]",
                        )
                        return TurnResult(TurnOutcome.MAX_TOKENS, round_trips, assembled.text)
                    continuations += 1
                    session.append_message("user", MAX_TOKENS_CONTINUATION_PROMPT)
                    continue
                continuations = 0

                if not tool_calls:
                    return TurnResult(TurnOutcome.COMPLETED, round_trips, assembled.text)

                self._set_state(LoopState.DISPATCHING_TOOLS)
                result_blocks = await self._dispatch_all(session, tool_calls, assembled.parse_errors, token)
                session.append_message("user", result_blocks)
                token.raise_if_cancelled()
        except OperationCancelled:
            logger.info("Turn interrupted")
            self._emit(LoopEvent("notice", text="[Interrupted]"))
            return TurnResult(TurnOutcome.INTERRUPTED, round_trips)
        except BudgetExceededError as ex:
            logger.warning(f"Budget exceeded: {ex.message}")
            self._append_note(session, f"[Stopped: turn budget exceeded ({ex.message}).]")
            return TurnResult(
                TurnOutcome.BUDGET_EXCEEDED,
                round_trips,
                error=ErrorReport(ErrorKind.BUDGET_EXCEEDED, ex.message),
            )
        except BackendFatalError as ex:
            logger.error(f"Fatal backend error: {ex.message}")
            self._set_state(LoopState.TERMINATED)
            return TurnResult(
                TurnOutcome.FATAL,
                round_trips,
                error=ErrorReport(ErrorKind.BACKEND_FATAL, ex.message, turn_index=len(session.messages) - 1),
            )
        except BackendUnavailableError as ex:
            logger.error(f"Model backend unavailable: {ex.message}")
            return TurnResult(
                TurnOutcome.ERROR,
                round_trips,
                error=ErrorReport(ErrorKind.BACKEND_UNAVAILABLE, ex.message, turn_index=len(session.messages) - 1),
            )
        finally:
            if self._state != LoopState.TERMINATED:
                self._set_state(LoopState.IDLE)

    async def compact(self, session: Session, *, force: bool = False) -> CompressionResult | None:
        if self._compressor is None:
            return None
        budget = self.budget
        if not force and not self._compressor.should_compress(session, budget):
            return None
        if force:
            # Target half the current size so older turns get summarized.
            budget = ContextBudget(max(1, estimate_total(session.messages)), 0.5)
        result = await self._compressor.compress(session, budget)
        self._apply_compaction(session, result)
        return result

    async def _maybe_compress(self, session: Session, token: CancellationToken) -> None:
        if self._compressor is None:
            return
        budget = self.budget
        if not self._compressor.should_compress(session, budget):
            return
        result = await token.run(self._compressor.compress(session, budget))
        self._apply_compaction(session, result)

    def _apply_compaction(self, session: Session, result: CompressionResult) -> None:
        if not result.changed:
            return
        session.replace_messages(result.messages)
        logger.info(
            f"Compaction ({result.strategy}): ~{result.tokens_before:,} -> ~{result.tokens_after:,} tokens"
        )
        self._emit(LoopEvent("compaction", compaction=result))

    async def _call_model(self, session: Session, token: CancellationToken) -> AssembledMessage:
        request = ModelRequest(
            model=self._model,
            max_output_tokens=self._max_output_tokens,
            system_prompt=self._system_prompt(session) if callable(self._system_prompt) else self._system_prompt,
            messages=list(session.messages),
            tools=self._registry.list_available(self._allowed_tools, self._disallowed_tools),
            temperature=self._temperature,
        )

        async def sleep(seconds: float) -> None:
            await token.run(asyncio.sleep(seconds))

        assembler: StreamAssembler | None = None
        started = time.monotonic()
        try:
            async for attempt in AsyncRetrying(
                sleep=sleep,
                **default_retry_kwargs(
                    attempts=self._retry_attempts,
                    initial_seconds=self._retry_initial_seconds,
                    max_seconds=self._retry_max_seconds,
                ),
            ):
                with attempt:
                    assembler = StreamAssembler()
                    started = time.monotonic()
                    await self._stream_once(request, assembler, token)
        except OperationCancelled:
            partial = assembler.partial_content() if assembler is not None else []
            if partial:
                session.append_message("assistant", partial)
            raise

        assert assembler is not None
        assembled = assembler.finalize()
        self._record_usage(session, assembled, int((time.monotonic() - started) * 1000))
        return assembled

    async def _stream_once(
        self,
        request: ModelRequest,
        assembler: StreamAssembler,
        token: CancellationToken,
    ) -> None:
        events = aiter(self._provider.stream(request))
        try:
            while True:
                has_event, event = await token.run(_next_event(events))
                if not has_event:
                    break
                assembler.feed(event)
                if isinstance(event, ContentBlockDelta) and event.text:
                    self._emit(LoopEvent("text", text=event.text))
        except BackendUnavailableError as ex:
            if ex.retryable and assembler.has_content:
                raise BackendUnavailableError(f"Stream failed mid-response: {ex.message}", retryable=False) from ex
            raise
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    def _record_usage(self, session: Session, assembled: AssembledMessage, duration_ms: int) -> None:
        usage = assembled.usage
        cost = cost_for(
            self._model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_write_tokens=usage.cache_write_tokens,
            cache_read_tokens=usage.cache_read_tokens,
        )
        session.usage.record_model_call(
            self._model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cache_write_tokens=usage.cache_write_tokens,
            duration_ms=duration_ms,
            cost_usd=cost,
        )
        logger.debug(
            f"Model call: stop_reason={assembled.stop_reason}, input={usage.input_tokens}, "
            f"output={usage.output_tokens}, cost=${cost:.4f}, {duration_ms}ms"
        )

    async def _dispatch_all(
        self,
        session: Session,
        tool_calls: list[dict],
        parse_errors: dict[str, str],
        token: CancellationToken,
    ) -> list[dict]:
        invocations = [ToolInvocation.from_block(block) for block in tool_calls]
        available = {d.name for d in self._registry.list_available(self._allowed_tools, self._disallowed_tools)}
        results: list[ToolResult | None] = [None] * len(invocations)
        context = ToolContext(
            working_directory=session.working_directory,
            cancel_token=token,
            session_id=session.session_id,
            todos=TodoListHandle(session),
            report_progress=lambda text: self._emit(LoopEvent("progress", text=text)),
        )
        hooks = PermissionHooks(
            remembered=session.permission_memory,
            remember=session.remember_permission,
            on_wait=self._on_permission_wait,
        )

        async def run_one(position: int, invocation: ToolInvocation) -> None:
            self._emit(LoopEvent("tool_started", invocation=invocation))
            if invocation.invocation_id in parse_errors:
                result = ToolResult.failure(ErrorKind.VALIDATION_ERROR, parse_errors[invocation.invocation_id])
            elif invocation.tool_name in self._registry.names and invocation.tool_name not in available:
                result = ToolResult.failure(
                    ErrorKind.PERMISSION_DENIED,
                    f"{invocation.tool_name} is not enabled for this session",
                )
            else:
                result = await self._registry.dispatch(invocation, context, permissions=hooks)
            results[position] = result
            session.usage.record_tool_time(result.duration_ms)
            self._emit(LoopEvent("tool_completed", invocation=invocation, result=result))

        await asyncio.gather(*(run_one(i, inv) for i, inv in enumerate(invocations)))

        # Request order, not completion order.
        blocks = []
        for invocation, result in zip(invocations, results):
            assert result is not None
            blocks.append(result.to_content_block(invocation.invocation_id))
        return blocks

    def _on_permission_wait(self, waiting: bool) -> None:
        self._set_state(LoopState.AWAITING_PERMISSION if waiting else LoopState.DISPATCHING_TOOLS)

    def _check_budget(self, session: Session) -> None:
        if self._max_budget_usd is None:
            return
        spent = session.usage.total_cost_usd
        if spent >= self._max_budget_usd:
            raise BudgetExceededError(f"${spent:.4f} spent of ${self._max_budget_usd:.4f}")

    def _append_note(self, session: Session, text: str) -> None:
        session.append_assistant_content([{"type": "text", "text": text}])
        self._emit(LoopEvent("notice", text=text))

    def _set_state(self, state: LoopState) -> None:
        if state == self._state:
            return
        self._state = state
        self._emit(LoopEvent("state", state=state))

    def _emit(self, event: LoopEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)


async def _next_event(events: Any) -> tuple[bool, Any]:
    try:
        return True, await anext(events)
    except StopAsyncIteration:
        return False, None
