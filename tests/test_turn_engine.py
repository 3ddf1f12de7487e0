import asyncio
import unittest

from codeloop.cancellation import CancellationToken
from codeloop.errors import BackendFatalError, BackendUnavailableError
from codeloop.session import Session
from codeloop.stream_events import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    MessageStart,
    MessageStop,
    StreamUsage,
)
from codeloop.tool_registry import ToolRegistry
from codeloop.turn_engine import MAX_TOKENS_CONTINUATION_PROMPT, LoopState, TurnEngine, TurnOutcome
from tests.fakes import FakeTool, Hang, ScriptedProvider, text_events, tool_events


def _engine(provider, tools=(), **kwargs) -> TurnEngine:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    kwargs.setdefault("retry_initial_seconds", 0)
    kwargs.setdefault("retry_max_seconds", 0)
    return TurnEngine(
        provider=provider,
        registry=registry,
        model="claude-sonnet-4-5-20250929",
        max_output_tokens=1024,
        system_prompt="test",
        **kwargs,
    )


def _tool_results(message: dict) -> list[dict]:
    return [b for b in message["content"] if b.get("type") == "tool_result"]


def _text(message: dict) -> str:
    content = message["content"]
    if isinstance(content, str):
        return content
    return "".join(b.get("text", "") for b in content if b.get("type") == "text")


class TurnEngineTests(unittest.TestCase):
    def test_plain_answer_completes_in_one_round_trip(self) -> None:
        provider = ScriptedProvider([text_events("Hello there")])
        engine = _engine(provider)
        session = Session.create(".")

        result = asyncio.run(engine.run(session, "hi"))

        self.assertEqual(TurnOutcome.COMPLETED, result.outcome)
        self.assertEqual(1, result.round_trips)
        self.assertEqual("Hello there", result.final_text)
        self.assertEqual(["user", "assistant"], [m["role"] for m in session.messages])
        self.assertEqual(LoopState.IDLE, engine.state)

    def test_tool_results_follow_request_order_not_completion_order(self) -> None:
        finished: list[str] = []

        class _Recording(FakeTool):
            async def execute(self, tool_input, context):
                result = await super().execute(tool_input, context)
                finished.append(self.name)
                return result

        slow = _Recording("slow", output="slow done", delay=0.05)
        fast = _Recording("fast", output="fast done")
        provider = ScriptedProvider(
            [
                tool_events([("t1", "slow", {}), ("t2", "fast", {})]),
                text_events("done"),
            ]
        )
        session = Session.create(".")

        result = asyncio.run(_engine(provider, [slow, fast]).run(session, "go"))

        self.assertEqual(TurnOutcome.COMPLETED, result.outcome)
        self.assertEqual(["fast", "slow"], finished)
        results = _tool_results(session.messages[2])
        self.assertEqual(["t1", "t2"], [b["tool_use_id"] for b in results])
        self.assertEqual(["slow done", "fast done"], [b["content"] for b in results])

    def test_max_turns_makes_exactly_that_many_model_calls(self) -> None:
        echo = FakeTool("echo")
        provider = ScriptedProvider(
            [
                tool_events([("t1", "echo", {})]),
                tool_events([("t2", "echo", {})]),
                text_events("never reached"),
            ]
        )
        session = Session.create(".")

        result = asyncio.run(_engine(provider, [echo], max_turns=2).run(session, "loop"))

        self.assertEqual(TurnOutcome.MAX_TURNS, result.outcome)
        self.assertEqual(2, len(provider.requests))
        self.assertEqual("assistant", session.messages[-1]["role"])
        self.assertIn("[Stopped", _text(session.messages[-1]))

    def test_handler_exception_becomes_error_result_and_loop_continues(self) -> None:
        boom = FakeTool("explode", error=RuntimeError("boom"))
        provider = ScriptedProvider([tool_events([("t1", "explode", {})]), text_events("recovered")])
        session = Session.create(".")

        result = asyncio.run(_engine(provider, [boom]).run(session, "try it"))

        self.assertEqual(TurnOutcome.COMPLETED, result.outcome)
        block = _tool_results(session.messages[2])[0]
        self.assertTrue(block["is_error"])
        self.assertIn("HandlerException", block["content"])
        self.assertIn("boom", block["content"])
        second_request = provider.requests[1]
        self.assertEqual(3, len(second_request.messages))

    def test_unknown_tool_is_reported_to_the_model(self) -> None:
        provider = ScriptedProvider([tool_events([("t1", "DoesNotExist", {})]), text_events("ok")])
        session = Session.create(".")

        asyncio.run(_engine(provider).run(session, "call it"))

        block = _tool_results(session.messages[2])[0]
        self.assertIn("UnknownTool", block["content"])

    def test_disallowed_tool_is_hidden_and_denied(self) -> None:
        echo = FakeTool("echo")
        provider = ScriptedProvider([tool_events([("t1", "echo", {})]), text_events("ok")])
        session = Session.create(".")

        asyncio.run(_engine(provider, [echo], disallowed_tools=["ec*"]).run(session, "call it"))

        self.assertEqual([], provider.requests[0].tools)
        block = _tool_results(session.messages[2])[0]
        self.assertIn("PermissionDenied", block["content"])
        self.assertEqual([], echo.calls)

    def test_malformed_tool_json_becomes_validation_error(self) -> None:
        echo = FakeTool("echo")
        events = [
            MessageStart(),
            ContentBlockStart(0, "tool_use", tool_use_id="t1", tool_name="echo"),
            ContentBlockDelta(0, partial_json='{"text": "unterminated'),
            ContentBlockStop(0),
            MessageDelta(stop_reason="tool_use"),
            MessageStop(),
        ]
        provider = ScriptedProvider([events, text_events("ok")])
        session = Session.create(".")

        asyncio.run(_engine(provider, [echo]).run(session, "go"))

        block = _tool_results(session.messages[2])[0]
        self.assertIn("ValidationError", block["content"])
        self.assertEqual([], echo.calls)

    def test_budget_is_checked_before_each_model_call(self) -> None:
        echo = FakeTool("echo")
        expensive = StreamUsage(input_tokens=1_000_000)
        provider = ScriptedProvider([tool_events([("t1", "echo", {})], usage=expensive), text_events("unreachable")])
        session = Session.create(".")

        result = asyncio.run(_engine(provider, [echo], max_budget_usd=1.0).run(session, "spend"))

        self.assertEqual(TurnOutcome.BUDGET_EXCEEDED, result.outcome)
        self.assertEqual(1, len(provider.requests))
        self.assertGreaterEqual(session.usage.total_cost_usd, 1.0)
        self.assertIn("budget exceeded", _text(session.messages[-1]))

    def test_transient_backend_error_is_retried(self) -> None:
        provider = ScriptedProvider([BackendUnavailableError("overloaded"), text_events("second try")])
        session = Session.create(".")

        result = asyncio.run(_engine(provider).run(session, "hi"))

        self.assertEqual(TurnOutcome.COMPLETED, result.outcome)
        self.assertEqual(2, len(provider.requests))
        self.assertEqual(2, len(session.messages))

    def test_non_retryable_backend_error_ends_the_turn(self) -> None:
        provider = ScriptedProvider([BackendUnavailableError("bad request", retryable=False), text_events("later")])
        engine = _engine(provider)
        session = Session.create(".")

        result = asyncio.run(engine.run(session, "hi"))

        self.assertEqual(TurnOutcome.ERROR, result.outcome)
        self.assertEqual(1, len(provider.requests))
        self.assertEqual(LoopState.IDLE, engine.state)

        result = asyncio.run(engine.run(session, "again"))
        self.assertEqual(TurnOutcome.COMPLETED, result.outcome)
        self.assertEqual(["user", "assistant"], [m["role"] for m in session.messages])

    def test_fatal_backend_error_terminates_the_conversation(self) -> None:
        provider = ScriptedProvider([BackendFatalError("invalid x-api-key")])
        engine = _engine(provider)
        session = Session.create(".")

        result = asyncio.run(engine.run(session, "hi"))

        self.assertEqual(TurnOutcome.FATAL, result.outcome)
        self.assertEqual(LoopState.TERMINATED, engine.state)
        self.assertIn("invalid x-api-key", result.error.describe())

        again = asyncio.run(engine.run(session, "hello?"))
        self.assertEqual(TurnOutcome.FATAL, again.outcome)
        self.assertEqual(1, len(provider.requests))

    def test_interrupt_keeps_partial_text(self) -> None:
        partial = [MessageStart(), ContentBlockStart(0, "text"), ContentBlockDelta(0, text="Working on")]
        provider = ScriptedProvider([Hang(partial)])
        session = Session.create(".")

        async def scenario():
            token = CancellationToken()
            seen_text = asyncio.Event()

            def on_event(event):
                if event.type == "text":
                    seen_text.set()

            engine = _engine(provider, on_event=on_event)
            task = asyncio.create_task(engine.run(session, "long task", cancel_token=token))
            await asyncio.wait_for(seen_text.wait(), timeout=2)
            token.cancel("interrupted by user")
            return await asyncio.wait_for(task, timeout=2), engine

        result, engine = asyncio.run(scenario())

        self.assertEqual(TurnOutcome.INTERRUPTED, result.outcome)
        self.assertEqual(LoopState.IDLE, engine.state)
        self.assertEqual("assistant", session.messages[-1]["role"])
        self.assertEqual("Working on", _text(session.messages[-1]))

    def test_interrupt_during_dispatch_yields_cancelled_results(self) -> None:
        sleeper = FakeTool("sleeper", delay=10)
        provider = ScriptedProvider([tool_events([("t1", "sleeper", {})])])
        session = Session.create(".")

        async def scenario():
            token = CancellationToken()

            def on_event(event):
                if event.type == "tool_started":
                    asyncio.get_running_loop().call_later(0.01, token.cancel, "interrupted by user")

            engine = _engine(provider, [sleeper], on_event=on_event)
            return await asyncio.wait_for(engine.run(session, "sleep", cancel_token=token), timeout=2)

        result = asyncio.run(scenario())

        self.assertEqual(TurnOutcome.INTERRUPTED, result.outcome)
        block = _tool_results(session.messages[-1])[0]
        self.assertIn("Cancelled", block["content"])

    def test_user_turn_after_interrupt_is_merged(self) -> None:
        provider = ScriptedProvider([text_events("answer")])
        session = Session.create(".")
        session.append_message("user", "first question")

        asyncio.run(_engine(provider).run(session, "second question"))

        self.assertEqual(["user", "assistant"], [m["role"] for m in session.messages])
        texts = [b["text"] for b in session.messages[0]["content"]]
        self.assertEqual(["first question", "second question"], texts)

    def test_max_tokens_continues_then_stops(self) -> None:
        provider = ScriptedProvider([text_events(f"part {i}", stop_reason="max_tokens") for i in range(4)])
        session = Session.create(".")

        result = asyncio.run(_engine(provider, max_tokens_continuations=3).run(session, "write a lot"))

        self.assertEqual(TurnOutcome.MAX_TOKENS, result.outcome)
        self.assertEqual(4, len(provider.requests))
        prompts = [m for m in session.messages if m["role"] == "user" and m["content"] == MAX_TOKENS_CONTINUATION_PROMPT]
        self.assertEqual(3, len(prompts))
        roles = [m["role"] for m in session.messages]
        self.assertTrue(all(a != b for a, b in zip(roles, roles[1:])))

    def test_usage_is_recorded_per_model(self) -> None:
        provider = ScriptedProvider([text_events("hi", usage=StreamUsage(input_tokens=100, output_tokens=20))])
        session = Session.create(".")

        asyncio.run(_engine(provider).run(session, "hi"))

        usage = session.usage.by_model["claude-sonnet-4-5-20250929"]
        self.assertEqual(100, usage.input_tokens)
        self.assertEqual(20, usage.output_tokens)
        self.assertEqual(1, usage.requests)
        self.assertGreater(usage.cost_usd, 0)


if __name__ == "__main__":
    unittest.main()
