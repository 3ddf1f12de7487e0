import asyncio
import unittest

from codeloop.background_jobs import BackgroundJobRegistry, JobStatus
from codeloop.cancellation import CancellationToken
from codeloop.errors import ErrorKind
from codeloop.permissions import PermissionMode, PermissionScope, RulePermissionPolicy
from codeloop.session import Session, TodoListHandle
from codeloop.tool import ToolContext, ToolInvocation, ToolOptions, ToolOutput
from codeloop.tool_registry import PermissionHooks, ToolRegistry
from tests.fakes import GUARDED, FakeTool, ScriptedPrompter, allow, deny

_ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


def _context(token: CancellationToken | None = None) -> ToolContext:
    session = Session.create(".")
    return ToolContext(working_directory=".", cancel_token=token or CancellationToken(), todos=TodoListHandle(session))


def _call(tool_name: str, tool_input: dict | None = None, invocation_id: str = "t1") -> ToolInvocation:
    return ToolInvocation(invocation_id, tool_name, tool_input or {})


class ToolRegistryTests(unittest.TestCase):
    def test_register_rejects_duplicate_names(self) -> None:
        registry = ToolRegistry()
        registry.register(FakeTool("echo"))
        with self.assertRaises(ValueError):
            registry.register(FakeTool("echo"))

    def test_list_available_applies_globs_and_deny_wins(self) -> None:
        registry = ToolRegistry()
        for name in ("bash", "read_file", "write_file"):
            registry.register(FakeTool(name))

        self.assertEqual(["bash", "read_file", "write_file"], [d.name for d in registry.list_available()])
        self.assertEqual(["read_file", "write_file"], [d.name for d in registry.list_available(["*_file"])])
        self.assertEqual(
            ["read_file"],
            [d.name for d in registry.list_available(["*_file"], ["write_*"])],
        )
        self.assertEqual([], registry.list_available([]))

    def test_validate_is_pure_and_reports_problems(self) -> None:
        registry = ToolRegistry()
        registry.register(FakeTool("echo", schema=_ECHO_SCHEMA))
        tool_input = {"text": 5}

        first = registry.validate("echo", tool_input)
        second = registry.validate("echo", tool_input)

        self.assertEqual(first, second)
        self.assertEqual(1, len(first))
        self.assertIn("text", first[0])
        self.assertEqual({"text": 5}, tool_input)
        self.assertEqual([], registry.validate("echo", {"text": "hi"}))

    def test_unknown_tool(self) -> None:
        result = asyncio.run(ToolRegistry().dispatch(_call("DoesNotExist"), _context()))
        self.assertFalse(result.success)
        self.assertEqual(ErrorKind.UNKNOWN_TOOL, result.error.kind)

    def test_invalid_input_never_reaches_handler(self) -> None:
        tool = FakeTool("echo", schema=_ECHO_SCHEMA)
        registry = ToolRegistry()
        registry.register(tool)

        result = asyncio.run(registry.dispatch(_call("echo", {}), _context()))

        self.assertEqual(ErrorKind.VALIDATION_ERROR, result.error.kind)
        self.assertEqual([], tool.calls)

    def test_handler_exception_is_captured(self) -> None:
        registry = ToolRegistry()
        registry.register(FakeTool("explode", error=RuntimeError("boom")))

        result = asyncio.run(registry.dispatch(_call("explode"), _context()))

        self.assertFalse(result.success)
        self.assertEqual(ErrorKind.HANDLER_EXCEPTION, result.error.kind)
        self.assertEqual("boom", result.error.message)

    def test_tool_output_failure_keeps_output(self) -> None:
        registry = ToolRegistry()
        registry.register(FakeTool("grumpy", output=ToolOutput(success=False, output="partial", error="nope")))

        result = asyncio.run(registry.dispatch(_call("grumpy"), _context()))

        self.assertFalse(result.success)
        self.assertEqual("partial", result.output)
        self.assertIn("nope", result.render())
        self.assertIn("partial", result.render())

    def test_permission_denied_without_running_handler(self) -> None:
        tool = FakeTool("bash", options=GUARDED)
        prompter = ScriptedPrompter([deny("not today")])
        registry = ToolRegistry(policy=RulePermissionPolicy(), prompter=prompter)
        registry.register(tool)

        result = asyncio.run(registry.dispatch(_call("bash", {"command": "rm -rf build"}), _context()))

        self.assertEqual(ErrorKind.PERMISSION_DENIED, result.error.kind)
        self.assertIn("not today", result.error.message)
        self.assertEqual([], tool.calls)
        self.assertEqual("bash(rm)", prompter.requests[0].pattern)

    def test_once_grant_asks_again(self) -> None:
        prompter = ScriptedPrompter([allow(), allow()])
        registry = ToolRegistry(policy=RulePermissionPolicy(), prompter=prompter)
        registry.register(FakeTool("bash", options=GUARDED))

        async def scenario():
            await registry.dispatch(_call("bash", {"command": "ls"}), _context())
            await registry.dispatch(_call("bash", {"command": "ls"}, "t2"), _context())

        asyncio.run(scenario())
        self.assertEqual(2, len(prompter.requests))

    def test_session_grant_is_remembered_by_registry(self) -> None:
        prompter = ScriptedPrompter([allow(PermissionScope.SESSION)])
        registry = ToolRegistry(policy=RulePermissionPolicy(), prompter=prompter)
        registry.register(FakeTool("bash", options=GUARDED))

        async def scenario():
            first = await registry.dispatch(_call("bash", {"command": "ls -la"}), _context())
            second = await registry.dispatch(_call("bash", {"command": "ls src"}, "t2"), _context())
            return first, second

        first, second = asyncio.run(scenario())
        self.assertTrue(first.success)
        self.assertTrue(second.success)
        self.assertEqual(1, len(prompter.requests))

    def test_always_grant_is_written_to_session_memory(self) -> None:
        prompter = ScriptedPrompter([allow(PermissionScope.ALWAYS)])
        policy = RulePermissionPolicy()
        registry = ToolRegistry(policy=policy, prompter=prompter)
        registry.register(FakeTool("bash", options=GUARDED))
        session = Session.create(".")
        hooks = PermissionHooks(remembered=session.permission_memory, remember=session.remember_permission)

        asyncio.run(registry.dispatch(_call("bash", {"command": "git status"}), _context(), permissions=hooks))

        self.assertEqual({"bash(git)"}, session.permission_memory)

    def test_remembered_pattern_skips_prompt(self) -> None:
        prompter = ScriptedPrompter([])
        registry = ToolRegistry(policy=RulePermissionPolicy(), prompter=prompter)
        registry.register(FakeTool("bash", options=GUARDED))
        hooks = PermissionHooks(remembered={"bash(git)"})

        result = asyncio.run(registry.dispatch(_call("bash", {"command": "git log"}), _context(), permissions=hooks))

        self.assertTrue(result.success)
        self.assertEqual([], prompter.requests)

    def test_deny_rule_beats_remembered_pattern(self) -> None:
        tool = FakeTool("bash", options=GUARDED)
        prompter = ScriptedPrompter([])
        registry = ToolRegistry(policy=RulePermissionPolicy(deny=["bash(git push*)"]), prompter=prompter)
        registry.register(tool)
        hooks = PermissionHooks(remembered={"bash(git)"})

        async def scenario():
            pushed = await registry.dispatch(
                _call("bash", {"command": "git push --force origin main"}), _context(), permissions=hooks
            )
            status = await registry.dispatch(_call("bash", {"command": "git status"}, "t2"), _context(), permissions=hooks)
            return pushed, status

        pushed, status = asyncio.run(scenario())
        self.assertEqual(ErrorKind.PERMISSION_DENIED, pushed.error.kind)
        self.assertIn("deny rule", pushed.error.message)
        self.assertTrue(status.success)
        self.assertEqual(1, len(tool.calls))
        self.assertEqual([], prompter.requests)

    def test_prompts_are_serialized(self) -> None:
        active = 0
        peak = 0

        class _SlowPrompter:
            async def ask(self, request):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return allow()

        registry = ToolRegistry(policy=RulePermissionPolicy(), prompter=_SlowPrompter())
        registry.register(FakeTool("bash", options=GUARDED))

        async def scenario():
            await asyncio.gather(
                *(registry.dispatch(_call("bash", {"command": f"cmd{i}"}, f"t{i}"), _context()) for i in range(3))
            )

        asyncio.run(scenario())
        self.assertEqual(1, peak)

    def test_bypass_mode_never_prompts(self) -> None:
        prompter = ScriptedPrompter([])
        registry = ToolRegistry(policy=RulePermissionPolicy(mode=PermissionMode.BYPASS), prompter=prompter)
        registry.register(FakeTool("bash", options=GUARDED))

        result = asyncio.run(registry.dispatch(_call("bash", {"command": "make"}), _context()))

        self.assertTrue(result.success)

    def test_cancelled_handler_reports_cancelled(self) -> None:
        registry = ToolRegistry()
        registry.register(FakeTool("sleeper", delay=10))

        async def scenario():
            token = CancellationToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            return await registry.dispatch(_call("sleeper"), _context(token))

        result = asyncio.run(scenario())
        self.assertEqual(ErrorKind.CANCELLED, result.error.kind)

    def test_background_dispatch_returns_job_and_strips_flag(self) -> None:
        tool = FakeTool("bash", output="built", options=ToolOptions(supports_background=True))
        registry = ToolRegistry()
        registry.register(tool)

        async def scenario():
            result = await registry.dispatch(_call("bash", {"command": "make", "run_in_background": True}), _context())
            snapshot = await registry.poll_background_job(result.job_id, block=True, timeout_ms=1000)
            return result, snapshot

        result, snapshot = asyncio.run(scenario())
        self.assertTrue(result.success)
        self.assertIsNotNone(result.job_id)
        self.assertIn(result.job_id, result.render())
        self.assertEqual(JobStatus.SUCCEEDED, snapshot.status)
        self.assertEqual("built", snapshot.output)
        self.assertEqual([{"command": "make"}], tool.calls)

    def test_background_flag_ignored_for_foreground_only_tools(self) -> None:
        tool = FakeTool("echo", output="now")
        registry = ToolRegistry()
        registry.register(tool)

        result = asyncio.run(registry.dispatch(_call("echo", {"run_in_background": True}), _context()))

        self.assertIsNone(result.job_id)
        self.assertEqual("now", result.output)

    def test_background_capacity_is_enforced_per_tool(self) -> None:
        tool = FakeTool("bash", delay=10, options=ToolOptions(supports_background=True, max_concurrency=1))
        registry = ToolRegistry(jobs=BackgroundJobRegistry(max_total_jobs=5))
        registry.register(tool)

        async def scenario():
            first = await registry.dispatch(_call("bash", {"run_in_background": True}), _context())
            second = await registry.dispatch(_call("bash", {"run_in_background": True}, "t2"), _context())
            await registry.jobs.shutdown()
            return first, second

        first, second = asyncio.run(scenario())
        self.assertTrue(first.success)
        self.assertFalse(second.success)
        self.assertEqual(ErrorKind.CAPACITY_EXCEEDED, second.error.kind)

    def test_background_job_survives_foreground_cancellation(self) -> None:
        tool = FakeTool("bash", output="done", delay=0.05, options=ToolOptions(supports_background=True))
        registry = ToolRegistry()
        registry.register(tool)

        async def scenario():
            token = CancellationToken()
            result = await registry.dispatch(_call("bash", {"run_in_background": True}), _context(token))
            token.cancel()
            return await registry.poll_background_job(result.job_id, block=True, timeout_ms=2000)

        snapshot = asyncio.run(scenario())
        self.assertEqual(JobStatus.SUCCEEDED, snapshot.status)


if __name__ == "__main__":
    unittest.main()
