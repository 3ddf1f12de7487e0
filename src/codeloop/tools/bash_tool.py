import asyncio
import platform
import subprocess
from typing import Any

from codeloop.permissions import RiskLevel
from codeloop.tool import ToolContext, ToolOptions

_IS_WINDOWS = platform.system() == "Windows"

_DEFAULT_TIMEOUT_SECONDS = 120
_MAX_TIMEOUT_SECONDS = 600
_MAX_OUTPUT_CHARS = 30_000
_READ_CHUNK_BYTES = 4096


class BashTool:
    def __init__(self, max_background_shells: int = 10):
        self._options = ToolOptions(
            supports_background=True,
            requires_permission=True,
            max_concurrency=max_background_shells,
            risk=RiskLevel.EXECUTE,
        )

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return (
            "Execute a bash command in the session's working directory and return its output "
            "(stdout + stderr). Set run_in_background for long-running commands and check on "
            "them later with task_output."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The bash command to execute",
                },
                "description": {
                    "type": "string",
                    "description": "Short description of what the command does",
                },
                "timeout": {
                    "type": "number",
                    "minimum": 1,
                    "maximum": _MAX_TIMEOUT_SECONDS,
                    "description": f"Timeout in seconds (default {_DEFAULT_TIMEOUT_SECONDS})",
                },
                "run_in_background": {
                    "type": "boolean",
                    "description": "Run the command as a background job",
                },
            },
            "required": ["command"],
        }

    @property
    def options(self) -> ToolOptions:
        return self._options

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> str:
        command = tool_input["command"]
        timeout = min(float(tool_input.get("timeout", _DEFAULT_TIMEOUT_SECONDS)), _MAX_TIMEOUT_SECONDS)

        if _IS_WINDOWS:
            proc = await asyncio.create_subprocess_shell(
                f"cmd.exe /c {command}",
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=context.working_directory,
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
            )
        else:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=context.working_directory,
            )

        chunks: list[str] = []
        try:
            await asyncio.wait_for(self._collect(proc, chunks, context), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            return _cap("".join(chunks)) + f"\n[timed out after {timeout:g}s]"
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        output = _cap("".join(chunks))
        if proc.returncode != 0:
            return f"{output}\n[exit code {proc.returncode}]"
        return output.rstrip()

    @staticmethod
    async def _collect(proc: asyncio.subprocess.Process, chunks: list[str], context: ToolContext) -> None:
        assert proc.stdout is not None
        while True:
            data = await proc.stdout.read(_READ_CHUNK_BYTES)
            if not data:
                break
            text = data.decode(errors="replace")
            chunks.append(text)
            context.progress(text)
        await proc.wait()


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=5)
    except asyncio.TimeoutError:
        pass


def _cap(output: str) -> str:
    if len(output) <= _MAX_OUTPUT_CHARS:
        return output
    dropped = len(output) - _MAX_OUTPUT_CHARS
    return output[:_MAX_OUTPUT_CHARS] + f"\n[output truncated, {dropped:,} characters omitted]"
