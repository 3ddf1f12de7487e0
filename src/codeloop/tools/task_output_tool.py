from typing import Any

from codeloop.background_jobs import BackgroundJobSnapshot
from codeloop.tool import ToolContext, ToolOptions, ToolOutput
from codeloop.tool_registry import ToolRegistry

_DEFAULT_TIMEOUT_MS = 30_000
_MAX_TIMEOUT_MS = 600_000


class TaskOutputTool:
    def __init__(self, registry: ToolRegistry):
        self._registry = registry

    @property
    def name(self) -> str:
        return "task_output"

    @property
    def description(self) -> str:
        return (
            "Get the status and output of a background job started with run_in_background. "
            "With block=true (the default), waits up to timeout milliseconds for the job to finish."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "job_id": {
                    "type": "string",
                    "description": "The id returned when the background job was started",
                },
                "block": {
                    "type": "boolean",
                    "description": "Wait for the job to finish (default true)",
                },
                "timeout": {
                    "type": "integer",
                    "minimum": 0,
                    "maximum": _MAX_TIMEOUT_MS,
                    "description": f"Maximum wait in milliseconds when blocking (default {_DEFAULT_TIMEOUT_MS})",
                },
            },
            "required": ["job_id"],
        }

    @property
    def options(self) -> ToolOptions:
        return ToolOptions()

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolOutput:
        snapshot = await self._registry.poll_background_job(
            tool_input["job_id"],
            block=bool(tool_input.get("block", True)),
            timeout_ms=int(tool_input.get("timeout", _DEFAULT_TIMEOUT_MS)),
        )
        return ToolOutput(output=format_job(snapshot))


def format_job(snapshot: BackgroundJobSnapshot) -> str:
    lines = [
        f"Job: {snapshot.job_id}",
        f"Tool: {snapshot.tool_name}",
        f"Status: {snapshot.status.value}",
    ]
    if snapshot.description:
        lines.append(f"Description: {snapshot.description}")
    if snapshot.error:
        lines.append(f"Error: {snapshot.error}")
    lines.extend(["", "--- Output ---", snapshot.output or "(no output yet)"])
    return "\n".join(lines)
