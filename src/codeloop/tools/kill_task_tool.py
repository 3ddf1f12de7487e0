from typing import Any

from codeloop.tool import ToolContext, ToolOptions, ToolOutput
from codeloop.tool_registry import ToolRegistry


class KillTaskTool:
    def __init__(self, registry: ToolRegistry):
        self._registry = registry

    @property
    def name(self) -> str:
        return "kill_task"

    @property
    def description(self) -> str:
        return "Cancel a running background job by id."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "job_id": {
                    "type": "string",
                    "description": "The id of the background job to cancel",
                },
            },
            "required": ["job_id"],
        }

    @property
    def options(self) -> ToolOptions:
        return ToolOptions()

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> str | ToolOutput:
        job_id = tool_input["job_id"]
        job = self._registry.jobs.get(job_id)
        if not self._registry.cancel_background_job(job_id):
            return ToolOutput(success=False, error=f"Job {job_id} is not running (status: {job.status.value})")
        return f"Cancellation requested for job {job_id}"
