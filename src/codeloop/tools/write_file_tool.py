from pathlib import Path
from typing import Any

from codeloop.permissions import RiskLevel
from codeloop.tool import ToolContext, ToolOptions, ToolOutput
from codeloop.tools.read_file_tool import resolve_path


class WriteFileTool:
    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write content to a file, creating it (and any missing parent directories) if it doesn't exist."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to write",
                },
                "content": {
                    "type": "string",
                    "description": "The content to write to the file",
                },
            },
            "required": ["path", "content"],
        }

    @property
    def options(self) -> ToolOptions:
        return ToolOptions(requires_permission=True, risk=RiskLevel.WRITE)

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolOutput:
        path = tool_input["path"]
        content = tool_input["content"]
        file_path = Path(resolve_path(path, context.working_directory))
        existed = file_path.exists()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        verb = "Updated" if existed else "Created"
        return ToolOutput(
            output=f"{verb} {path} ({len(content):,} characters)",
            side_effects=[f"wrote {file_path}"],
        )
