import os
from typing import Any

from codeloop.tool import ToolContext, ToolOptions

_DEFAULT_LIMIT = 2000
_MAX_LINE_CHARS = 2000


class ReadFileTool:
    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return (
            "Read a text file and return its contents with line numbers. "
            "Use offset and limit to page through large files."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to read",
                },
                "offset": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "1-based line number to start reading from",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "description": f"Maximum number of lines to return (default {_DEFAULT_LIMIT})",
                },
            },
            "required": ["path"],
        }

    @property
    def options(self) -> ToolOptions:
        return ToolOptions()

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> str:
        file_path = resolve_path(tool_input["path"], context.working_directory)
        offset = int(tool_input.get("offset", 1))
        limit = int(tool_input.get("limit", _DEFAULT_LIMIT))

        with open(file_path, encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()

        if not lines:
            return f"[{tool_input['path']} is empty]"
        if offset > len(lines):
            return f"[offset {offset} is past the end of the file ({len(lines)} lines)]"

        selected = lines[offset - 1 : offset - 1 + limit]
        width = len(str(offset + len(selected) - 1))
        numbered = [
            f"{str(n).rjust(width)}\t{line[:_MAX_LINE_CHARS]}"
            for n, line in enumerate(selected, start=offset)
        ]
        remaining = len(lines) - (offset - 1 + len(selected))
        if remaining > 0:
            numbered.append(f"[{remaining} more lines, continue with offset {offset + len(selected)}]")
        return "\n".join(numbered)


def resolve_path(path: str, working_directory: str) -> str:
    """Resolve ``path`` against the session's working directory."""
    expanded = os.path.expanduser(path)
    if os.path.isabs(expanded):
        return expanded
    return os.path.join(working_directory, expanded)
