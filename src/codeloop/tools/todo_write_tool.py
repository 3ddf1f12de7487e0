from typing import Any

from codeloop.session import TodoItem, TodoStatus
from codeloop.tool import ToolContext, ToolOptions, ToolOutput

_STATUS_MARKS = {
    TodoStatus.PENDING: "[ ]",
    TodoStatus.IN_PROGRESS: "[~]",
    TodoStatus.COMPLETED: "[x]",
}


class TodoWriteTool:
    """Replaces the session's todo list with the list the model sends."""

    @property
    def name(self) -> str:
        return "todo_write"

    @property
    def description(self) -> str:
        return (
            "Create or update the task list for the current session. Send the complete list every "
            "time; it replaces the previous one. Keep at most one item in_progress."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "todos": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "content": {"type": "string", "minLength": 1},
                            "status": {"type": "string", "enum": [s.value for s in TodoStatus]},
                            "activeForm": {"type": "string"},
                        },
                        "required": ["content", "status"],
                    },
                },
            },
            "required": ["todos"],
        }

    @property
    def options(self) -> ToolOptions:
        return ToolOptions()

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> str | ToolOutput:
        if context.todos is None:
            return ToolOutput(success=False, error="No todo list is available in this context")

        todos = [TodoItem.from_dict(item) for item in tool_input["todos"]]
        in_progress = sum(1 for t in todos if t.status == TodoStatus.IN_PROGRESS)
        if in_progress > 1:
            return ToolOutput(success=False, error=f"Only one todo may be in_progress, got {in_progress}")

        context.todos.replace(todos)
        return format_todos(todos)


def format_todos(todos: list[TodoItem]) -> str:
    if not todos:
        return "Todo list is empty."
    done = sum(1 for t in todos if t.status == TodoStatus.COMPLETED)
    lines = [f"Todos ({done}/{len(todos)} completed):"]
    for todo in todos:
        lines.append(f"  {_STATUS_MARKS[todo.status]} {todo.content}")
    return "\n".join(lines)
