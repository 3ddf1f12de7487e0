from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from codeloop.cancellation import CancellationToken
from codeloop.errors import ErrorKind
from codeloop.permissions import RiskLevel
from codeloop.session import TodoListHandle


@dataclass(frozen=True)
class ToolOptions:
    supports_background: bool = False
    requires_permission: bool = False
    # Cap on concurrently running background jobs of this tool. 0 means no
    # per-tool cap (the registry's global cap still applies).
    max_concurrency: int = 0
    risk: RiskLevel = RiskLevel.READ


@dataclass
class ToolContext:
    """What a handler may touch while it runs.

    Handlers never see the Session itself; the todo list is exposed through
    a scoped handle and everything else is plain data.
    """

    working_directory: str
    cancel_token: CancellationToken
    session_id: str = ""
    todos: TodoListHandle | None = None
    report_progress: Callable[[str], None] | None = None
    check_permission: Callable[[str, dict[str, Any]], Awaitable[bool]] | None = None

    def progress(self, text: str) -> None:
        if self.report_progress is not None:
            self.report_progress(text)


@dataclass
class ToolOutput:
    success: bool = True
    output: str | dict | list | None = None
    error: str | None = None
    side_effects: list[str] = field(default_factory=list)


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    @property
    def options(self) -> ToolOptions: ...

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> str | ToolOutput: ...


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


@dataclass(frozen=True)
class ToolInvocation:
    invocation_id: str
    tool_name: str
    input: dict[str, Any]

    @classmethod
    def from_block(cls, block: dict) -> ToolInvocation:
        tool_input = block.get("input")
        return cls(
            invocation_id=str(block.get("id", "")),
            tool_name=str(block.get("name", "")),
            input=tool_input if isinstance(tool_input, dict) else {},
        )


@dataclass(frozen=True)
class ToolError:
    kind: ErrorKind
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass
class ToolResult:
    success: bool
    output: str | dict | list | None = None
    error: ToolError | None = None
    duration_ms: int = 0
    side_effects: list[str] = field(default_factory=list)
    job_id: str | None = None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, *, duration_ms: int = 0) -> ToolResult:
        return cls(success=False, error=ToolError(kind, message), duration_ms=duration_ms)

    def render(self) -> str:
        if not self.success:
            err = self.error or ToolError(ErrorKind.HANDLER_EXCEPTION, "Tool failed")
            text = f"Error ({err.kind.value}): {err.message}"
            return f"{text}\n{_render_output(self.output)}" if self.output else text
        if self.job_id is not None:
            text = f"Started background job {self.job_id}. Use task_output to check on it."
            return f"{text}\n{_render_output(self.output)}" if self.output else text
        return _render_output(self.output)

    def to_content_block(self, tool_use_id: str) -> dict:
        block: dict[str, Any] = {"type": "tool_result", "tool_use_id": tool_use_id, "content": self.render()}
        if not self.success:
            block["is_error"] = True
        return block


def _render_output(output: str | dict | list | None) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, indent=2, default=str)
