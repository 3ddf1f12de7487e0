from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from codeloop.tool import Tool
from codeloop.tools.bash_tool import BashTool
from codeloop.tools.kill_task_tool import KillTaskTool
from codeloop.tools.read_file_tool import ReadFileTool
from codeloop.tools.task_output_tool import TaskOutputTool
from codeloop.tools.task_tool import TaskTool
from codeloop.tools.todo_write_tool import TodoWriteTool
from codeloop.tools.web.web_fetch_tool import WebFetchTool
from codeloop.tools.write_file_tool import WriteFileTool


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _base_tools(ctx: dict) -> list[Tool]:
    return [
        BashTool(ctx["max_background_shells"]),
        ReadFileTool(),
        WriteFileTool(),
        WebFetchTool(),
        TodoWriteTool(),
    ]


def _job_control_enabled(ctx: dict) -> bool:
    return ctx.get("registry") is not None


def _job_control_tools(ctx: dict) -> list[Tool]:
    registry = ctx["registry"]
    return [TaskOutputTool(registry), KillTaskTool(registry)]


def _sub_agents_enabled(ctx: dict) -> bool:
    return ctx.get("sub_agent_runner") is not None and ctx["max_sub_agents"] > 0


def _sub_agent_tools(ctx: dict) -> list[Tool]:
    return [TaskTool(ctx["sub_agent_runner"], ctx["max_sub_agents"])]


_GROUPS = [
    ToolGroup(enabled=_always, build=_base_tools),
    ToolGroup(enabled=_job_control_enabled, build=_job_control_tools),
    ToolGroup(enabled=_sub_agents_enabled, build=_sub_agent_tools),
]


def get_all(
    registry=None,
    sub_agent_runner=None,
    max_background_shells: int = 10,
    max_sub_agents: int = 4,
) -> list[Tool]:
    ctx = {
        "registry": registry,
        "sub_agent_runner": sub_agent_runner,
        "max_background_shells": max_background_shells,
        "max_sub_agents": max_sub_agents,
    }

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools


def get_sub_agent_tools(max_background_shells: int = 10) -> list[Tool]:
    """Tools a sub-agent may use: the base group only, so sub-agents cannot spawn sub-agents."""
    return _base_tools({"max_background_shells": max_background_shells})
