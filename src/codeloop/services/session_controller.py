from __future__ import annotations

from codeloop.background_jobs import BackgroundJobSnapshot
from codeloop.memory.session_store import SessionSummary
from codeloop.session import SessionUsage, TodoItem, TodoStatus

_TODO_MARKS = {
    TodoStatus.PENDING: "[ ]",
    TodoStatus.IN_PROGRESS: "[~]",
    TodoStatus.COMPLETED: "[x]",
}


class SessionController:
    def __init__(self, *, line_prefix: str, short_id_len: int = 8):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def format_session_list_entry(self, session: SessionSummary, *, active_session_id: str | None) -> str:
        marker = "*" if session.session_id == active_session_id else " "
        parent = self.short_id(session.parent_session_id) if session.parent_session_id else "-"
        return (
            f"{self._line_prefix}{marker} {session.title} [{self.short_id(session.session_id)}] "
            f"(messages={session.message_count}, updated={_short_time(session.updated_at)}, "
            f"parent={parent}, cwd={session.working_directory})"
        )

    def format_resumed_summary_lines(self, summary: SessionSummary) -> list[str]:
        lines = [f"{self._line_prefix}Session summary:"]
        lines.append(
            f"{self._line_prefix}- Created: {_short_time(summary.created_at)} | "
            f"Updated: {_short_time(summary.updated_at)}"
        )
        lines.append(
            f"{self._line_prefix}- Messages: {summary.message_count} "
            f"(user={summary.user_message_count}, assistant={summary.assistant_message_count})"
        )
        lines.append(f"{self._line_prefix}- Working directory: {summary.working_directory}")
        if summary.last_user_preview:
            lines.append(f"{self._line_prefix}- Last user: {summary.last_user_preview}")
        if summary.last_assistant_preview:
            lines.append(f"{self._line_prefix}- Last assistant: {summary.last_assistant_preview}")
        return lines

    def format_cost_lines(self, usage: SessionUsage) -> list[str]:
        if not usage.by_model:
            return [f"{self._line_prefix}No model calls yet."]
        lines = [f"{self._line_prefix}Total cost: ${usage.total_cost_usd:.4f}"]
        for model, model_usage in sorted(usage.by_model.items()):
            lines.append(
                f"{self._line_prefix}- {model}: {model_usage.requests} request(s), "
                f"{model_usage.input_tokens:,} in / {model_usage.output_tokens:,} out, "
                f"cache {model_usage.cache_read_tokens:,} read / {model_usage.cache_write_tokens:,} write, "
                f"${model_usage.cost_usd:.4f}"
            )
        lines.append(
            f"{self._line_prefix}API time: {usage.api_duration_ms / 1000:.1f}s | "
            f"Tool time: {usage.tool_duration_ms / 1000:.1f}s"
        )
        return lines

    def format_job_lines(self, jobs: list[BackgroundJobSnapshot]) -> list[str]:
        if not jobs:
            return [f"{self._line_prefix}No background jobs."]
        lines = []
        for job in jobs:
            description = f" - {job.description}" if job.description else ""
            lines.append(f"{self._line_prefix}{job.job_id} [{job.status.value}] {job.tool_name}{description}")
        return lines

    def format_todo_lines(self, todos: list[TodoItem]) -> list[str]:
        if not todos:
            return [f"{self._line_prefix}No todos."]
        return [f"{self._line_prefix}{_TODO_MARKS[t.status]} {t.content}" for t in todos]


def _short_time(timestamp: str) -> str:
    return timestamp[:19].replace("T", " ") if timestamp else "-"
