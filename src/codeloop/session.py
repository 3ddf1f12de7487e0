from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class TodoItem:
    content: str
    status: TodoStatus = TodoStatus.PENDING
    active_form: str = ""

    def to_dict(self) -> dict:
        return {"content": self.content, "status": self.status.value, "activeForm": self.active_form}

    @classmethod
    def from_dict(cls, data: dict) -> TodoItem:
        return cls(
            content=str(data.get("content", "")),
            status=TodoStatus(data.get("status", TodoStatus.PENDING.value)),
            active_form=str(data.get("activeForm", data.get("active_form", ""))),
        )


@dataclass
class ModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    api_duration_ms: int = 0
    cost_usd: float = 0.0
    requests: int = 0

    def to_dict(self) -> dict:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheWriteTokens": self.cache_write_tokens,
            "apiDurationMs": self.api_duration_ms,
            "costUsd": self.cost_usd,
            "requests": self.requests,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ModelUsage:
        return cls(
            input_tokens=int(data.get("inputTokens", 0)),
            output_tokens=int(data.get("outputTokens", 0)),
            cache_read_tokens=int(data.get("cacheReadTokens", 0)),
            cache_write_tokens=int(data.get("cacheWriteTokens", 0)),
            api_duration_ms=int(data.get("apiDurationMs", 0)),
            cost_usd=float(data.get("costUsd", 0.0)),
            requests=int(data.get("requests", 0)),
        )


@dataclass
class SessionUsage:
    by_model: dict[str, ModelUsage] = field(default_factory=dict)
    tool_duration_ms: int = 0

    def record_model_call(
        self,
        model: str,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cache_read_tokens: int = 0,
        cache_write_tokens: int = 0,
        duration_ms: int = 0,
        cost_usd: float = 0.0,
    ) -> None:
        usage = self.by_model.setdefault(model, ModelUsage())
        usage.input_tokens += input_tokens
        usage.output_tokens += output_tokens
        usage.cache_read_tokens += cache_read_tokens
        usage.cache_write_tokens += cache_write_tokens
        usage.api_duration_ms += duration_ms
        usage.cost_usd += cost_usd
        usage.requests += 1

    def record_tool_time(self, duration_ms: int) -> None:
        self.tool_duration_ms += max(0, duration_ms)

    @property
    def input_tokens(self) -> int:
        return sum(u.input_tokens for u in self.by_model.values())

    @property
    def output_tokens(self) -> int:
        return sum(u.output_tokens for u in self.by_model.values())

    @property
    def api_duration_ms(self) -> int:
        return sum(u.api_duration_ms for u in self.by_model.values())

    @property
    def total_cost_usd(self) -> float:
        return sum(u.cost_usd for u in self.by_model.values())

    def to_dict(self) -> dict:
        return {
            "byModel": {model: usage.to_dict() for model, usage in self.by_model.items()},
            "toolDurationMs": self.tool_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionUsage:
        return cls(
            by_model={
                model: ModelUsage.from_dict(usage)
                for model, usage in (data.get("byModel") or {}).items()
            },
            tool_duration_ms=int(data.get("toolDurationMs", 0)),
        )


@dataclass
class Session:
    """The authoritative record of one conversation.

    ``messages`` holds Anthropic-style turn dicts (``{"role", "content"}``)
    where content is a string or a list of typed blocks. The list is
    append-only except for compaction, which swaps a prefix for a summary.
    """

    session_id: str
    working_directory: str
    messages: list[dict] = field(default_factory=list)
    todos: list[TodoItem] = field(default_factory=list)
    usage: SessionUsage = field(default_factory=SessionUsage)
    permission_memory: set[str] = field(default_factory=set)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = ""
    title: str | None = None
    parent_session_id: str | None = None

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = self.created_at

    @classmethod
    def create(cls, working_directory: str, *, title: str | None = None) -> Session:
        return cls(session_id=str(uuid4()), working_directory=working_directory, title=title)

    def touch(self) -> None:
        self.updated_at = utc_now()

    def append_message(self, role: str, content: str | list[dict]) -> int:
        if role not in ("user", "assistant"):
            raise ValueError(f"Unsupported role: {role!r}")
        self.messages.append({"role": role, "content": content})
        self.touch()
        return len(self.messages) - 1

    def append_user_content(self, content: str | list[dict]) -> int:
        """Append a user turn, folding it into a trailing user turn if one exists.

        A turn that ended on an interrupt or a backend error leaves the user
        turn last; merging keeps roles alternating.
        """
        return self._append_merged("user", content)

    def append_assistant_content(self, content: str | list[dict]) -> int:
        return self._append_merged("assistant", content)

    def _append_merged(self, role: str, content: str | list[dict]) -> int:
        if not self.messages or self.messages[-1].get("role") != role:
            return self.append_message(role, content)
        last = self.messages[-1]
        self.messages[-1] = {"role": role, "content": _as_blocks(last.get("content")) + _as_blocks(content)}
        self.touch()
        return len(self.messages) - 1

    def replace_messages(self, messages: list[dict]) -> None:
        """Swap in a compacted history in one step."""
        self.messages = list(messages)
        self.touch()

    def set_working_directory(self, path: str) -> None:
        self.working_directory = path
        self.touch()

    def set_todos(self, todos: list[TodoItem]) -> None:
        self.todos = list(todos)
        self.touch()

    def remember_permission(self, pattern: str) -> None:
        self.permission_memory.add(pattern)
        self.touch()

    def set_title(self, title: str) -> None:
        self.title = title.strip() or None
        self.touch()

    def first_prompt(self, max_chars: int = 100) -> str:
        for message in self.messages:
            if message.get("role") != "user":
                continue
            content = message.get("content")
            if isinstance(content, str):
                return content[:max_chars]
            if isinstance(content, list):
                texts = [b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"]
                if texts:
                    return " ".join(texts)[:max_chars]
        return ""

    def snapshot(self) -> Session:
        return copy.deepcopy(self)

    def fork(self, at_index: int | None = None) -> Session:
        if at_index is not None and not 0 <= at_index <= len(self.messages):
            raise ValueError(f"Fork index {at_index} out of range (0..{len(self.messages)})")
        messages = self.messages if at_index is None else self.messages[:at_index]
        now = utc_now()
        return Session(
            session_id=str(uuid4()),
            working_directory=self.working_directory,
            messages=copy.deepcopy(messages),
            todos=copy.deepcopy(self.todos),
            usage=copy.deepcopy(self.usage),
            permission_memory=set(self.permission_memory),
            created_at=now,
            updated_at=now,
            title=f"Fork of {self.title or self.first_prompt(40) or self.session_id[:8]}",
            parent_session_id=self.session_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "workingDirectory": self.working_directory,
            "title": self.title,
            "parentSessionId": self.parent_session_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messageCount": len(self.messages),
            "messages": copy.deepcopy(self.messages),
            "todos": [t.to_dict() for t in self.todos],
            "usage": self.usage.to_dict(),
            "permissionMemory": sorted(self.permission_memory),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            session_id=str(data["sessionId"]),
            working_directory=str(data.get("workingDirectory", "")),
            messages=list(data.get("messages") or []),
            todos=[TodoItem.from_dict(t) for t in data.get("todos") or []],
            usage=SessionUsage.from_dict(data.get("usage") or {}),
            permission_memory=set(data.get("permissionMemory") or []),
            created_at=str(data.get("createdAt", "")),
            updated_at=str(data.get("updatedAt", "")),
            title=data.get("title"),
            parent_session_id=data.get("parentSessionId"),
        )


class TodoListHandle:
    """Scoped capability that lets a tool read and replace the todo list only."""

    def __init__(self, session: Session):
        self._session = session

    def get(self) -> list[TodoItem]:
        return list(self._session.todos)

    def replace(self, todos: list[TodoItem]) -> None:
        self._session.set_todos(todos)


def _as_blocks(content: Any) -> list[dict]:
    if isinstance(content, list):
        return list(content)
    if content:
        return [{"type": "text", "text": str(content)}]
    return []
