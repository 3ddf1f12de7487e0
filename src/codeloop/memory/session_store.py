from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from codeloop.errors import StorageCorruptionError
from codeloop.session import Session


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    title: str
    working_directory: str
    parent_session_id: str | None
    created_at: str
    updated_at: str
    message_count: int
    user_message_count: int = 0
    assistant_message_count: int = 0
    last_user_preview: str = ""
    last_assistant_preview: str = ""


class SessionStore:
    """One JSON document per session, named ``<session_id>.json``.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace``, so a failed write leaves the previous snapshot
    untouched.
    """

    def __init__(self, directory: str | Path):
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, session_id: str) -> Path:
        if not session_id or any(sep in session_id for sep in ("/", "\\", "..")):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self._directory / f"{session_id}.json"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def save(self, session: Session) -> Path:
        path = self.path_for(session.session_id)
        try:
            payload = json.dumps(session.to_dict(), ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as ex:
            raise StorageCorruptionError(f"Session {session.session_id} is not serializable: {ex}", path=str(path)) from ex

        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._directory,
                prefix=f".{session.session_id}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except OSError as ex:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            logger.error(f"Failed to save session {session.session_id}: {ex}")
            raise StorageCorruptionError(f"Could not write session {session.session_id}: {ex}", path=str(path)) from ex
        logger.debug(f"Saved session {session.session_id} ({len(session.messages)} messages)")
        return path

    def load(self, session_id: str) -> Session:
        path = self.path_for(session_id)
        if not path.exists():
            raise KeyError(f"Session not found: {session_id}")
        return self._read(path)

    def _read(self, path: Path) -> Session:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            return Session.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as ex:
            raise StorageCorruptionError(f"Session file {path.name} is unreadable: {ex}", path=str(path)) from ex

    def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def fork(self, source_id: str, at_index: int | None = None) -> Session:
        source = self.load(source_id)
        forked = source.fork(at_index)
        self.save(forked)
        logger.info(f"Forked session {source_id} -> {forked.session_id} ({len(forked.messages)} messages)")
        return forked

    def list_sessions(self, *, limit: int | None = None) -> list[SessionSummary]:
        summaries = []
        for path in self._directory.glob("*.json"):
            try:
                session = self._read(path)
            except StorageCorruptionError as ex:
                logger.warning(f"Skipping session file: {ex}")
                continue
            summaries.append(summarize(session))
        summaries.sort(key=lambda s: (s.updated_at, s.created_at), reverse=True)
        if limit is not None:
            summaries = summaries[: max(1, limit)]
        return summaries

    def latest(self) -> SessionSummary | None:
        sessions = self.list_sessions(limit=1)
        return sessions[0] if sessions else None

    def resolve_session_identifier(self, identifier: str) -> SessionSummary | None:
        """Find a session by full id, unique id prefix or case-insensitive title.

        Raises ``ValueError`` when a prefix or title matches more than one
        session.
        """
        target = identifier.strip()
        if not target:
            return None
        sessions = self.list_sessions()
        for session in sessions:
            if session.session_id == target:
                return session

        by_prefix = [s for s in sessions if s.session_id.startswith(target)]
        if len(by_prefix) == 1:
            return by_prefix[0]
        if len(by_prefix) > 1:
            raise ValueError(
                f"Session id prefix '{target}' is ambiguous: " + ", ".join(s.session_id for s in by_prefix[:5])
            )

        by_title = [s for s in sessions if s.title.casefold() == target.casefold()]
        if len(by_title) == 1:
            return by_title[0]
        if len(by_title) > 1:
            raise ValueError(
                f"Session name '{target}' is ambiguous. Use the session id instead: "
                + ", ".join(s.session_id for s in by_title[:5])
            )
        return None


def summarize(session: Session) -> SessionSummary:
    user_count = 0
    assistant_count = 0
    last_user = ""
    last_assistant = ""
    for message in session.messages:
        preview = preview_content(message.get("content"))
        if message.get("role") == "user":
            user_count += 1
            last_user = preview or last_user
        elif message.get("role") == "assistant":
            assistant_count += 1
            last_assistant = preview or last_assistant
    return SessionSummary(
        session_id=session.session_id,
        title=session.title or session.first_prompt(60) or f"Session {session.created_at[:16].replace('T', ' ')}",
        working_directory=session.working_directory,
        parent_session_id=session.parent_session_id,
        created_at=session.created_at,
        updated_at=session.updated_at,
        message_count=len(session.messages),
        user_message_count=user_count,
        assistant_message_count=assistant_count,
        last_user_preview=last_user,
        last_assistant_preview=last_assistant,
    )


def preview_content(content: object, max_chars: int = 140) -> str:
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict):
                block_type = block.get("type")
                if block_type == "text":
                    parts.append(str(block.get("text", "")))
                elif block_type == "tool_use":
                    parts.append(f"[tool:{block.get('name', '')}]")
                elif block_type == "tool_result":
                    parts.append("[tool_result]")
        text = " ".join(p for p in parts if p).strip()
    else:
        text = str(content or "")

    text = " ".join(text.split())
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."
