from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_session: Callable[[str], Awaitable[None]],
        on_cd: Callable[[str], Awaitable[None]],
        on_todos: Callable[[], Awaitable[None]],
        on_jobs: Callable[[str], Awaitable[None]],
        on_cost: Callable[[], Awaitable[None]],
        on_compact: Callable[[], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_session = on_session
        self._on_cd = on_cd
        self._on_todos = on_todos
        self._on_jobs = on_jobs
        self._on_cost = on_cost
        self._on_compact = on_compact
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        command = trimmed.split(maxsplit=1)[0]
        if command == "/help":
            await self._on_help()
            return True
        if command == "/session":
            await self._on_session(trimmed)
            return True
        if command == "/cd":
            await self._on_cd(trimmed)
            return True
        if command == "/todos":
            await self._on_todos()
            return True
        if command == "/jobs":
            await self._on_jobs(trimmed)
            return True
        if command == "/cost":
            await self._on_cost()
            return True
        if command == "/compact":
            await self._on_compact()
            return True

        self._on_unknown(trimmed)
        return True
