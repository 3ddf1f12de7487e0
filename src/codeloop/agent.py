from __future__ import annotations

import os

from loguru import logger

from codeloop.agent_config import AgentConfig
from codeloop.cancellation import CancellationToken
from codeloop.commands.router import CommandRouter
from codeloop.console import ConsoleRenderer
from codeloop.errors import AgentLoopError, StorageCorruptionError
from codeloop.logging_config import bind_session
from codeloop.services.session_controller import SessionController
from codeloop.session import Session
from codeloop.turn_engine import LoopEvent, LoopState, TurnEngine, TurnOutcome, TurnResult


class Agent:
    """REPL-facing facade: owns the active Session, its TurnEngine and the store.

    Local slash commands are handled here and never reach the model. The
    session is saved after every turn and every command that changes it.
    """

    def __init__(self, config: AgentConfig, renderer: ConsoleRenderer | None = None):
        self._config = config
        self._line_prefix = config.line_prefix
        self._renderer = renderer or ConsoleRenderer(config.line_prefix)
        self._registry = config.registry
        self._store = config.store
        self._session = config.session or Session.create(config.working_directory)
        self._current_token: CancellationToken | None = None
        self._session_controller = SessionController(line_prefix=self._line_prefix)
        self._engine = TurnEngine(
            provider=config.provider,
            registry=config.registry,
            model=config.model,
            max_output_tokens=config.max_tokens,
            system_prompt=config.system_prompt,
            temperature=config.temperature,
            compressor=config.compressor,
            context_window_tokens=config.context_window_tokens,
            compression_threshold_ratio=config.compression_threshold_ratio,
            max_turns=config.max_turns,
            max_budget_usd=config.max_budget_usd,
            allowed_tools=config.allowed_tools,
            disallowed_tools=config.disallowed_tools,
            retry_attempts=config.retry_attempts,
            retry_initial_seconds=config.retry_initial_seconds,
            retry_max_seconds=config.retry_max_seconds,
            on_event=self._on_event,
        )
        self._command_router = CommandRouter(
            on_help=self._handle_help_command,
            on_session=self._handle_session_command,
            on_cd=self._handle_cd_command,
            on_todos=self._handle_todos_command,
            on_jobs=self._handle_jobs_command,
            on_cost=self._handle_cost_command,
            on_compact=self._handle_compact_command,
            on_unknown=self._on_unknown_command,
        )
        bind_session(self._session.session_id)

    @property
    def session(self) -> Session:
        return self._session

    @property
    def engine(self) -> TurnEngine:
        return self._engine

    @property
    def terminated(self) -> bool:
        return self._engine.state == LoopState.TERMINATED

    @property
    def busy(self) -> bool:
        return self._current_token is not None

    async def run(self, user_message: str) -> TurnResult | None:
        """Handle one line of user input. Returns None for local commands."""
        if await self._command_router.try_handle(user_message):
            return None

        token = CancellationToken()
        self._current_token = token
        try:
            result = await self._engine.run(self._session, user_message, cancel_token=token)
        finally:
            self._current_token = None
            self._renderer.end_turn()
            self._save()

        if result.outcome in (TurnOutcome.ERROR, TurnOutcome.FATAL) and result.error is not None:
            self._print(f"Error: {result.error.describe()}")
        if result.outcome == TurnOutcome.FATAL:
            self._print("The conversation cannot continue. Check your API key and model settings.")
            if self._store is None:
                self._print("Session persistence is disabled; this session was not saved.")
            else:
                self._print(
                    f"To pick up where you left off, restart with ResumeSessionId set to "
                    f"{self._session.session_id} (or ContinueLastSession: true)."
                )
        return result

    def interrupt(self) -> bool:
        """Cancel the running turn, if any. Background jobs keep running."""
        if self._current_token is None:
            return False
        self._current_token.cancel("interrupted by user")
        return True

    async def shutdown(self) -> None:
        await self._registry.jobs.shutdown()
        if not self.terminated:
            self._save()

    def _save(self) -> None:
        if self._store is None or not self._session.messages:
            return
        try:
            self._store.save(self._session)
        except StorageCorruptionError as ex:
            # The previous file is left in place; ending here keeps it the latest copy.
            logger.error(f"Session save failed: {ex.message}")
            self._engine.terminate()
            self._print(f"Error: {ex.kind.value}: {ex.message}")
            self._print(
                "The conversation has ended. Resume the last saved copy with "
                f"/session resume {self._session.session_id[:8]} once the sessions directory is fixed."
            )

    def _switch_to(self, session: Session) -> None:
        self._save()
        self._session = session
        bind_session(session.session_id)

    def _on_event(self, event: LoopEvent) -> None:
        self._renderer.handle(event)

    def _print(self, text: str) -> None:
        self._renderer.print_line(f"{self._line_prefix}{text}")

    async def _handle_help_command(self) -> None:
        self._print_help()

    def _on_unknown_command(self, trimmed: str) -> None:
        self._print(f"Unknown local command: {trimmed}")

    def _print_help(self) -> None:
        self._print("Available commands:")
        self._print("- /help")
        self._print("- /session")
        self._print("- /session list [limit]")
        self._print("- /session new [title]")
        self._print("- /session name <title>")
        self._print("- /session resume <id-or-name>")
        self._print("- /session fork [message-index]")
        self._print("- /cd <directory>")
        self._print("- /todos")
        self._print("- /jobs")
        self._print("- /jobs kill <job-id>")
        self._print("- /cost")
        self._print("- /compact")
        self._print("Press Ctrl-C to interrupt a running turn.")

    async def _handle_session_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) == 1:
            title = self._session.title or self._session.first_prompt(60) or "(untitled)"
            self._print(
                f"Current session: {title} "
                f"[{self._session_controller.short_id(self._session.session_id)}] (id={self._session.session_id})"
            )
            return

        subcommand = parts[1]
        if subcommand == "name":
            title = command.partition("name")[2].strip()
            if not title:
                self._print("Usage: /session name <title>")
                return
            self._session.set_title(title)
            self._save()
            self._print(f"Session named: {title}")
            return

        if subcommand == "new":
            title = command.partition("new")[2].strip()
            self._switch_to(Session.create(self._session.working_directory, title=title or None))
            self._print(
                f"Started new session: {self._session.title or '(untitled)'} "
                f"[{self._session_controller.short_id(self._session.session_id)}] (id={self._session.session_id})"
            )
            return

        if self._store is None:
            self._print("Session persistence is disabled; only /session, /session new and /session name are available")
            return

        if subcommand == "list":
            limit = 20
            if len(parts) >= 3:
                try:
                    limit = int(parts[2])
                except ValueError:
                    self._print("Usage: /session list [limit]")
                    return
            sessions = self._store.list_sessions(limit=limit)
            if not sessions:
                self._print("No sessions found.")
                return
            self._print("Recent sessions:")
            for s in sessions:
                self._renderer.print_line(
                    self._session_controller.format_session_list_entry(s, active_session_id=self._session.session_id)
                )
            return

        if subcommand == "resume":
            target = command.partition("resume")[2].strip()
            if not target:
                self._print("Usage: /session resume <id-or-name>")
                return
            try:
                summary = self._store.resolve_session_identifier(target)
            except ValueError as ex:
                self._print(str(ex))
                return
            if summary is None:
                self._print(f"Session not found: {target}")
                return
            try:
                session = self._store.load(summary.session_id)
            except StorageCorruptionError as ex:
                self._print(f"Cannot resume: {ex.message}")
                return
            self._switch_to(session)
            self._print(
                f"Resumed session {summary.title} "
                f"[{self._session_controller.short_id(session.session_id)}] "
                f"(id={session.session_id}, {len(session.messages)} messages)"
            )
            for line in self._session_controller.format_resumed_summary_lines(summary):
                self._renderer.print_line(line)
            return

        if subcommand == "fork":
            at_index: int | None = None
            if len(parts) >= 3:
                try:
                    at_index = int(parts[2])
                except ValueError:
                    self._print("Usage: /session fork [message-index]")
                    return
            try:
                forked = self._session.fork(at_index)
            except ValueError as ex:
                self._print(str(ex))
                return
            source_id = self._session.session_id
            self._switch_to(forked)
            self._save()
            self._print(
                f"Forked session {self._session_controller.short_id(source_id)} -> "
                f"{self._session_controller.short_id(forked.session_id)} "
                f"(id={forked.session_id}, {len(forked.messages)} messages)"
            )
            return

        self._print("Usage: /session [list [limit] | new [title] | name <title> | resume <id-or-name> | fork [index]]")

    async def _handle_cd_command(self, command: str) -> None:
        target = command.partition("/cd")[2].strip()
        if not target:
            self._print(f"Working directory: {self._session.working_directory}")
            return
        path = os.path.expanduser(target)
        if not os.path.isabs(path):
            path = os.path.join(self._session.working_directory, path)
        path = os.path.normpath(path)
        if not os.path.isdir(path):
            self._print(f"Not a directory: {target}")
            return
        self._session.set_working_directory(path)
        self._save()
        logger.info(f"Working directory changed to {path}")
        self._print(f"Working directory: {path}")

    async def _handle_todos_command(self) -> None:
        for line in self._session_controller.format_todo_lines(self._session.todos):
            self._renderer.print_line(line)

    async def _handle_jobs_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) >= 2 and parts[1] == "kill":
            if len(parts) < 3:
                self._print("Usage: /jobs kill <job-id>")
                return
            job_id = parts[2]
            if self._registry.cancel_background_job(job_id):
                self._print(f"Cancellation requested for job {job_id}")
            else:
                self._print(f"No running job with id {job_id}")
            return
        for line in self._session_controller.format_job_lines(self._registry.jobs.list_jobs()):
            self._renderer.print_line(line)

    async def _handle_cost_command(self) -> None:
        for line in self._session_controller.format_cost_lines(self._session.usage):
            self._renderer.print_line(line)

    async def _handle_compact_command(self) -> None:
        try:
            result = await self._engine.compact(self._session, force=True)
        except AgentLoopError as ex:
            self._print(f"Compaction failed: {ex.message}")
            return
        if result is None:
            self._print("Compaction is disabled.")
            return
        if not result.changed:
            self._print("Nothing to compact.")
            return
        self._save()
