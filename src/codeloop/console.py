from __future__ import annotations

import asyncio
import sys
import threading

from loguru import logger

from codeloop.permissions import PermissionDecision, PermissionDecisionKind, PermissionRequest, PermissionScope
from codeloop.turn_engine import LoopEvent, LoopState

_SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

_PERMISSION_ANSWERS = {
    "y": (PermissionDecisionKind.ALLOW, PermissionScope.ONCE),
    "yes": (PermissionDecisionKind.ALLOW, PermissionScope.ONCE),
    "s": (PermissionDecisionKind.ALLOW, PermissionScope.SESSION),
    "session": (PermissionDecisionKind.ALLOW, PermissionScope.SESSION),
    "a": (PermissionDecisionKind.ALLOW, PermissionScope.ALWAYS),
    "always": (PermissionDecisionKind.ALLOW, PermissionScope.ALWAYS),
    "n": (PermissionDecisionKind.DENY, PermissionScope.ONCE),
    "no": (PermissionDecisionKind.DENY, PermissionScope.ONCE),
}


class Spinner:
    """Thread-based spinner that renders on the current line using \\r."""

    def __init__(self, prefix: str = "", label: str = " Thinking..."):
        self._prefix = prefix
        self._label = label
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._frame_width = 1 + len(label)

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        if self._thread:
            self._thread.join()
        clear = self._prefix + " " * self._frame_width
        sys.stdout.write("\r" + clear + "\r" + self._prefix)
        sys.stdout.flush()

    def _run(self) -> None:
        i = 0
        try:
            while not self._stop.is_set():
                frame = _SPINNER_FRAMES[i % len(_SPINNER_FRAMES)] + self._label
                sys.stdout.write("\r" + self._prefix + frame)
                sys.stdout.flush()
                self._stop.wait(0.08)
                i += 1
        except (UnicodeEncodeError, OSError):
            pass


class ConsoleRenderer:
    """Renders loop events to stdout: streamed text, tool activity, notices."""

    def __init__(self, line_prefix: str = "assistant> ", *, show_spinner: bool = True):
        self._line_prefix = line_prefix
        self._show_spinner = show_spinner and sys.stdout.isatty()
        self._spinner: Spinner | None = None
        self._at_line_start = True

    @property
    def line_prefix(self) -> str:
        return self._line_prefix

    def handle(self, event: LoopEvent) -> None:
        if event.type == "state":
            if event.state == LoopState.AWAITING_MODEL:
                self._start_spinner()
            elif event.state in (LoopState.IDLE, LoopState.AWAITING_PERMISSION, LoopState.TERMINATED):
                self.stop_spinner()
        elif event.type == "text":
            self.stop_spinner()
            self._write(event.text)
        elif event.type == "tool_started" and event.invocation is not None:
            self.stop_spinner()
            self._line(f"  -> {event.invocation.tool_name}{_summarize_input(event.invocation.input)}")
        elif event.type == "tool_completed" and event.invocation is not None and event.result is not None:
            result = event.result
            if result.job_id is not None:
                self._line(f"  <- {event.invocation.tool_name}: started background job {result.job_id}")
            elif not result.success and result.error is not None:
                self._line(f"  <- {event.invocation.tool_name} failed ({result.error.kind.value}): {result.error.message}")
            else:
                self._line(f"  <- {event.invocation.tool_name} ({result.duration_ms} ms)")
        elif event.type == "compaction" and event.compaction is not None:
            c = event.compaction
            self._line(f"[Compacted context: ~{c.tokens_before:,} -> ~{c.tokens_after:,} tokens ({c.strategy})]")
        elif event.type == "notice":
            self.stop_spinner()
            self._line(event.text)
        elif event.type == "progress":
            logger.trace(event.text.rstrip())

    def print_line(self, text: str = "") -> None:
        self.stop_spinner()
        self._line(text)

    def stop_spinner(self) -> None:
        if self._spinner is not None:
            self._spinner.stop()
            self._spinner = None
            self._at_line_start = False

    def end_turn(self) -> None:
        self.stop_spinner()
        if not self._at_line_start:
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._at_line_start = True

    def _start_spinner(self) -> None:
        if not self._show_spinner or self._spinner is not None:
            return
        if not self._at_line_start:
            sys.stdout.write("\n")
        self._spinner = Spinner(prefix=self._line_prefix)
        self._spinner.start()

    def _write(self, text: str) -> None:
        if not text:
            return
        if self._at_line_start:
            sys.stdout.write(self._line_prefix)
        sys.stdout.write(text)
        sys.stdout.flush()
        self._at_line_start = text.endswith("\n")

    def _line(self, text: str) -> None:
        if not self._at_line_start:
            sys.stdout.write("\n")
        print(text, flush=True)
        self._at_line_start = True


class ConsolePermissionPrompter:
    """Asks the user on the terminal. Reads stdin on a worker thread."""

    def __init__(self, renderer: ConsoleRenderer):
        self._renderer = renderer

    async def ask(self, request: PermissionRequest) -> PermissionDecision:
        self._renderer.print_line(
            f"Permission required: {request.tool_name} [{request.risk.value}] {_summarize_input(request.tool_input)}"
        )
        while True:
            answer = await asyncio.to_thread(input, "Allow? [y]es / [n]o / [s]ession / [a]lways: ")
            choice = _PERMISSION_ANSWERS.get(answer.strip().lower())
            if choice is not None:
                kind, scope = choice
                reason = "" if kind == PermissionDecisionKind.ALLOW else "denied by user"
                return PermissionDecision(kind, scope, reason)
            self._renderer.print_line("Please answer y, n, s or a.")


def _summarize_input(tool_input: dict) -> str:
    for key in ("command", "path", "url", "description", "job_id"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            text = " ".join(value.split())
            if len(text) > 80:
                text = text[:77] + "..."
            return f" {text}"
    return ""
