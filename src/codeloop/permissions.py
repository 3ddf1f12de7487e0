from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from loguru import logger


class PermissionDecisionKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class PermissionScope(str, Enum):
    ONCE = "once"
    SESSION = "session"
    ALWAYS = "always"


class RiskLevel(str, Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    NETWORK = "network"


class PermissionMode(str, Enum):
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"
    DONT_ASK = "dontAsk"

    @classmethod
    def parse(cls, value: str | None) -> PermissionMode:
        if not value:
            return cls.DEFAULT
        lowered = value.strip().lower()
        for mode in cls:
            if mode.value.lower() == lowered:
                return mode
        raise ValueError(f"Unknown permission mode: {value!r}")


@dataclass(frozen=True)
class PermissionDecision:
    decision: PermissionDecisionKind
    scope: PermissionScope = PermissionScope.ONCE
    reason: str = ""
    # Set on denials that remembered grants must not override.
    binding: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision == PermissionDecisionKind.ALLOW


@dataclass(frozen=True)
class PermissionRequest:
    tool_name: str
    tool_input: dict[str, Any]
    risk: RiskLevel
    pattern: str


@runtime_checkable
class PermissionPolicy(Protocol):
    def check(self, tool_name: str, tool_input: dict[str, Any], risk: RiskLevel) -> PermissionDecision: ...


@runtime_checkable
class PermissionPrompter(Protocol):
    async def ask(self, request: PermissionRequest) -> PermissionDecision:
        """Return a final allow or deny decision for ``request``."""
        ...


# Input keys consulted, in order, to build the parenthesised part of a pattern.
_PATTERN_KEYS = ("command", "path", "file_path", "url", "description")


def invocation_pattern(tool_name: str, tool_input: dict[str, Any], *, full: bool = False) -> str:
    """Render an invocation as ``tool(key)`` for rule matching and memory.

    For shell commands the key is the first word of the command, so approving
    ``bash(git)`` covers every git invocation. With ``full`` set the whole
    command is kept, which is what rules such as ``bash(git push*)`` match.
    """
    for key in _PATTERN_KEYS:
        value = tool_input.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        value = value.strip()
        if key == "command" and not full:
            value = value.split()[0]
        return f"{tool_name}({value})"
    return tool_name


def _inner(pattern: str) -> str:
    rest = pattern.partition("(")[2]
    return rest[:-1] if rest.endswith(")") else rest


def pattern_matches(rule: str, tool_name: str, pattern: str, full_pattern: str | None = None) -> bool:
    """Match a ``tool`` or ``tool(glob)`` rule against an invocation.

    Parenthesised rules are tried against both the short pattern and, when
    given, the full one. ``tool(prefix:*)`` matches a key equal to ``prefix``
    or starting with ``prefix`` followed by a space.
    """
    rule = rule.strip()
    if not rule:
        return False
    if "(" not in rule:
        return fnmatch.fnmatchcase(tool_name, rule)
    inner = _inner(rule)
    if inner.endswith(":*"):
        if not fnmatch.fnmatchcase(tool_name, rule.partition("(")[0].strip()):
            return False
        prefix = inner[:-2].strip()
        value = _inner(full_pattern or pattern)
        return value == prefix or value.startswith(prefix + " ")
    return any(fnmatch.fnmatchcase(p, rule) for p in (pattern, full_pattern) if p)


class RulePermissionPolicy:
    """Mode- and rule-driven permission checks.

    Deny rules win over allow rules. Anything not settled by the mode or a
    rule is sent back as ``ask`` (or denied outright in ``dontAsk`` mode).
    """

    def __init__(
        self,
        *,
        mode: PermissionMode = PermissionMode.DEFAULT,
        allow: list[str] | None = None,
        deny: list[str] | None = None,
    ):
        self._mode = mode
        self._allow = list(allow or [])
        self._deny = list(deny or [])

    @property
    def mode(self) -> PermissionMode:
        return self._mode

    def set_mode(self, mode: PermissionMode) -> None:
        self._mode = mode

    def add_allow_rule(self, rule: str) -> None:
        if rule not in self._allow:
            self._allow.append(rule)

    def check(self, tool_name: str, tool_input: dict[str, Any], risk: RiskLevel) -> PermissionDecision:
        pattern = invocation_pattern(tool_name, tool_input)
        full_pattern = invocation_pattern(tool_name, tool_input, full=True)

        if any(pattern_matches(rule, tool_name, pattern, full_pattern) for rule in self._deny):
            return PermissionDecision(
                PermissionDecisionKind.DENY, reason=f"{full_pattern} matches a deny rule", binding=True
            )

        if self._mode == PermissionMode.BYPASS:
            return PermissionDecision(PermissionDecisionKind.ALLOW, PermissionScope.SESSION)

        if self._mode == PermissionMode.PLAN and risk != RiskLevel.READ:
            return PermissionDecision(
                PermissionDecisionKind.DENY, reason="plan mode allows read-only tools only", binding=True
            )

        if risk == RiskLevel.READ:
            return PermissionDecision(PermissionDecisionKind.ALLOW, PermissionScope.SESSION)

        if self._mode == PermissionMode.ACCEPT_EDITS and risk == RiskLevel.WRITE:
            return PermissionDecision(PermissionDecisionKind.ALLOW, PermissionScope.SESSION)

        if any(pattern_matches(rule, tool_name, pattern, full_pattern) for rule in self._allow):
            return PermissionDecision(PermissionDecisionKind.ALLOW, PermissionScope.SESSION)

        if self._mode == PermissionMode.DONT_ASK:
            return PermissionDecision(PermissionDecisionKind.DENY, reason="not pre-approved and prompting is disabled")

        return PermissionDecision(PermissionDecisionKind.ASK)


class AllowAllPolicy:
    def check(self, tool_name: str, tool_input: dict[str, Any], risk: RiskLevel) -> PermissionDecision:
        return PermissionDecision(PermissionDecisionKind.ALLOW, PermissionScope.SESSION)


class DenyPrompter:
    """Prompter for non-interactive runs: every ``ask`` becomes a denial."""

    async def ask(self, request: PermissionRequest) -> PermissionDecision:
        logger.info(f"Permission prompt unavailable, denying {request.pattern}")
        return PermissionDecision(PermissionDecisionKind.DENY, reason="no interactive prompt available")
