"""Session trust tiers and the permission gate in front of every tool call."""
from __future__ import annotations

import enum
import logging
import posixpath
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from planloop.errors import PermissionDenied
from planloop.security.command_guard import CommandGuardError, CommandValidator, uses_option

if TYPE_CHECKING:
    from planloop.agent.tool_registry import ToolDef

logger = logging.getLogger(__name__)

READ_ONLY_CAPABILITIES = frozenset({"read"})

GROUP_COMMAND_ALLOWLIST = frozenset({
    "ls", "cat", "pwd", "echo", "head", "tail", "wc", "grep", "date",
    "whoami", "uname", "df", "du", "stat", "file", "which", "git",
})
GROUP_GIT_SUBCOMMANDS = frozenset({"status", "diff", "show", "log", "branch", "rev-parse"})

# options that make an allowlisted command write files or change system state
GROUP_WRITE_OPTIONS = {
    "git": ("--output", "-o"),
    "file": ("-C", "--compile"),
    "date": ("-s", "--set"),
}
# git branch options that create, rename or delete branches
GROUP_GIT_BRANCH_WRITE_OPTIONS = (
    "-d", "-D", "--delete", "-m", "-M", "--move", "-c", "-C", "--copy",
    "-f", "--force", "-u", "--set-upstream-to", "--unset-upstream", "--edit-description", "-t", "--track",
)
# git branch options after which positional arguments are patterns or commits, not new names
GROUP_GIT_BRANCH_QUERY_OPTIONS = ("-l", "--list", "--contains", "--no-contains", "--merged", "--no-merged", "--points-at")


class SessionType(str, enum.Enum):
    DM = "dm"
    GROUP = "group"


@dataclass(frozen=True, slots=True)
class SessionContext:
    session_type: SessionType
    identity: str = "anonymous"

    @classmethod
    def dm(cls, identity: str = "anonymous") -> "SessionContext":
        return cls(SessionType.DM, identity)

    @classmethod
    def group(cls, identity: str = "anonymous") -> "SessionContext":
        return cls(SessionType.GROUP, identity)


class SessionProvider(ABC):
    @abstractmethod
    async def resolve(self) -> SessionContext: ...


class StaticSessionProvider(SessionProvider):
    def __init__(self, session: SessionContext) -> None:
        self._session = session

    async def resolve(self) -> SessionContext:
        return self._session


@dataclass(frozen=True, slots=True)
class GateDecision:
    allowed: bool
    reason: str = ""
    # "permission" for tier refusals, "validation" for command validator refusals
    kind: str | None = None
    argv: list[str] | None = field(default=None, compare=False)

    @property
    def refusal(self) -> str:
        if self.allowed:
            return ""
        if self.kind == "validation":
            return self.reason
        return f"permission denied: {self.reason}"


class PermissionGate:
    def __init__(self, validator: CommandValidator | None = None) -> None:
        self.validator = validator or CommandValidator()

    def effective_capabilities(self, tool: "ToolDef", session: SessionContext) -> frozenset[str]:
        declared = frozenset(tool.capabilities)
        if session.session_type is SessionType.DM:
            return declared
        if tool.privileged:
            # command tools in group sessions only ever run read-only commands
            return READ_ONLY_CAPABILITIES
        return declared & READ_ONLY_CAPABILITIES

    def authorize(self, tool: "ToolDef", args: dict[str, Any], session: SessionContext) -> GateDecision:
        argv: list[str] | None = None
        if tool.privileged:
            try:
                argv = self.validator.validate(
                    str(args.get("command") or ""),
                    _coerce_args(args.get("args")),
                )
            except CommandGuardError as exc:
                logger.info("command rejected: %s", exc.message, extra={"tool_name": tool.name})
                return GateDecision(allowed=False, reason=exc.message, kind="validation")
            except ValueError:
                return GateDecision(allowed=False, reason="command parsing failed", kind="validation")

        try:
            self._check_tier(tool, argv, session)
        except PermissionDenied as exc:
            logger.info("tool denied for %s session: %s", session.session_type.value, exc.message,
                        extra={"tool_name": tool.name})
            return GateDecision(allowed=False, reason=exc.message, kind="permission")

        return GateDecision(allowed=True, argv=argv)

    def _check_tier(self, tool: "ToolDef", argv: list[str] | None, session: SessionContext) -> None:
        if session.session_type is SessionType.DM:
            return

        if tool.privileged:
            _ensure_group_command(argv or [])
            return

        granted = self.effective_capabilities(tool, session)
        missing = sorted(frozenset(tool.capabilities) - granted)
        if missing:
            raise PermissionDenied(
                f"tool '{tool.name}' requires {', '.join(missing)} which group sessions do not grant"
            )


def _coerce_args(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


def _ensure_group_command(argv: list[str]) -> None:
    if not argv:
        raise PermissionDenied("command is required")
    head = posixpath.basename(argv[0]).lower()
    if head not in GROUP_COMMAND_ALLOWLIST:
        raise PermissionDenied(f"command '{head}' is not available in group sessions")
    if head == "git":
        sub = argv[1].lower() if len(argv) > 1 else ""
        if sub not in GROUP_GIT_SUBCOMMANDS:
            raise PermissionDenied(f"git subcommand '{sub}' is not available in group sessions")
        if sub == "branch":
            _ensure_branch_listing(argv[2:])

    for token in argv[1:]:
        for option in GROUP_WRITE_OPTIONS.get(head, ()):
            if uses_option(token, option):
                raise PermissionDenied(f"option '{token}' of '{head}' writes and is not available in group sessions")


def _ensure_branch_listing(args: list[str]) -> None:
    for token in args:
        if any(uses_option(token, option) for option in GROUP_GIT_BRANCH_WRITE_OPTIONS):
            raise PermissionDenied(f"git branch '{token}' is not available in group sessions")
    querying = any(uses_option(token, option) for token in args for option in GROUP_GIT_BRANCH_QUERY_OPTIONS)
    if not querying and any(not token.startswith("-") for token in args):
        raise PermissionDenied("creating branches is not available in group sessions")
