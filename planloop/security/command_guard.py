"""Validation for the privileged command-execution tool class.

The validator is a pure predicate: it never runs anything. It either
returns the argv that may be executed or raises ``CommandGuardError``.
"""
from __future__ import annotations

import posixpath
import shlex
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from planloop.config import DEFAULT_COMMAND_TIMEOUT
from planloop.errors import ValidationError

HARD_DENYLIST = frozenset({
    # deletion
    "rm", "rmdir", "shred", "unlink",
    # privilege escalation
    "sudo", "su", "doas", "pkexec", "chown", "chmod",
    # filesystem formatting
    "mkfs", "fdisk", "parted", "dd", "format", "wipefs",
    # power control
    "shutdown", "reboot", "halt", "poweroff", "init",
    # process termination
    "kill", "killall", "pkill",
})

INJECTION_TOKENS = (";", "|", "&", "`", "$(", "${", ">", "<", "\n", "\r")

NESTING_COMMANDS = frozenset({"sh", "bash", "zsh", "dash", "ksh", "fish", "eval", "exec", "source"})

WRAPPER_COMMANDS = frozenset({"env", "xargs", "nohup", "timeout", "nice", "time", "busybox", "command", "watch"})

# options that make env re-split a string into a fresh command line
ENV_SPLIT_OPTIONS = ("-S", "--split-string")

# find actions that run another program or delete matches
FIND_EXEC_ACTIONS = frozenset({"-exec", "-execdir", "-ok", "-okdir"})
FIND_DESTRUCTIVE_ACTIONS = frozenset({"-delete"})

# git options that make it run a configured or given program
GIT_CONFIG_OPTIONS = ("-c", "--config-env")
GIT_PROGRAM_OPTIONS = ("--upload-pack", "--receive-pack", "--exec")
# global git options whose value is the following token
GIT_VALUE_OPTIONS = frozenset({"-C", "-c", "--git-dir", "--work-tree", "--namespace", "--config-env"})

# interpreters and the options that take inline program text
INLINE_CODE_OPTIONS = {
    "python": ("-c",),
    "python2": ("-c",),
    "python3": ("-c",),
    "perl": ("-e", "-E"),
    "ruby": ("-e",),
    "node": ("-e", "--eval", "-p", "--print"),
    "php": ("-r",),
    "lua": ("-e",),
}


class CommandGuardError(ValidationError):
    pass


@dataclass(frozen=True, slots=True)
class CommandPolicy:
    allow: frozenset[str] = field(default_factory=frozenset)
    deny: frozenset[str] = field(default_factory=frozenset)
    injection_tokens: tuple[str, ...] = INJECTION_TOKENS
    default_timeout: float = DEFAULT_COMMAND_TIMEOUT

    @property
    def hard_denylist(self) -> frozenset[str]:
        return HARD_DENYLIST

    def with_overlay(self, *, allow: Iterable[str] = (), deny: Iterable[str] = ()) -> "CommandPolicy":
        """Return a policy narrowed by an extra allow/deny overlay."""
        new_allow = frozenset(_base_name(item) for item in allow)
        if self.allow and new_allow:
            new_allow = self.allow & new_allow
        elif self.allow:
            new_allow = self.allow
        return CommandPolicy(
            allow=new_allow,
            deny=self.deny | frozenset(_base_name(item) for item in deny),
            injection_tokens=self.injection_tokens,
            default_timeout=self.default_timeout,
        )


def _base_name(command: str) -> str:
    return posixpath.basename(command.strip()).lower()


def _is_denylisted(name: str) -> bool:
    return name in HARD_DENYLIST or name.startswith("mkfs.")


class CommandValidator:
    def __init__(self, policy: CommandPolicy | None = None) -> None:
        self.policy = policy or CommandPolicy()

    def validate(self, command: str, args: Sequence[str] | None = None) -> list[str]:
        """Return the argv to execute, or raise ``CommandGuardError``."""
        raw_command = (command or "").strip()
        if raw_command == "":
            raise CommandGuardError("command is required")

        raw_args = [str(arg) for arg in (args or [])]
        self._scan_injection([raw_command, *raw_args])

        try:
            head_tokens = shlex.split(raw_command)
        except ValueError as exc:
            raise CommandGuardError("command parsing failed") from exc
        if not head_tokens:
            raise CommandGuardError("command is required")

        argv = [*head_tokens, *raw_args]
        name = _base_name(argv[0])
        self._check_name(name)
        self._check_actions(name, argv[1:])
        if name in WRAPPER_COMMANDS:
            self._check_wrapped(name, argv[1:])
        return argv

    def _scan_injection(self, values: Iterable[str]) -> None:
        for value in values:
            for token in self.policy.injection_tokens:
                if token in value:
                    raise CommandGuardError(f"injection pattern in arguments: {token!r}")

    def _check_name(self, name: str) -> None:
        if _is_denylisted(name):
            raise CommandGuardError(f"denylisted command: {name}")
        if name in NESTING_COMMANDS:
            raise CommandGuardError(f"command nesting not allowed: {name}")
        if name in self.policy.deny:
            raise CommandGuardError(f"command denied by policy: {name}")
        if self.policy.allow and name not in self.policy.allow:
            raise CommandGuardError(f"command not in allowlist: {name}")

    def _check_actions(self, name: str, args: Sequence[str]) -> None:
        """Reject options that make an otherwise harmless program run or delete things."""
        if name == "find":
            for token in args:
                if token in FIND_EXEC_ACTIONS:
                    raise CommandGuardError(f"command nesting not allowed: find {token}")
                if token in FIND_DESTRUCTIVE_ACTIONS:
                    raise CommandGuardError(f"denylisted command: find {token}")
        if name == "git":
            self._check_git(args)
        options = INLINE_CODE_OPTIONS.get(name)
        if options:
            for token in args:
                if not token.startswith("-"):
                    # first operand is a script path; later tokens belong to it
                    break
                if any(uses_option(token, option) for option in options):
                    raise CommandGuardError(f"command nesting not allowed: {name} {token}")

    def _check_git(self, args: Sequence[str]) -> None:
        index = 0
        while index < len(args) and args[index].startswith("-"):
            token = args[index]
            if any(uses_option(token, option) for option in GIT_CONFIG_OPTIONS):
                raise CommandGuardError(f"command nesting not allowed: git {token}")
            index += 2 if token in GIT_VALUE_OPTIONS else 1
        for token in args:
            if any(uses_option(token, option) for option in GIT_PROGRAM_OPTIONS):
                raise CommandGuardError(f"command nesting not allowed: git {token}")

    def _check_wrapped(self, name: str, args: Sequence[str]) -> None:
        words: list[str] = []
        for token in args:
            if name == "env" and any(uses_option(token, option) for option in ENV_SPLIT_OPTIONS):
                raise CommandGuardError(f"command nesting not allowed: env {token}")
            try:
                words.extend(shlex.split(token))
            except ValueError as exc:
                raise CommandGuardError("command parsing failed") from exc

        for index, word in enumerate(words):
            if word.startswith("-"):
                continue
            nested = _base_name(word)
            if _is_denylisted(nested):
                raise CommandGuardError(f"denylisted command: {nested}")
            if nested in NESTING_COMMANDS:
                raise CommandGuardError(f"command nesting not allowed: {nested}")
            if nested in self.policy.deny:
                raise CommandGuardError(f"command denied by policy: {nested}")
            self._check_actions(nested, words[index + 1:])


def uses_option(token: str, option: str) -> bool:
    if token == option:
        return True
    if option.startswith("--"):
        return token.startswith(option + "=")
    if token.startswith("--") or not token.startswith("-"):
        return False
    # attached value ("-cprint(1)") or a short flag cluster ("-Ic")
    return token.startswith(option) or (token[1:].isalpha() and option[1] in token[1:] and len(token) <= 3)


def validate_command(command: str, args: Sequence[str] | None = None, policy: CommandPolicy | None = None) -> list[str]:
    return CommandValidator(policy).validate(command, args)
