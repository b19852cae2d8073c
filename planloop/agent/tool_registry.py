"""Tool registry: definitions, catalog listing, and invocation."""
from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

CAPABILITIES = frozenset({"read", "write", "execute", "network"})


@dataclass(slots=True)
class ToolOutput:
    success: bool
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, content: str, **metadata: Any) -> "ToolOutput":
        return cls(success=True, content=content, metadata=metadata)

    @classmethod
    def fail(cls, content: str, **metadata: Any) -> "ToolOutput":
        return cls(success=False, content=content, metadata=metadata)


@dataclass(slots=True)
class ToolDef:
    name: str
    description: str
    input_schema: dict
    handler: Callable
    capabilities: frozenset[str] = frozenset({"read"})
    # privileged tools run OS commands and go through the command validator
    privileged: bool = False

    def __post_init__(self) -> None:
        unknown = set(self.capabilities) - CAPABILITIES
        if unknown:
            raise ValueError(f"unknown capabilities for {self.name}: {sorted(unknown)}")
        self.capabilities = frozenset(self.capabilities)

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema,
        }

    async def execute(self, args: dict[str, Any]) -> ToolOutput:
        if inspect.iscoroutinefunction(self.handler):
            result = await self.handler(**args)
        else:
            result = await asyncio.to_thread(self.handler, **args)
        return _to_output(result)


def _to_output(result: Any) -> ToolOutput:
    if isinstance(result, ToolOutput):
        return result
    if isinstance(result, str):
        return ToolOutput.ok(result)
    return ToolOutput.ok(json.dumps(result, ensure_ascii=False, default=str))


class ToolRegistry:
    """Name-keyed tool catalog. Registration happens at startup; lookups are read-only."""

    def __init__(self, tools: list[ToolDef] | None = None) -> None:
        self._tools: dict[str, ToolDef] = {}
        self._frozen = False
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDef) -> None:
        if self._frozen:
            raise RuntimeError("tool registry is frozen")
        if tool.name in self._tools:
            raise ValueError(f"tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def catalog(self) -> list[tuple[str, str]]:
        """Name and description of every tool, in registration order."""
        return [(td.name, td.description) for td in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def build_builtin_tools(workspace_path: str | Path, *, command_timeout: float | None = None) -> list[ToolDef]:
    """Build the default set of built-in tools bound to a workspace."""
    from planloop.tools.command_tools import run_system_command
    from planloop.tools.file_tools import list_files, read_file, search_in_files, write_file

    workspace = str(workspace_path)

    async def _system_command(command: str, args: list[str] | None = None, working_dir: str | None = None) -> ToolOutput:
        return await run_system_command(workspace, command, args, working_dir, timeout=command_timeout)

    return [
        ToolDef(
            name="list_files",
            description="List directory contents within the workspace.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Relative directory path (default: '.')", "default": "."},
                },
            },
            handler=lambda path=".": list_files(workspace, path),
        ),
        ToolDef(
            name="read_file",
            description="Read a text file from the workspace and return its content.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Relative file path within the workspace"},
                },
                "required": ["path"],
            },
            handler=lambda path: read_file(workspace, path),
        ),
        ToolDef(
            name="search_in_files",
            description="Search for a text pattern in workspace files. Returns matching lines with paths and line numbers.",
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Text to search for"},
                    "glob": {"type": "string", "description": "Glob pattern to filter files (e.g. '**/*.py')"},
                },
                "required": ["query"],
            },
            handler=lambda query, glob=None: search_in_files(workspace, query, glob),
        ),
        ToolDef(
            name="write_file",
            description="Write content to a workspace file, creating parent directories if needed.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Relative file path"},
                    "content": {"type": "string", "description": "File content to write"},
                },
                "required": ["path", "content"],
            },
            handler=lambda path, content: write_file(workspace, path, content),
            capabilities=frozenset({"read", "write"}),
        ),
        ToolDef(
            name="system_command",
            description=(
                "Execute an OS command such as 'ls -la' or 'git status'. "
                "Pass the program in 'command' and its arguments in 'args'. No shell is involved."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "The program to run (e.g. 'ls', 'git')"},
                    "args": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Arguments for the program (e.g. ['-la'])",
                    },
                    "working_dir": {"type": "string", "description": "Working directory relative to the workspace"},
                },
                "required": ["command"],
            },
            handler=_system_command,
            capabilities=frozenset({"execute"}),
            privileged=True,
        ),
    ]
