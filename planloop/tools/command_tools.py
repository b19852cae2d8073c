from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from planloop.agent.tool_registry import ToolOutput
from planloop.config import DEFAULT_COMMAND_TIMEOUT
from planloop.security.command_guard import validate_command
from planloop.security.path_guard import resolve_in_workspace

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 50_000


async def run_system_command(
    workspace_path: str | Path,
    command: str,
    args: list[str] | None = None,
    working_dir: str | None = None,
    *,
    timeout: float | None = None,
) -> ToolOutput:
    argv = validate_command(command, args)
    cwd = resolve_in_workspace(workspace_path, working_dir, must_exist=True)
    limit = timeout or DEFAULT_COMMAND_TIMEOUT

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return ToolOutput.fail(f"Failed to execute command '{argv[0]}': {exc}", command=argv[0], args=argv[1:])

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ToolOutput.fail(f"Command '{argv[0]}' timed out after {limit:g} seconds", command=argv[0])
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    exit_code = proc.returncode if proc.returncode is not None else -1
    content = _format_output(
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
        exit_code,
    )
    metadata = {"exit_code": exit_code, "command": argv[0], "args": argv[1:]}
    logger.debug("system_command %s exited with %d", argv[0], exit_code)
    if exit_code == 0:
        return ToolOutput(success=True, content=content, metadata=metadata)
    return ToolOutput(success=False, content=f"Command exited with code {exit_code}\n{content}", metadata=metadata)


def _format_output(stdout: str, stderr: str, exit_code: int) -> str:
    parts: list[str] = []
    if stdout:
        parts.append("STDOUT:\n" + stdout)
    if stderr:
        parts.append("STDERR:\n" + stderr)
    content = "\n".join(parts) if parts else f"Command completed with exit code {exit_code}"
    if len(content) > MAX_OUTPUT_CHARS:
        content = content[:MAX_OUTPUT_CHARS] + "\n...<truncated>"
    return content
