from __future__ import annotations

from pathlib import Path


class PathGuardError(Exception):
    pass


def resolve_in_workspace(workspace: str | Path, candidate: str | None, *, must_exist: bool = False) -> Path:
    """Resolve ``candidate`` against the workspace, refusing anything that escapes it."""
    root = Path(workspace).resolve()
    raw = (candidate or ".").strip() or "."
    target = Path(raw)
    resolved = target.resolve() if target.is_absolute() else (root / target).resolve()

    if not resolved.is_relative_to(root):
        raise PathGuardError(f"path '{raw}' is outside the workspace")
    if must_exist and not resolved.exists():
        raise PathGuardError(f"path '{raw}' does not exist")
    return resolved
