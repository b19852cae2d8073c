from __future__ import annotations

from pathlib import Path
from typing import Any

from planloop.security.path_guard import PathGuardError, resolve_in_workspace

MAX_SEARCH_MATCHES = 200


def list_files(workspace_path: str, path: str = ".") -> list[str]:
    target = resolve_in_workspace(workspace_path, path, must_exist=True)
    return sorted(entry.name + ("/" if entry.is_dir() else "") for entry in target.iterdir())


def read_file(workspace_path: str, path: str) -> str:
    target = resolve_in_workspace(workspace_path, path, must_exist=True)
    return target.read_text(encoding="utf-8")


def search_in_files(workspace_path: str, query: str, glob: str | None = None) -> list[dict[str, Any]]:
    workspace = Path(workspace_path).resolve()
    pattern = glob or "**/*"
    matches: list[dict[str, Any]] = []

    for file_path in sorted(workspace.glob(pattern)):
        try:
            # symlinks may point outside the workspace
            resolve_in_workspace(workspace, str(file_path))
        except PathGuardError:
            continue
        if not file_path.is_file():
            continue
        try:
            content = file_path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue

        for line_no, line in enumerate(content.splitlines(), start=1):
            if query in line:
                matches.append(
                    {
                        "path": str(file_path.relative_to(workspace)),
                        "line": line_no,
                        "text": line,
                    }
                )
                if len(matches) >= MAX_SEARCH_MATCHES:
                    return matches

    return matches


def write_file(workspace_path: str, path: str, content: str) -> str:
    target = resolve_in_workspace(workspace_path, path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return f"wrote {len(content)} characters to {path}"
