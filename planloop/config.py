from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

DEFAULT_MAX_REPLANS = 3
DEFAULT_WORKER_POOL_SIZE = 4
DEFAULT_PER_STEP_TIMEOUT = 60.0
DEFAULT_COMMAND_TIMEOUT = 30.0


@dataclass(slots=True)
class RunConfig:
    max_replans: int = DEFAULT_MAX_REPLANS
    worker_pool_size: int = DEFAULT_WORKER_POOL_SIZE
    per_step_timeout: float = DEFAULT_PER_STEP_TIMEOUT
    run_timeout: float | None = None
    planner_temperature: float = 0.0
    reflector_temperature: float = 0.5
    planner_max_tokens: int = 2048
    reflector_max_tokens: int = 2048

    def __post_init__(self) -> None:
        if self.max_replans < 0:
            raise ValueError("max_replans must be >= 0")
        if self.worker_pool_size < 1:
            raise ValueError("worker_pool_size must be >= 1")
        if self.per_step_timeout <= 0:
            raise ValueError("per_step_timeout must be > 0")
        if self.run_timeout is not None and self.run_timeout <= 0:
            raise ValueError("run_timeout must be > 0 when set")


@dataclass(slots=True)
class Settings:
    provider: str
    model: str
    api_key: str
    base_url: str | None
    workspace_root: Path
    log_level: str
    default_session_type: str
    command_allow: frozenset[str]
    command_deny: frozenset[str]
    command_timeout: float
    run: RunConfig = field(default_factory=RunConfig)


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_float(value: str | None, default: float | None) -> float | None:
    if value is None or value.strip() == "":
        return default
    return float(value)


def _parse_int(value: str | None, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    return int(value)


def _parse_list(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(item.strip().lower() for item in value.split(",") if item.strip())


def load_run_config(env: Mapping[str, str] | None = None) -> RunConfig:
    environ = os.environ if env is None else env
    return RunConfig(
        max_replans=_parse_int(environ.get("PLANLOOP_MAX_REPLANS"), DEFAULT_MAX_REPLANS),
        worker_pool_size=_parse_int(environ.get("PLANLOOP_WORKER_POOL_SIZE"), DEFAULT_WORKER_POOL_SIZE),
        per_step_timeout=_parse_float(environ.get("PLANLOOP_PER_STEP_TIMEOUT"), DEFAULT_PER_STEP_TIMEOUT),
        run_timeout=_parse_float(environ.get("PLANLOOP_RUN_TIMEOUT"), None),
        planner_temperature=_parse_float(environ.get("PLANLOOP_PLANNER_TEMPERATURE"), 0.0),
        reflector_temperature=_parse_float(environ.get("PLANLOOP_REFLECTOR_TEMPERATURE"), 0.5),
    )


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    environ = os.environ if env is None else env
    provider = environ.get("PLANLOOP_PROVIDER", "openai").strip().lower()
    api_key = environ.get("PLANLOOP_API_KEY", "").strip()
    require_key = _parse_bool(environ.get("PLANLOOP_REQUIRE_API_KEY"), True)
    default_session_type = environ.get("PLANLOOP_SESSION_TYPE", "dm").strip().lower()

    if require_key and not api_key:
        raise RuntimeError("PLANLOOP_API_KEY is required when PLANLOOP_REQUIRE_API_KEY=true")
    if default_session_type not in {"dm", "group"}:
        raise RuntimeError("PLANLOOP_SESSION_TYPE must be 'dm' or 'group'")

    base_url = environ.get("PLANLOOP_BASE_URL", "").strip() or None
    workspace_root = Path(environ.get("PLANLOOP_WORKSPACE_ROOT", str(Path.cwd()))).resolve()

    return Settings(
        provider=provider,
        model=environ.get("PLANLOOP_MODEL", "gpt-4o-mini").strip(),
        api_key=api_key,
        base_url=base_url,
        workspace_root=workspace_root,
        log_level=environ.get("PLANLOOP_LOG_LEVEL", "INFO").strip().upper(),
        default_session_type=default_session_type,
        command_allow=_parse_list(environ.get("PLANLOOP_COMMAND_ALLOW")),
        command_deny=_parse_list(environ.get("PLANLOOP_COMMAND_DENY")),
        command_timeout=_parse_float(environ.get("PLANLOOP_COMMAND_TIMEOUT"), DEFAULT_COMMAND_TIMEOUT),
        run=load_run_config(environ),
    )
