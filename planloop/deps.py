from __future__ import annotations

from planloop.agent.events import Callback
from planloop.agent.orchestrator import Orchestrator
from planloop.agent.provider_router import build_model_client
from planloop.agent.providers.base import ModelClient
from planloop.agent.tool_registry import ToolRegistry, build_builtin_tools
from planloop.config import Settings
from planloop.observability.logging import configure_logging
from planloop.security.command_guard import CommandPolicy, CommandValidator
from planloop.security.permission_gate import (
    PermissionGate,
    SessionContext,
    SessionType,
    StaticSessionProvider,
)


def build_command_policy(settings: Settings) -> CommandPolicy:
    return CommandPolicy(
        allow=settings.command_allow,
        deny=settings.command_deny,
        default_timeout=settings.command_timeout,
    )


def build_tool_registry(settings: Settings) -> ToolRegistry:
    registry = ToolRegistry(build_builtin_tools(settings.workspace_root, command_timeout=settings.command_timeout))
    return registry.freeze()


def build_orchestrator(
    settings: Settings,
    *,
    client: ModelClient | None = None,
    callback: Callback | None = None,
) -> Orchestrator:
    configure_logging(settings.log_level)
    model_client = client or build_model_client(
        settings.provider,
        api_key=settings.api_key,
        model=settings.model,
        base_url=settings.base_url,
    )
    gate = PermissionGate(CommandValidator(build_command_policy(settings)))
    session = SessionContext(session_type=SessionType(settings.default_session_type), identity="default")
    return Orchestrator(
        client=model_client,
        registry=build_tool_registry(settings),
        gate=gate,
        callback=callback,
        session_provider=StaticSessionProvider(session),
        config=settings.run,
    )
