"""Permission-gated, time-bounded tool invocation."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from planloop.agent.tool_registry import ToolRegistry
from planloop.config import DEFAULT_PER_STEP_TIMEOUT
from planloop.errors import StepTimeout
from planloop.observability.metrics import get_runtime_metrics
from planloop.security.permission_gate import PermissionGate, SessionContext

logger = logging.getLogger(__name__)
metrics = get_runtime_metrics()


@dataclass(slots=True)
class DispatchOutcome:
    success: bool
    content: str
    duration: float
    dispatched: bool = True


class ToolDispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        gate: PermissionGate | None = None,
        *,
        default_timeout: float = DEFAULT_PER_STEP_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.gate = gate or PermissionGate()
        self.default_timeout = default_timeout

    def timeout_for(self, tool_name: str, requested: float | None = None) -> float:
        limit = requested or self.default_timeout
        tool = self.registry.lookup(tool_name)
        if tool is not None and tool.privileged:
            limit = min(limit, self.gate.validator.policy.default_timeout)
        return limit

    async def dispatch(
        self,
        tool_name: str,
        args: dict[str, Any],
        session: SessionContext,
        *,
        timeout: float | None = None,
    ) -> DispatchOutcome:
        started = time.monotonic()
        tool = self.registry.lookup(tool_name)
        if tool is None:
            return DispatchOutcome(False, f"unknown tool: {tool_name}", 0.0, dispatched=False)

        decision = self.gate.authorize(tool, args, session)
        if not decision.allowed:
            metrics.tool_denials_total += 1
            return DispatchOutcome(False, decision.refusal, time.monotonic() - started, dispatched=False)

        call_args = dict(args)
        if decision.argv is not None:
            # run exactly what the validator approved
            call_args["command"] = decision.argv[0]
            call_args["args"] = decision.argv[1:]

        limit = self.timeout_for(tool_name, timeout)
        metrics.increment_tool_call(tool_name)
        try:
            output = await asyncio.wait_for(tool.execute(call_args), timeout=limit)
        except asyncio.TimeoutError:
            error = StepTimeout(f"timed out after {limit:g}s", details={"tool_name": tool_name})
            logger.warning(error.message, extra={"tool_name": tool_name})
            return DispatchOutcome(False, error.message, time.monotonic() - started)
        except TypeError as exc:
            return DispatchOutcome(False, f"invalid arguments: {exc}", time.monotonic() - started)
        except Exception as exc:
            logger.info("tool raised %s: %s", exc.__class__.__name__, exc, extra={"tool_name": tool_name})
            return DispatchOutcome(False, f"tool error: {exc}", time.monotonic() - started)

        return DispatchOutcome(output.success, output.content, time.monotonic() - started)
