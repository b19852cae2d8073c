"""
orchestrator.py — Planner → Worker → Reflector state machine

One run walks Planning → Executing → Reflecting and either completes or
loops back to Planning with the previous plan and results as context.
Replanning is bounded by ``RunConfig.max_replans``; the whole run can be
bounded by ``RunConfig.run_timeout`` and aborted through a cancel event.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from planloop.agent.dispatcher import ToolDispatcher
from planloop.agent.events import Callback, EventEmitter
from planloop.agent.messages import Message, Usage
from planloop.agent.planner import Planner, extract_goal
from planloop.agent.providers.base import ModelClient
from planloop.agent.reflector import Reflector
from planloop.agent.state import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    AgentState,
    Complete,
    Executing,
    Failed,
    PlanStep,
    Planning,
    Reflecting,
    RunOutcome,
    StepResult,
    LoopTrace,
    state_name,
)
from planloop.agent.tool_registry import ToolRegistry
from planloop.agent.worker import StepCallbacks, Worker
from planloop.config import RunConfig
from planloop.errors import BudgetExhausted, RunTimeout, TransportError, error_payload
from planloop.observability.metrics import get_runtime_metrics
from planloop.observability.redaction import redact
from planloop.security.permission_gate import PermissionGate, SessionContext, SessionProvider
from planloop.trace import generate_trace_id, reset_current_trace_id, set_current_trace_id

logger = logging.getLogger(__name__)
metrics = get_runtime_metrics()

REPLAN_BUDGET_EXHAUSTED = "replan_budget_exhausted"
RUN_TIMEOUT = "run_timeout"
CANCELLED = "cancelled"


@dataclass(slots=True)
class _Run:
    config: RunConfig
    session: SessionContext
    trace: LoopTrace
    emitter: EventEmitter
    planner: Planner
    worker: Worker
    reflector: Reflector
    usage: Usage = field(default_factory=Usage)
    state: AgentState | None = None
    explicit_completion: bool = True


class Orchestrator:
    def __init__(
        self,
        *,
        client: ModelClient,
        registry: ToolRegistry,
        gate: PermissionGate | None = None,
        callback: Callback | None = None,
        session_provider: SessionProvider | None = None,
        config: RunConfig | None = None,
    ) -> None:
        self.client = client
        self.registry = registry.freeze()
        self.gate = gate or PermissionGate()
        self.callback = callback
        self.session_provider = session_provider
        self.config = config or RunConfig()

    async def run(
        self,
        messages: Sequence[Message],
        session: SessionContext | None = None,
        config: RunConfig | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> RunOutcome:
        """
        Drive one goal to a terminal state.

        Args:
            messages: Conversation history; the last user message is the goal.
            session: Trust context for this run. Resolved from the session
                provider when omitted, and fixed for the run's duration.
            config: Per-run overrides of the orchestrator's RunConfig.
            cancel_event: Setting it aborts in-flight tool calls and ends the
                run as ``Failed(reason="cancelled")``.

        Returns:
            ``Complete`` with content, trace and usage, or ``Failed`` with a
            reason and the trace.
        """
        cfg = config or self.config
        history = tuple(messages)
        extract_goal(history)

        resolved = session or await self._resolve_session()
        trace_id = generate_trace_id()
        token = set_current_trace_id(trace_id)
        try:
            run = self._new_run(cfg, resolved, LoopTrace(trace_id=trace_id))
            metrics.runs_total += 1
            logger.info(
                "run started for %s session",
                resolved.session_type.value,
                extra={"trace_id": trace_id, "phase": "planning", "attempt": 0},
            )

            run.emitter.start()
            try:
                return await self._supervise(run, Planning(messages=history, attempt=0), cancel_event)
            finally:
                await run.emitter.aclose()
        finally:
            reset_current_trace_id(token)

    async def _resolve_session(self) -> SessionContext:
        if self.session_provider is None:
            raise ValueError("a session or a session_provider is required")
        return await self.session_provider.resolve()

    def _new_run(self, cfg: RunConfig, session: SessionContext, trace: LoopTrace) -> _Run:
        dispatcher = ToolDispatcher(self.registry, self.gate, default_timeout=cfg.per_step_timeout)
        return _Run(
            config=cfg,
            session=session,
            trace=trace,
            emitter=EventEmitter(self.callback),
            planner=Planner(
                self.client,
                self.registry,
                temperature=cfg.planner_temperature,
                max_tokens=cfg.planner_max_tokens,
            ),
            worker=Worker(dispatcher, pool_size=cfg.worker_pool_size, step_timeout=cfg.per_step_timeout),
            reflector=Reflector(
                self.client,
                temperature=cfg.reflector_temperature,
                max_tokens=cfg.reflector_max_tokens,
            ),
        )

    # ─── Supervision: run timeout and cancellation ────────────────────────────

    async def _supervise(self, run: _Run, initial: Planning, cancel_event: asyncio.Event | None) -> RunOutcome:
        drive = asyncio.create_task(self._drive(run, initial))
        waiters: set[asyncio.Task] = {drive}
        cancel_wait: asyncio.Task | None = None
        if cancel_event is not None:
            cancel_wait = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, timeout=run.config.run_timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            drive.cancel()
            await asyncio.gather(drive, return_exceptions=True)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if drive in done:
            exc = drive.exception()
            if exc is not None:
                self._record_crash(run, exc)
            return drive.result()

        drive.cancel()
        await asyncio.gather(drive, return_exceptions=True)
        if isinstance(run.state, TERMINAL_STATES):
            return run.state
        if cancel_event is not None and cancel_event.is_set():
            reason = CANCELLED
        else:
            reason = RUN_TIMEOUT
            run.trace.record("note", error=error_payload(RunTimeout(details={"run_timeout": run.config.run_timeout}),
                                                         run.trace.trace_id))
        failed = Failed(reason=reason, trace=run.trace)
        self._transition(run, run.state, failed)
        return failed

    # ─── State machine ────────────────────────────────────────────────────────

    async def _drive(self, run: _Run, initial: Planning) -> RunOutcome:
        state: AgentState = initial
        self._transition(run, None, state)
        while not isinstance(state, TERMINAL_STATES):
            next_state = await self._advance(run, state)
            self._transition(run, state, next_state)
            state = next_state
        return state

    async def _advance(self, run: _Run, state: AgentState) -> AgentState:
        if isinstance(state, Planning):
            return await self._plan(run, state)
        if isinstance(state, Executing):
            return await self._execute(run, state)
        if isinstance(state, Reflecting):
            return await self._reflect(run, state)
        raise RuntimeError(f"cannot advance from terminal state {state_name(state)}")

    def _transition(self, run: _Run, source: AgentState | None, target: AgentState) -> None:
        if source is not None and type(target) not in ALLOWED_TRANSITIONS.get(type(source), ()):
            raise RuntimeError(f"illegal transition {state_name(source)} -> {state_name(target)}")

        attempt = getattr(source, "attempt", 0)
        run.trace.record_transition(state_name(source) if source else "start", state_name(target), attempt)
        run.state = target
        logger.debug(
            "transition %s -> %s",
            state_name(source) if source else "start",
            state_name(target),
            extra={"trace_id": run.trace.trace_id, "attempt": attempt},
        )

        if isinstance(target, Complete):
            self._finish_complete(run, target)
        elif isinstance(target, Failed):
            self._finish_failed(run, target)

    async def _plan(self, run: _Run, state: Planning) -> AgentState:
        try:
            result = await run.planner.plan(
                state.messages,
                prior_plan=state.prior_plan,
                prior_results=state.prior_results,
                replan_reason=state.replan_reason,
            )
        except TransportError as exc:
            return self._model_failure(run, "planner", exc, state.attempt)

        run.usage.add(result.usage)
        plan = result.plan
        run.trace.record(
            "model_call",
            phase="planning",
            attempt=state.attempt,
            steps=len(plan.steps),
            direct_answer=result.direct_answer is not None,
        )
        run.emitter.emit("plan_created", {
            "trace_id": run.trace.trace_id,
            "attempt": state.attempt,
            "goal": plan.goal,
            "reasoning": plan.reasoning,
            "steps": [
                {"index": i, "tool_name": s.tool_name, "description": s.description, "depends_on": sorted(s.depends_on)}
                for i, s in enumerate(plan.steps)
            ],
        })

        if result.direct_answer is not None:
            return Complete(content=result.direct_answer, trace=run.trace, usage=_copy_usage(run.usage))
        return Executing(plan=plan, attempt=state.attempt, messages=state.messages)

    async def _execute(self, run: _Run, state: Executing) -> AgentState:
        callbacks = StepCallbacks(
            on_step_started=lambda index, step: self._on_step_started(run, index, step),
            on_step_completed=lambda result, step: self._on_step_completed(run, result, step),
        )
        results = await run.worker.execute(state.plan, run.session, callbacks)
        return Reflecting(plan=state.plan, results=tuple(results), attempt=state.attempt, messages=state.messages)

    async def _reflect(self, run: _Run, state: Reflecting) -> AgentState:
        """Ask the reflector to complete or replan.

        ``run()`` never builds a state past the replan budget; the first check
        rejects hand-built ``Reflecting`` states whose attempt already exceeds it
        without spending a model call.
        """
        cfg = run.config
        if state.attempt > cfg.max_replans:
            run.trace.record("note", message="reflection skipped", attempt=state.attempt,
                             error=error_payload(BudgetExhausted(), run.trace.trace_id))
            return Failed(reason=REPLAN_BUDGET_EXHAUSTED, trace=run.trace)

        try:
            decision, usage = await run.reflector.reflect(
                state.plan,
                state.results,
                state.messages,
                attempt=state.attempt,
                max_replans=cfg.max_replans,
            )
        except TransportError as exc:
            return self._model_failure(run, "reflector", exc, state.attempt)

        run.usage.add(usage)
        run.trace.record(
            "model_call",
            phase="reflecting",
            attempt=state.attempt,
            decision=decision.kind,
            explicit=decision.explicit,
        )

        if not decision.is_replan:
            run.explicit_completion = decision.explicit
            return Complete(content=decision.content, trace=run.trace, usage=_copy_usage(run.usage))

        next_attempt = state.attempt + 1
        if next_attempt > cfg.max_replans:
            run.trace.record("note", message="replan requested with no budget left", reason=decision.reason,
                             error=error_payload(BudgetExhausted(), run.trace.trace_id))
            return Failed(reason=REPLAN_BUDGET_EXHAUSTED, trace=run.trace)

        metrics.replans_total += 1
        run.emitter.emit("replanning", {
            "trace_id": run.trace.trace_id,
            "attempt": next_attempt,
            "reason": decision.reason,
        })
        logger.info(
            "replanning: %s",
            decision.reason,
            extra={"trace_id": run.trace.trace_id, "phase": "reflecting", "attempt": next_attempt},
        )
        return Planning(
            messages=state.messages,
            attempt=next_attempt,
            prior_plan=state.plan,
            prior_results=state.results,
            replan_reason=decision.reason,
        )

    def _model_failure(self, run: _Run, phase: str, exc: TransportError, attempt: int) -> Failed:
        note: dict[str, Any] = {"error": error_payload(exc, run.trace.trace_id)}
        if exc.__cause__ is not None:
            # the SDK or client exception the transport error was raised from
            note["cause"] = error_payload(exc.__cause__, run.trace.trace_id)
        run.trace.record("note", phase=phase, attempt=attempt, **note)
        logger.error(
            "%s model call failed: %s",
            phase,
            exc.message,
            extra={"trace_id": run.trace.trace_id, "phase": phase, "attempt": attempt},
        )
        return Failed(reason=f"{phase}_failed: {exc.message}", trace=run.trace)

    def _record_crash(self, run: _Run, exc: BaseException) -> None:
        payload = error_payload(exc, run.trace.trace_id)
        if run.trace.outcome is None:
            run.trace.record("note", error=payload)
            run.trace.close("crashed")
        logger.error(
            "run aborted by %s",
            exc.__class__.__name__,
            exc_info=exc,
            extra={"trace_id": run.trace.trace_id, "outcome": "crashed", "reason": payload["code"]},
        )

    # ─── Step hooks ───────────────────────────────────────────────────────────

    def _on_step_started(self, run: _Run, index: int, step: PlanStep) -> None:
        run.trace.record("tool_call", status="started", step_index=index, tool_name=step.tool_name,
                         args=redact(step.tool_args))
        run.emitter.emit("step_started", {
            "trace_id": run.trace.trace_id,
            "step_index": index,
            "tool_name": step.tool_name,
            "description": step.description,
        })

    def _on_step_completed(self, run: _Run, result: StepResult, step: PlanStep) -> None:
        status = "skipped" if result.is_skip else ("succeeded" if result.success else "failed")
        run.trace.record("tool_call", status=status, step_index=result.step_index, tool_name=step.tool_name,
                         success=result.success, duration=result.duration, content=redact(result.content))
        run.emitter.emit("step_completed", {
            "trace_id": run.trace.trace_id,
            "step_index": result.step_index,
            "tool_name": step.tool_name,
            "success": result.success,
            "status": status,
            "duration": result.duration,
        })
        logger.info(
            "step %s",
            status,
            extra={
                "trace_id": run.trace.trace_id,
                "step_index": result.step_index,
                "tool_name": step.tool_name,
                "duration_ms": int(result.duration * 1000),
                "outcome": status,
            },
        )

    # ─── Terminal states ──────────────────────────────────────────────────────

    def _finish_complete(self, run: _Run, state: Complete) -> None:
        run.trace.close("completed")
        metrics.runs_completed_total += 1
        payload: dict[str, Any] = {
            "trace_id": run.trace.trace_id,
            "content": state.content,
            "usage": state.usage.as_dict(),
            "explicit": run.explicit_completion,
        }
        run.emitter.emit("completed", payload)
        logger.info(
            "run completed",
            extra={
                "trace_id": run.trace.trace_id,
                "duration_ms": int(run.trace.duration * 1000),
                "outcome": "completed" if run.explicit_completion else "implicit_complete",
            },
        )

    def _finish_failed(self, run: _Run, state: Failed) -> None:
        run.trace.close("failed")
        metrics.runs_failed_total += 1
        run.emitter.emit("failed", {"trace_id": run.trace.trace_id, "reason": state.reason})
        logger.warning(
            "run failed",
            extra={
                "trace_id": run.trace.trace_id,
                "duration_ms": int(run.trace.duration * 1000),
                "outcome": "failed",
                "reason": state.reason,
            },
        )


def _copy_usage(usage: Usage) -> Usage:
    return Usage(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)
