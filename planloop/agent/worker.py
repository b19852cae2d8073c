"""Execution phase: run plan steps in dependency order over a bounded pool.

Steps whose dependencies are satisfied are launched in index order until
the pool is full. A step any of whose ancestors failed is never dispatched;
it gets a synthesized ``skipped`` result instead. Results come back sorted
by step index no matter which order the tools finished in.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from planloop.agent.dispatcher import ToolDispatcher
from planloop.agent.state import ExecutionPlan, PlanStep, StepResult
from planloop.config import DEFAULT_PER_STEP_TIMEOUT, DEFAULT_WORKER_POOL_SIZE
from planloop.security.permission_gate import SessionContext

logger = logging.getLogger(__name__)

_STEP_REF = re.compile(r"\{\{\s*steps\.(\d+)(?:\.content)?\s*\}\}")


@dataclass(slots=True)
class StepCallbacks:
    on_step_started: Callable[[int, PlanStep], Awaitable[None] | None] | None = None
    on_step_completed: Callable[[StepResult, PlanStep], Awaitable[None] | None] | None = None


def topological_order(plan: ExecutionPlan) -> list[int]:
    """Kahn ordering of step indices, ties broken by index."""
    indegree = {index: len(step.depends_on) for index, step in enumerate(plan.steps)}
    dependents: dict[int, list[int]] = {index: [] for index in indegree}
    for index, step in enumerate(plan.steps):
        for dep in step.depends_on:
            dependents[dep].append(index)

    ready = sorted(index for index, degree in indegree.items() if degree == 0)
    order: list[int] = []
    while ready:
        current = ready.pop(0)
        order.append(current)
        for child in dependents[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
        ready.sort()

    if len(order) != len(plan.steps):
        raise ValueError("plan contains a dependency cycle")
    return order


def resolve_step_args(step: PlanStep, results: dict[int, StepResult]) -> dict[str, Any]:
    """Substitute ``{{steps.N}}`` references to dependency outputs."""

    def _replace(match: re.Match) -> str:
        ref = int(match.group(1))
        if ref not in step.depends_on or ref not in results:
            return match.group(0)
        return results[ref].content

    def _walk(value: Any) -> Any:
        if isinstance(value, str):
            return _STEP_REF.sub(_replace, value)
        if isinstance(value, list):
            return [_walk(item) for item in value]
        if isinstance(value, dict):
            return {key: _walk(item) for key, item in value.items()}
        return value

    return _walk(step.tool_args)


class Worker:
    def __init__(
        self,
        dispatcher: ToolDispatcher,
        *,
        pool_size: int = DEFAULT_WORKER_POOL_SIZE,
        step_timeout: float = DEFAULT_PER_STEP_TIMEOUT,
    ) -> None:
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        self.dispatcher = dispatcher
        self.pool_size = pool_size
        self.step_timeout = step_timeout

    async def execute(
        self,
        plan: ExecutionPlan,
        session: SessionContext,
        callbacks: StepCallbacks | None = None,
    ) -> list[StepResult]:
        cb = callbacks or StepCallbacks()
        order = topological_order(plan)
        results: dict[int, StepResult] = {}
        pending = list(order)
        running: dict[asyncio.Task, int] = {}

        try:
            while pending or running:
                await self._skip_blocked(plan, pending, results, cb)

                for index in list(pending):
                    if len(running) >= self.pool_size:
                        break
                    step = plan.steps[index]
                    if not all(dep in results for dep in step.depends_on):
                        continue
                    pending.remove(index)
                    await _maybe_await(cb.on_step_started, index, step)
                    task = asyncio.create_task(self._run_step(index, step, session, results))
                    running[task] = index

                if not running:
                    # everything left was skipped above
                    continue

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: running[t]):
                    index = running.pop(task)
                    result = task.result()
                    results[index] = result
                    await _maybe_await(cb.on_step_completed, result, plan.steps[index])
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        return [results[index] for index in range(len(plan.steps))]

    async def _skip_blocked(
        self,
        plan: ExecutionPlan,
        pending: list[int],
        results: dict[int, StepResult],
        cb: StepCallbacks,
    ) -> None:
        # pending is in topological order, so one pass covers transitive skips
        for index in list(pending):
            step = plan.steps[index]
            if any(dep in results and not results[dep].success for dep in step.depends_on):
                pending.remove(index)
                result = StepResult.skipped(index)
                results[index] = result
                logger.info("step skipped, dependency failed", extra={"step_index": index, "tool_name": step.tool_name})
                await _maybe_await(cb.on_step_completed, result, step)

    async def _run_step(
        self,
        index: int,
        step: PlanStep,
        session: SessionContext,
        results: dict[int, StepResult],
    ) -> StepResult:
        args = resolve_step_args(step, results)
        outcome = await self.dispatcher.dispatch(step.tool_name, args, session, timeout=self.step_timeout)
        return StepResult(
            step_index=index,
            success=outcome.success,
            content=outcome.content,
            duration=outcome.duration,
        )


async def _maybe_await(fn: Callable | None, *args: Any) -> None:
    if fn is None:
        return
    result = fn(*args)
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        await result
