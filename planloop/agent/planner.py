"""Planning phase: one model call that turns the conversation into an ExecutionPlan."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from planloop.agent.messages import Completion, Message, Usage
from planloop.agent.prompts import (
    DIRECT_ANSWER_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    build_planner_prompt,
    build_replan_context,
)
from planloop.agent.providers.base import CompletionOptions, ModelClient
from planloop.agent.state import ExecutionPlan, PlanStep, StepResult
from planloop.agent.tool_registry import ToolRegistry
from planloop.errors import ParseError, TransportError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlannerResult:
    plan: ExecutionPlan
    raw_text: str
    usage: Usage
    # set when the run should complete without executing anything
    direct_answer: str | None = None


class Planner:
    def __init__(
        self,
        client: ModelClient,
        registry: ToolRegistry,
        *,
        temperature: float = 0.0,
        max_tokens: int = 2048,
    ) -> None:
        self.client = client
        self.registry = registry
        self.options = CompletionOptions(temperature=temperature, max_tokens=max_tokens)

    async def plan(
        self,
        messages: Sequence[Message],
        *,
        prior_plan: ExecutionPlan | None = None,
        prior_results: Sequence[StepResult] = (),
        replan_reason: str = "",
    ) -> PlannerResult:
        goal = extract_goal(messages)
        catalog = self.registry.catalog()

        if not catalog:
            completion = await self._complete([Message.system(DIRECT_ANSWER_SYSTEM_PROMPT), *messages])
            return PlannerResult(
                plan=ExecutionPlan(goal=goal, reasoning="no tools available"),
                raw_text=completion.text,
                usage=completion.usage,
                direct_answer=completion.text,
            )

        request: list[Message] = [Message.system(PLANNER_SYSTEM_PROMPT), *messages]
        if prior_plan is not None:
            request.append(Message.user(build_replan_context(prior_plan, prior_results, replan_reason)))
        request.append(Message.user(build_planner_prompt(goal, catalog)))

        completion = await self._complete(request)
        raw = completion.text

        try:
            plan, answer = parse_plan(raw, goal)
        except ParseError as exc:
            logger.info("plan parse failed, answering directly: %s", exc.message)
            return PlannerResult(
                plan=ExecutionPlan(goal=goal, reasoning="unparseable plan"),
                raw_text=raw,
                usage=completion.usage,
                direct_answer=raw,
            )

        if not plan.steps:
            return PlannerResult(plan=plan, raw_text=raw, usage=completion.usage, direct_answer=answer or raw)
        return PlannerResult(plan=plan, raw_text=raw, usage=completion.usage)

    async def _complete(self, request: list[Message]) -> Completion:
        try:
            return await self.client.complete(request, self.options)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"planner model call failed: {exc}") from exc


def extract_goal(messages: Sequence[Message]) -> str:
    for message in reversed(messages):
        if message.role == "user" and message.content.strip():
            return message.content
    raise ValueError("no user message found in conversation")


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first well-formed JSON object embedded in ``text``."""
    decoder = json.JSONDecoder()
    position = text.find("{")
    while position != -1:
        try:
            value, _ = decoder.raw_decode(text, position)
        except json.JSONDecodeError:
            position = text.find("{", position + 1)
            continue
        if isinstance(value, dict):
            return value
        position = text.find("{", position + 1)
    raise ParseError("no JSON object found in planner output")


def parse_plan(text: str, goal: str) -> tuple[ExecutionPlan, str | None]:
    payload = extract_json_object(text)
    raw_steps = payload.get("steps", [])
    if not isinstance(raw_steps, list):
        raise ParseError("'steps' must be a list")

    steps = [_parse_step(index, item) for index, item in enumerate(raw_steps)]
    answer = payload.get("answer")
    plan = ExecutionPlan(
        goal=str(payload.get("goal") or goal),
        steps=tuple(steps),
        reasoning=str(payload.get("reasoning") or ""),
    )
    return plan, (str(answer).strip() or None) if answer else None


def _parse_step(index: int, item: Any) -> PlanStep:
    if not isinstance(item, dict):
        raise ParseError(f"step {index} is not an object")

    tool_name = item.get("tool_name") or item.get("tool")
    if not isinstance(tool_name, str) or not tool_name.strip():
        raise ParseError(f"step {index} has no tool_name")

    tool_args = item.get("tool_args", item.get("args", {})) or {}
    if not isinstance(tool_args, dict):
        raise ParseError(f"step {index} tool_args must be an object")

    raw_deps = item.get("depends_on") or []
    if not isinstance(raw_deps, list):
        raise ParseError(f"step {index} depends_on must be a list")
    depends_on: set[int] = set()
    for dep in raw_deps:
        if isinstance(dep, bool) or not isinstance(dep, int):
            raise ParseError(f"step {index} has a non-integer dependency: {dep!r}")
        if dep < 0 or dep >= index:
            raise ParseError(f"step {index} depends on {dep}, which is not an earlier step")
        depends_on.add(dep)

    return PlanStep(
        description=str(item.get("description") or ""),
        tool_name=tool_name.strip(),
        tool_args=tool_args,
        depends_on=frozenset(depends_on),
    )
