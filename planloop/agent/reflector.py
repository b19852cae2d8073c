"""Reflection phase: one model call that decides between completing and replanning."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal, Sequence

from planloop.agent.messages import Message, Usage
from planloop.agent.prompts import (
    FINAL_MARKER,
    REFLECTOR_SYSTEM_PROMPT,
    REPLAN_MARKER,
    build_reflection_prompt,
    format_results,
)
from planloop.agent.providers.base import CompletionOptions, ModelClient
from planloop.agent.state import ExecutionPlan, StepResult
from planloop.errors import TransportError

logger = logging.getLogger(__name__)

_REPLAN_LINE = re.compile(rf"^[ \t]*{re.escape(REPLAN_MARKER)}", re.IGNORECASE | re.MULTILINE)
_FINAL_PREFIX = re.compile(rf"^\s*{re.escape(FINAL_MARKER)}", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ReflectionDecision:
    kind: Literal["complete", "replan"]
    content: str = ""
    reason: str = ""
    # False when the model gave neither marker and completion was assumed
    explicit: bool = True

    @classmethod
    def complete(cls, content: str, *, explicit: bool = True) -> "ReflectionDecision":
        return cls(kind="complete", content=content, explicit=explicit)

    @classmethod
    def replan(cls, reason: str) -> "ReflectionDecision":
        return cls(kind="replan", reason=reason)

    @property
    def is_replan(self) -> bool:
        return self.kind == "replan"


def parse_decision(text: str, results: Sequence[StepResult] = ()) -> ReflectionDecision:
    match = _REPLAN_LINE.search(text)
    if match:
        reason = text[match.end():].strip()
        return ReflectionDecision.replan(reason or "no reason given")

    final = _FINAL_PREFIX.match(text)
    if final:
        return ReflectionDecision.complete(text[final.end():].strip())

    stripped = text.strip()
    if not stripped:
        return ReflectionDecision.complete(format_results(results), explicit=False)
    return ReflectionDecision.complete(stripped, explicit=False)


class Reflector:
    def __init__(
        self,
        client: ModelClient,
        *,
        temperature: float = 0.5,
        max_tokens: int = 2048,
    ) -> None:
        self.client = client
        self.options = CompletionOptions(temperature=temperature, max_tokens=max_tokens)

    async def reflect(
        self,
        plan: ExecutionPlan,
        results: Sequence[StepResult],
        messages: Sequence[Message],
        *,
        attempt: int,
        max_replans: int,
    ) -> tuple[ReflectionDecision, Usage]:
        request = [
            Message.system(REFLECTOR_SYSTEM_PROMPT),
            *messages,
            Message.user(build_reflection_prompt(plan.goal, results, attempt, max_replans)),
        ]
        try:
            completion = await self.client.complete(request, self.options)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"reflector model call failed: {exc}") from exc

        decision = parse_decision(completion.text, results)
        if not decision.explicit:
            logger.warning(
                "reflector gave no decision marker; treating as complete",
                extra={"attempt": attempt, "outcome": "implicit_complete"},
            )
        return decision, completion.usage
