"""Loop state variants, plan types and the run trace."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from planloop.agent.messages import Message, Usage


@dataclass(frozen=True, slots=True)
class PlanStep:
    description: str
    tool_name: str
    tool_args: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[int] = frozenset()


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    goal: str
    steps: tuple[PlanStep, ...] = ()
    reasoning: str = ""

    def __post_init__(self) -> None:
        for index, step in enumerate(self.steps):
            for dep in step.depends_on:
                if dep < 0 or dep >= index:
                    raise ValueError(f"step {index} depends on {dep}; dependencies must point to earlier steps")


@dataclass(frozen=True, slots=True)
class StepResult:
    step_index: int
    success: bool
    content: str
    duration: float = 0.0

    @classmethod
    def skipped(cls, step_index: int) -> "StepResult":
        return cls(step_index, False, "skipped: dependency failed")

    @property
    def is_skip(self) -> bool:
        return not self.success and self.content == "skipped: dependency failed"


@dataclass(slots=True)
class TraceEvent:
    kind: str  # "transition" | "tool_call" | "model_call" | "note"
    data: dict[str, Any]
    ts: str = field(default_factory=lambda: datetime.now(tz=timezone.utc).isoformat())


@dataclass(slots=True)
class LoopTrace:
    trace_id: str
    events: list[TraceEvent] = field(default_factory=list)
    outcome: str | None = None
    started: float = field(default_factory=time.monotonic)
    duration: float = 0.0

    def record(self, kind: str, **data: Any) -> None:
        if self.outcome is not None:
            raise RuntimeError("trace is closed")
        self.events.append(TraceEvent(kind=kind, data=data))

    def record_transition(self, source: str, target: str, attempt: int, **data: Any) -> None:
        self.record("transition", source=source, target=target, attempt=attempt, **data)

    def close(self, outcome: str) -> None:
        self.duration = time.monotonic() - self.started
        self.outcome = outcome

    def of_kind(self, kind: str) -> list[TraceEvent]:
        return [event for event in self.events if event.kind == kind]

    def transitions(self) -> list[tuple[str, str]]:
        return [(e.data["source"], e.data["target"]) for e in self.of_kind("transition")]

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "outcome": self.outcome,
            "duration": self.duration,
            "events": [{"kind": e.kind, "ts": e.ts, **e.data} for e in self.events],
        }


# ─── State variants ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Planning:
    messages: tuple[Message, ...]
    attempt: int = 0
    # carried forward from the previous attempt when replanning
    prior_plan: ExecutionPlan | None = None
    prior_results: tuple[StepResult, ...] = ()
    replan_reason: str = ""


@dataclass(frozen=True, slots=True)
class Executing:
    plan: ExecutionPlan
    results: tuple[StepResult, ...] = ()
    attempt: int = 0
    messages: tuple[Message, ...] = ()


@dataclass(frozen=True, slots=True)
class Reflecting:
    plan: ExecutionPlan
    results: tuple[StepResult, ...]
    attempt: int = 0
    messages: tuple[Message, ...] = ()


@dataclass(frozen=True, slots=True)
class Complete:
    content: str
    trace: LoopTrace
    usage: Usage

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str
    trace: LoopTrace

    @property
    def ok(self) -> bool:
        return False


AgentState = Union[Planning, Executing, Reflecting, Complete, Failed]
RunOutcome = Union[Complete, Failed]

TERMINAL_STATES = (Complete, Failed)

ALLOWED_TRANSITIONS: dict[type, tuple[type, ...]] = {
    Planning: (Executing, Complete, Failed),
    Executing: (Reflecting, Failed),
    Reflecting: (Complete, Planning, Failed),
}


def state_name(state: AgentState | type) -> str:
    cls = state if isinstance(state, type) else type(state)
    return cls.__name__.lower()
