from __future__ import annotations

import json
from typing import Sequence

from planloop.agent.state import ExecutionPlan, StepResult

REPLAN_MARKER = "REPLAN:"
FINAL_MARKER = "FINAL:"

PLANNER_SYSTEM_PROMPT = (
    "You are the planning stage of a tool-using assistant. "
    "Decide which tools, if any, are needed to satisfy the user's latest request, "
    "and return the plan as a single JSON object."
)

DIRECT_ANSWER_SYSTEM_PROMPT = (
    "You are a helpful assistant. No tools are available, so answer the user's request directly."
)

REFLECTOR_SYSTEM_PROMPT = (
    "You are the review stage of a tool-using assistant. "
    "Judge whether the executed steps achieved the user's goal and either give the final answer "
    "or ask for a new plan."
)

_PLAN_FORMAT = """Respond with JSON only, using this shape:
{
  "goal": "<restated goal>",
  "reasoning": "<why these steps>",
  "steps": [
    {"description": "<what this step does>", "tool_name": "<tool>", "tool_args": {...}, "depends_on": []}
  ],
  "answer": "<final answer when no steps are needed>"
}
Rules:
- Use only the tools listed above.
- "depends_on" lists indices of EARLIER steps (0-based) whose output this step needs.
- To pass an earlier step's output into an argument, write {{steps.N.content}} inside the string,
  where N is one of this step's depends_on indices.
- Steps without dependencies on each other may run in parallel.
- If no tool is needed, return an empty "steps" list and put the reply in "answer"."""


def build_planner_prompt(goal: str, catalog: Sequence[tuple[str, str]]) -> str:
    tool_lines = "\n".join(f"- {name}: {description}" for name, description in catalog)
    return (
        "User goal:\n"
        f"{goal}\n\n"
        "Available tools:\n"
        f"{tool_lines}\n\n"
        f"{_PLAN_FORMAT}"
    )


def build_replan_context(plan: ExecutionPlan, results: Sequence[StepResult], reason: str) -> str:
    steps = [
        {
            "index": index,
            "tool_name": step.tool_name,
            "tool_args": step.tool_args,
            "depends_on": sorted(step.depends_on),
        }
        for index, step in enumerate(plan.steps)
    ]
    return (
        "A previous plan was executed but the goal is not yet met.\n"
        f"Reviewer feedback: {reason or 'none given'}\n\n"
        "Previous plan:\n"
        f"{json.dumps(steps, ensure_ascii=False, default=str)}\n\n"
        f"{format_results(results)}\n\n"
        "Produce a new plan that builds on what worked and avoids what failed."
    )


def format_results(results: Sequence[StepResult]) -> str:
    if not results:
        return "No steps were executed."

    lines = ["Execution Results:"]
    for result in results:
        status = "SUCCESS" if result.success else "FAILED"
        lines.append(f"Step {result.step_index}: {status} - {result.content or 'No output'}")
    return "\n".join(lines)


def build_reflection_prompt(goal: str, results: Sequence[StepResult], attempt: int, max_replans: int) -> str:
    remaining = max(max_replans - attempt, 0)
    if remaining == 0:
        budget_line = (
            "This was the final attempt: no further replanning is available. "
            "Give the best final answer you can from these results."
        )
    else:
        budget_line = f"Replanning attempts remaining: {remaining}."
    return (
        "User goal:\n"
        f"{goal}\n\n"
        f"{format_results(results)}\n\n"
        f"{budget_line}\n\n"
        f"If the goal is achieved, reply with '{FINAL_MARKER}' followed by the final answer for the user.\n"
        f"If more work is needed, reply with '{REPLAN_MARKER}' followed by what is missing."
    )
