import asyncio
import json

import httpx
import pytest

from planloop.agent.events import FunctionCallback
from planloop.agent.messages import Message
from planloop.agent.orchestrator import Orchestrator
from planloop.agent.state import Complete, ExecutionPlan, Failed, LoopTrace, PlanStep, Reflecting, StepResult
from planloop.agent.tool_registry import ToolDef, ToolOutput, ToolRegistry
from planloop.config import RunConfig
from planloop.errors import TransportError
from planloop.observability.metrics import get_runtime_metrics
from planloop.security.permission_gate import PermissionGate, SessionContext, StaticSessionProvider
from planloop.trace import get_current_trace_id, reset_current_trace_id, set_current_trace_id


def plan_reply(*steps: dict) -> str:
    return json.dumps({"goal": "g", "reasoning": "r", "steps": list(steps)})


def step(tool: str, depends_on=(), **args) -> dict:
    return {"description": f"call {tool}", "tool_name": tool, "tool_args": args, "depends_on": list(depends_on)}


class Workspace:
    """Tool set for loop tests: records invocations and how many ran at once."""

    def __init__(self) -> None:
        self.invocations: list[tuple[str, dict]] = []
        self.active = 0
        self.peak = 0

    def registry(self) -> ToolRegistry:
        async def list_files(path: str = ".") -> ToolOutput:
            self.invocations.append(("list_files", {"path": path}))
            return ToolOutput.ok("a.py\nb.py")

        async def summarize(text: str) -> ToolOutput:
            self.invocations.append(("summarize", {"text": text}))
            return ToolOutput.ok(f"summary of {text!r}")

        async def system_command(command: str, args: list[str] | None = None) -> ToolOutput:
            self.invocations.append(("system_command", {"command": command, "args": args}))
            return ToolOutput.ok("ran")

        async def slow(label: str, delay: float) -> ToolOutput:
            self.active += 1
            self.peak = max(self.peak, self.active)
            await asyncio.sleep(delay)
            self.active -= 1
            return ToolOutput.ok(label)

        async def hang() -> ToolOutput:
            await asyncio.sleep(10)
            return ToolOutput.ok("never")

        return ToolRegistry([
            ToolDef(name="list_files", description="List files.", input_schema={}, handler=list_files),
            ToolDef(name="summarize", description="Summarize text.", input_schema={}, handler=summarize),
            ToolDef(name="system_command", description="Run a command.", input_schema={}, handler=system_command,
                    capabilities=frozenset({"execute"}), privileged=True),
            ToolDef(name="slow", description="Sleep then echo.", input_schema={}, handler=slow),
            ToolDef(name="hang", description="Never finishes.", input_schema={}, handler=hang),
        ])


class EventLog:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, kind: str, payload: dict) -> None:
        self.events.append((kind, payload))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


@pytest.fixture
def workspace() -> Workspace:
    return Workspace()


@pytest.fixture
def events() -> EventLog:
    return EventLog()


def make_orchestrator(client, workspace, events=None, **config) -> Orchestrator:
    return Orchestrator(
        client=client,
        registry=workspace.registry(),
        callback=FunctionCallback(events) if events is not None else None,
        session_provider=StaticSessionProvider(SessionContext.dm()),
        config=RunConfig(**config),
    )


def reflection_prompt(client, call_index: int) -> str:
    return client.calls[call_index][0][-1].content


@pytest.mark.asyncio
async def test_dependent_step_receives_prior_output(scripted_client, workspace, events):
    client = scripted_client(
        plan_reply(step("list_files", path="."), step("summarize", [0], text="{{steps.0.content}}")),
        "FINAL: two python files",
    )
    outcome = await make_orchestrator(client, workspace, events).run([Message.user("what is in the repo?")])

    assert isinstance(outcome, Complete)
    assert outcome.content == "two python files"
    assert workspace.invocations == [("list_files", {"path": "."}), ("summarize", {"text": "a.py\nb.py"})]
    prompt = reflection_prompt(client, 1)
    assert prompt.index("Step 0: SUCCESS") < prompt.index("Step 1: SUCCESS")
    assert "Step 2" not in prompt


@pytest.mark.asyncio
async def test_denylisted_command_rejected_before_dispatch(scripted_client, workspace):
    client = scripted_client(
        plan_reply(step("system_command", command="rm", args=["-rf", "/"])),
        "FINAL: refused to delete everything",
    )
    outcome = await make_orchestrator(client, workspace).run([Message.user("clean the disk")])

    assert isinstance(outcome, Complete)
    assert workspace.invocations == []
    assert "Step 0: FAILED - denylisted command: rm" in reflection_prompt(client, 1)
    completed = [e for e in outcome.trace.of_kind("tool_call") if e.data["status"] == "failed"]
    assert completed[0].data["content"] == "denylisted command: rm"


@pytest.mark.asyncio
async def test_malformed_plan_completes_with_raw_text(scripted_client, workspace, events):
    client = scripted_client("I think you should just look at the README.")
    outcome = await make_orchestrator(client, workspace, events).run([Message.user("help")])

    assert isinstance(outcome, Complete)
    assert outcome.content == "I think you should just look at the README."
    assert len(client.calls) == 1
    assert workspace.invocations == []
    assert outcome.trace.transitions() == [("start", "planning"), ("planning", "complete")]
    assert events.kinds() == ["plan_created", "completed"]


@pytest.mark.asyncio
async def test_zero_step_plan_completes_without_reflection(scripted_client, workspace):
    client = scripted_client(json.dumps({"goal": "greet", "steps": [], "answer": "Hello!"}))
    outcome = await make_orchestrator(client, workspace).run([Message.user("hi")])
    assert isinstance(outcome, Complete)
    assert outcome.content == "Hello!"
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_replan_carries_prior_results(scripted_client, workspace, events):
    client = scripted_client(
        plan_reply(step("list_files")),
        "REPLAN: need more detail",
        plan_reply(step("summarize", text="details")),
        "FINAL: detailed answer",
    )
    outcome = await make_orchestrator(client, workspace, events).run([Message.user("describe the repo")])

    assert isinstance(outcome, Complete)
    assert outcome.content == "detailed answer"
    replan_request = client.calls[2][0]
    context = replan_request[-2].content
    assert "Reviewer feedback: need more detail" in context
    assert "Step 0: SUCCESS - a.py\nb.py" in context
    replanning = [payload for kind, payload in events.events if kind == "replanning"]
    assert replanning[0]["attempt"] == 1
    assert replanning[0]["reason"] == "need more detail"
    assert get_runtime_metrics().replans_total == 1


@pytest.mark.asyncio
async def test_replan_budget_exhausted(scripted_client, workspace, events):
    replies = []
    for _ in range(4):
        replies += [plan_reply(step("list_files")), "REPLAN: need more detail"]
    client = scripted_client(*replies)
    outcome = await make_orchestrator(client, workspace, events, max_replans=3).run([Message.user("go")])

    assert isinstance(outcome, Failed)
    assert outcome.reason == "replan_budget_exhausted"
    assert len(client.calls) == 8
    assert [kind for kind in events.kinds() if kind == "replanning"] == ["replanning"] * 3
    assert events.kinds()[-1] == "failed"
    assert "no further replanning is available" in reflection_prompt(client, 7)
    assert get_runtime_metrics().runs_failed_total == 1


@pytest.mark.asyncio
async def test_zero_replan_budget_fails_on_first_replan(scripted_client, workspace):
    client = scripted_client(plan_reply(step("list_files")), "REPLAN: more")
    outcome = await make_orchestrator(client, workspace, max_replans=0).run([Message.user("go")])
    assert isinstance(outcome, Failed)
    assert outcome.reason == "replan_budget_exhausted"
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_reflection_preempted_when_budget_already_spent(scripted_client, workspace):
    client = scripted_client()
    orchestrator = make_orchestrator(client, workspace, max_replans=1)
    run = orchestrator._new_run(orchestrator.config, SessionContext.dm(), LoopTrace(trace_id="t"))
    plan = ExecutionPlan(goal="g", steps=(PlanStep("list", "list_files"),))
    state = Reflecting(plan=plan, results=(StepResult(0, True, "ok"),), attempt=2)

    outcome = await orchestrator._reflect(run, state)

    assert isinstance(outcome, Failed)
    assert outcome.reason == "replan_budget_exhausted"
    assert client.calls == []


@pytest.mark.asyncio
async def test_independent_steps_run_concurrently_and_results_stay_ordered(scripted_client, workspace):
    client = scripted_client(
        plan_reply(step("slow", label="first", delay=0.08), step("slow", label="second", delay=0.01)),
        "FINAL: both done",
    )
    outcome = await make_orchestrator(client, workspace, worker_pool_size=4).run([Message.user("go")])

    assert isinstance(outcome, Complete)
    assert workspace.peak == 2
    prompt = reflection_prompt(client, 1)
    assert prompt.index("Step 0: SUCCESS - first") < prompt.index("Step 1: SUCCESS - second")
    finished = [e.data["step_index"] for e in outcome.trace.of_kind("tool_call") if e.data["status"] == "succeeded"]
    assert finished == [1, 0]


@pytest.mark.asyncio
async def test_planner_transport_failure_fails_run(scripted_client, workspace, transport_error):
    outcome = await make_orchestrator(scripted_client(transport_error), workspace).run([Message.user("go")])
    assert isinstance(outcome, Failed)
    assert outcome.reason == "planner_failed: connection reset by peer"


@pytest.mark.asyncio
async def test_reflector_transport_failure_fails_run(scripted_client, workspace, transport_error):
    client = scripted_client(plan_reply(step("list_files")), transport_error)
    outcome = await make_orchestrator(client, workspace).run([Message.user("go")])
    assert isinstance(outcome, Failed)
    assert outcome.reason == "reflector_failed: connection reset by peer"
    assert outcome.trace.transitions()[-1] == ("reflecting", "failed")


@pytest.mark.asyncio
async def test_run_timeout(scripted_client, workspace, events):
    client = scripted_client(plan_reply(step("hang")))
    outcome = await make_orchestrator(client, workspace, events, run_timeout=0.1).run([Message.user("go")])
    assert isinstance(outcome, Failed)
    assert outcome.reason == "run_timeout"
    assert outcome.trace.outcome == "failed"
    notes = outcome.trace.of_kind("note")
    assert notes[-1].data["error"]["code"] == "E_TIMEOUT"
    assert events.kinds()[-1] == "failed"


@pytest.mark.asyncio
async def test_cancel_event_aborts_run(scripted_client, workspace):
    client = scripted_client(plan_reply(step("hang")))
    cancel = asyncio.Event()
    orchestrator = make_orchestrator(client, workspace)

    task = asyncio.create_task(orchestrator.run([Message.user("go")], cancel_event=cancel))
    await asyncio.sleep(0.05)
    cancel.set()
    outcome = await asyncio.wait_for(task, timeout=2)

    assert isinstance(outcome, Failed)
    assert outcome.reason == "cancelled"
    assert outcome.trace.transitions()[-1] == ("executing", "failed")


@pytest.mark.asyncio
async def test_event_order_for_successful_run(scripted_client, workspace, events):
    client = scripted_client(plan_reply(step("list_files")), "FINAL: done")
    await make_orchestrator(client, workspace, events).run([Message.user("go")])
    assert events.kinds() == ["plan_created", "step_started", "step_completed", "completed"]
    completed = events.events[-1][1]
    assert completed["content"] == "done"
    assert completed["explicit"] is True
    assert completed["usage"] == {"input_tokens": 20, "output_tokens": 10, "total_tokens": 30}


@pytest.mark.asyncio
async def test_implicit_completion_is_reported(scripted_client, workspace, events):
    client = scripted_client(plan_reply(step("list_files")), "The repo has two files.")
    outcome = await make_orchestrator(client, workspace, events).run([Message.user("go")])
    assert isinstance(outcome, Complete)
    assert outcome.content == "The repo has two files."
    assert events.events[-1][1]["explicit"] is False
    reflection = [e for e in outcome.trace.of_kind("model_call") if e.data["phase"] == "reflecting"]
    assert reflection[0].data["explicit"] is False


@pytest.mark.asyncio
async def test_trace_and_usage_for_successful_run(scripted_client, workspace):
    client = scripted_client(plan_reply(step("list_files")), "FINAL: done")
    outcome = await make_orchestrator(client, workspace).run([Message.user("go")])

    assert outcome.usage.total_tokens == 30
    assert outcome.trace.outcome == "completed"
    assert outcome.trace.transitions() == [
        ("start", "planning"),
        ("planning", "executing"),
        ("executing", "reflecting"),
        ("reflecting", "complete"),
    ]
    assert len(outcome.trace.of_kind("model_call")) == 2
    exported = outcome.trace.to_dict()
    assert exported["outcome"] == "completed"
    first = exported["events"][0]
    assert (first["kind"], first["source"], first["target"]) == ("transition", "start", "planning")
    metrics = get_runtime_metrics().snapshot()
    assert metrics["runs_total"] == 1
    assert metrics["runs_completed_total"] == 1
    assert metrics["tool_calls_total"] == {"list_files": 1}


@pytest.mark.asyncio
async def test_group_session_denies_command_tool(scripted_client, workspace):
    client = scripted_client(
        plan_reply(step("system_command", command="touch", args=["x"])),
        "FINAL: could not write",
    )
    outcome = await make_orchestrator(client, workspace).run([Message.user("go")], SessionContext.group())
    assert isinstance(outcome, Complete)
    assert workspace.invocations == []
    assert "Step 0: FAILED - permission denied:" in reflection_prompt(client, 1)


@pytest.mark.asyncio
async def test_failing_callback_does_not_affect_run(scripted_client, workspace):
    def explode(kind, payload):
        raise RuntimeError("observer down")

    orchestrator = Orchestrator(
        client=scripted_client(plan_reply(step("list_files")), "FINAL: done"),
        registry=workspace.registry(),
        callback=FunctionCallback(explode),
        session_provider=StaticSessionProvider(SessionContext.dm()),
    )
    outcome = await orchestrator.run([Message.user("go")])
    assert isinstance(outcome, Complete)


@pytest.mark.asyncio
async def test_run_requires_user_message(scripted_client, workspace):
    with pytest.raises(ValueError):
        await make_orchestrator(scripted_client(), workspace).run([Message.system("nothing to do")])


@pytest.mark.asyncio
async def test_run_requires_session_source(scripted_client, workspace):
    orchestrator = Orchestrator(client=scripted_client(), registry=workspace.registry())
    with pytest.raises(ValueError, match="session"):
        await orchestrator.run([Message.user("go")])


def test_constructor_freezes_registry(scripted_client, workspace):
    registry = workspace.registry()
    Orchestrator(client=scripted_client(), registry=registry)
    assert registry.frozen


@pytest.mark.asyncio
async def test_cancel_event_skips_unstarted_steps(scripted_client, workspace, events):
    client = scripted_client(plan_reply(step("hang"), step("hang")))
    cancel = asyncio.Event()
    orchestrator = make_orchestrator(client, workspace, events, worker_pool_size=1)

    task = asyncio.create_task(orchestrator.run([Message.user("go")], cancel_event=cancel))
    await asyncio.sleep(0.05)
    cancel.set()
    outcome = await asyncio.wait_for(task, timeout=2)

    assert outcome.reason == "cancelled"
    started = [payload["step_index"] for kind, payload in events.events if kind == "step_started"]
    assert started == [0]
    assert "step_completed" not in events.kinds()


@pytest.mark.asyncio
@pytest.mark.parametrize("raised,code,cause", [
    (httpx.ReadTimeout("read timed out"), "E_TRANSPORT", "network_timeout"),
    (asyncio.TimeoutError(), "E_TIMEOUT", "timeout"),
    (ValueError("bad payload"), "E_VALIDATION", "ValueError"),
])
async def test_model_failure_records_underlying_exception(scripted_client, workspace, raised, code, cause):
    outcome = await make_orchestrator(scripted_client(raised), workspace).run([Message.user("go")])

    assert isinstance(outcome, Failed)
    assert outcome.reason.startswith("planner_failed: ")
    note = outcome.trace.of_kind("note")[-1].data
    assert note["error"]["code"] == "E_TRANSPORT"
    assert note["cause"]["code"] == code
    assert note["cause"]["cause"] == cause


@pytest.mark.asyncio
async def test_provider_status_error_recorded_as_cause(scripted_client, workspace):
    request = httpx.Request("POST", "https://api.example.com/v1/chat/completions")
    response = httpx.Response(503, request=request)
    status_error = httpx.HTTPStatusError("unavailable", request=request, response=response)
    unavailable = TransportError("provider unavailable")
    unavailable.__cause__ = status_error
    client = scripted_client(plan_reply(step("list_files")), unavailable)

    outcome = await make_orchestrator(client, workspace).run([Message.user("go")])

    note = outcome.trace.of_kind("note")[-1].data
    assert outcome.reason == "reflector_failed: provider unavailable"
    assert note["cause"]["details"] == {"status": 503}
    assert note["cause"]["retryable"] is True


class ExplodingGate(PermissionGate):
    def authorize(self, tool, args, session):
        raise KeyError("session registry")


@pytest.mark.asyncio
async def test_unexpected_error_is_logged_with_payload_and_raised(scripted_client, workspace, caplog):
    caplog.set_level("ERROR", logger="planloop.agent.orchestrator")
    orchestrator = Orchestrator(
        client=scripted_client(plan_reply(step("list_files"))),
        registry=workspace.registry(),
        gate=ExplodingGate(),
        session_provider=StaticSessionProvider(SessionContext.dm()),
    )
    with pytest.raises(KeyError):
        await orchestrator.run([Message.user("go")])

    crash = [record for record in caplog.records if record.getMessage() == "run aborted by KeyError"]
    assert crash[0].reason == "E_VALIDATION"
    assert crash[0].outcome == "crashed"


@pytest.mark.asyncio
async def test_trace_id_does_not_leak_into_caller(scripted_client, workspace):
    token = set_current_trace_id("caller-trace")
    try:
        outcome = await make_orchestrator(scripted_client("plain answer"), workspace).run([Message.user("go")])
        assert outcome.trace.trace_id != "caller-trace"
        assert get_current_trace_id() == "caller-trace"
    finally:
        reset_current_trace_id(token)
