from __future__ import annotations

import pytest

from planloop.agent.messages import Completion, Message
from planloop.agent.providers.base import CompletionOptions, ModelClient
from planloop.agent.tool_registry import ToolDef, ToolOutput, ToolRegistry
from planloop.errors import TransportError
from planloop.observability.metrics import get_runtime_metrics


class ScriptedClient(ModelClient):
    """Model client that replays a fixed list of replies and records every request."""

    def __init__(self, replies: list[str | Exception]) -> None:
        self._replies = list(replies)
        self.calls: list[tuple[list[Message], CompletionOptions]] = []

    async def complete(self, messages: list[Message], options: CompletionOptions) -> Completion:
        self.calls.append((list(messages), options))
        if not self._replies:
            raise AssertionError("ScriptedClient ran out of replies")
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return Completion.of(reply, input_tokens=10, output_tokens=5)


@pytest.fixture
def scripted_client():
    def _make(*replies: str | Exception) -> ScriptedClient:
        return ScriptedClient(list(replies))

    return _make


@pytest.fixture
def transport_error() -> TransportError:
    return TransportError("connection reset by peer")


@pytest.fixture(autouse=True)
def _reset_metrics():
    get_runtime_metrics().reset()
    yield


@pytest.fixture
def echo_registry() -> ToolRegistry:
    """A registry with a read-only echo tool and a tool that always fails."""

    async def echo(text: str = "") -> ToolOutput:
        return ToolOutput.ok(f"echo: {text}")

    def broken() -> str:
        raise RuntimeError("disk on fire")

    return ToolRegistry([
        ToolDef(
            name="echo",
            description="Echo the given text.",
            input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
            handler=echo,
        ),
        ToolDef(
            name="broken",
            description="Always fails.",
            input_schema={"type": "object"},
            handler=broken,
        ),
    ])
