"""Model client contract: ``complete(messages, options) -> Completion``."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from planloop.agent.messages import Completion, Message


@dataclass(slots=True)
class CompletionOptions:
    temperature: float = 0.0
    max_tokens: int = 2048


class ModelClient(ABC):
    @abstractmethod
    async def complete(self, messages: list[Message], options: CompletionOptions) -> Completion: ...


def split_system(messages: list[Message]) -> tuple[str, list[Message]]:
    """Pull system messages out of a conversation, joined in order."""
    system_parts = [m.content for m in messages if m.role == "system" and m.content]
    rest = [m for m in messages if m.role != "system"]
    return "\n\n".join(system_parts), rest
