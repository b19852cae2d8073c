"""Conversation and completion types shared by the planner, reflector and model clients."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class Message:
    role: str  # "system" | "user" | "assistant"
    content: str = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role="assistant", content=content)


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def as_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class Completion:
    text: str
    usage: Usage

    @classmethod
    def of(cls, text: str, input_tokens: int = 0, output_tokens: int = 0) -> "Completion":
        return cls(text=text, usage=Usage(input_tokens, output_tokens))
