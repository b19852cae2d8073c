"""Anthropic Messages API client."""
from __future__ import annotations

import anthropic
import httpx
from anthropic import AsyncAnthropic

from planloop.agent.messages import Completion, Message, Usage
from planloop.agent.providers.base import CompletionOptions, ModelClient, split_system
from planloop.errors import TransportError


class AnthropicProvider(ModelClient):
    def __init__(self, api_key: str, model: str, timeout: float = 120.0) -> None:
        self.client = AsyncAnthropic(api_key=api_key, timeout=timeout)
        self.model = model

    async def complete(self, messages: list[Message], options: CompletionOptions) -> Completion:
        system_prompt, rest = split_system(messages)
        payload: dict = {
            "model": self.model,
            "max_tokens": options.max_tokens,
            "messages": _build_messages(rest),
            "temperature": options.temperature,
        }
        if system_prompt:
            payload["system"] = system_prompt

        try:
            response = await self.client.messages.create(**payload)
        except (anthropic.APIError, httpx.HTTPError) as exc:
            raise TransportError(f"anthropic request failed: {exc}") from exc

        text_parts = [block.text for block in response.content if block.type == "text"]
        return Completion(
            text="\n".join(text_parts),
            usage=Usage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
        )


def _build_messages(messages: list[Message]) -> list[dict]:
    """Convert internal Messages to Anthropic format, merging consecutive same-role turns."""
    result: list[dict] = []
    for msg in messages:
        role = "assistant" if msg.role == "assistant" else "user"
        if result and result[-1]["role"] == role:
            result[-1]["content"] += "\n\n" + msg.content
            continue
        result.append({"role": role, "content": msg.content})
    if result and result[0]["role"] != "user":
        result.insert(0, {"role": "user", "content": "(conversation start)"})
    return result
