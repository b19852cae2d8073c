"""OpenAI Chat Completions client (also serves OpenAI-compatible vendors)."""
from __future__ import annotations

import httpx
import openai
from openai import AsyncOpenAI

from planloop.agent.messages import Completion, Message, Usage
from planloop.agent.providers.base import CompletionOptions, ModelClient, split_system
from planloop.errors import TransportError


class OpenAIProvider(ModelClient):
    def __init__(self, api_key: str, model: str, base_url: str | None = None, timeout: float = 120.0) -> None:
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model = model

    async def complete(self, messages: list[Message], options: CompletionOptions) -> Completion:
        payload: dict = {
            "model": self.model,
            "messages": _build_messages(messages),
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }

        try:
            response = await self.client.chat.completions.create(**payload)
        except (openai.APIError, httpx.HTTPError) as exc:
            raise TransportError(f"openai request failed: {exc}") from exc

        if not response.choices:
            raise TransportError("openai returned no choices", retryable=False)
        text = response.choices[0].message.content or ""

        usage = Usage()
        if response.usage:
            usage = Usage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return Completion(text=text, usage=usage)


def _build_messages(messages: list[Message]) -> list[dict]:
    """Convert internal Messages to OpenAI chat format."""
    system_prompt, rest = split_system(messages)
    result: list[dict] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})
    for msg in rest:
        role = msg.role if msg.role in {"user", "assistant"} else "user"
        result.append({"role": role, "content": msg.content})
    return result
