from __future__ import annotations

from planloop.agent.providers.anthropic_provider import AnthropicProvider
from planloop.agent.providers.base import ModelClient
from planloop.agent.providers.openai_provider import OpenAIProvider

OPENAI_COMPATIBLE_PROVIDERS = {
    "openai",
    "openrouter",
    "deepseek",
    "qwen",
    "zhipu",
    "local",
    "custom",
}


def build_model_client(provider: str, api_key: str, model: str, base_url: str | None = None) -> ModelClient:
    if provider in OPENAI_COMPATIBLE_PROVIDERS:
        return OpenAIProvider(api_key=api_key, model=model, base_url=base_url)
    if provider == "anthropic":
        return AnthropicProvider(api_key=api_key, model=model)
    raise ValueError(f"Unsupported provider: {provider}")
