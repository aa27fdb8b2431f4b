from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Tuple

import httpx

from .config import DEFAULT_SETTINGS, LLMStreamSettings
from .models import Message, ModelOptions
from .providers import LLMProvider, OllamaProvider, OpenRouterProvider
from .tools import BaseTool

KNOWN_PROVIDERS = ("openrouter", "ollama")


def parse_model(model: str | None, default: str = DEFAULT_SETTINGS.default_model) -> Tuple[str, str]:
    """Split a 'provider:model' string into (provider, model).

    Ollama model names contain ':' themselves (``llama3.2:3b``), so a prefix
    that is not a known provider means the whole string is an Ollama model.
    """
    effective = (model or default).strip()
    prefix, sep, rest = effective.partition(":")
    if sep and prefix.strip().lower() in KNOWN_PROVIDERS and rest.strip():
        return prefix.strip().lower(), rest.strip()
    return "ollama", effective


class ProviderRegistry:
    """Resolves model strings to provider instances, one instance per backend."""

    def __init__(
        self,
        settings: LLMStreamSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self._client = client
        self._provider_cache: dict[str, LLMProvider] = {}

    def register(self, name: str, provider: LLMProvider) -> None:
        self._provider_cache[name.lower()] = provider

    def get(self, name: str) -> LLMProvider:
        name = name.lower()
        if name not in self._provider_cache:
            if name == "openrouter":
                self._provider_cache[name] = OpenRouterProvider(self.settings, client=self._client)
            elif name == "ollama":
                self._provider_cache[name] = OllamaProvider(self.settings, client=self._client)
            else:
                raise ValueError(f"Unknown provider: {name}")
        return self._provider_cache[name]

    def resolve(self, model: str | None) -> Tuple[LLMProvider, str]:
        """Resolve provider and underlying model name from a model string."""
        provider_name, model_name = parse_model(model, self.settings.default_model)
        return self.get(provider_name), model_name


DEFAULT_REGISTRY = ProviderRegistry()


async def chat(
    messages: Sequence[Message],
    *,
    model: str | None = None,
    tools: Sequence[BaseTool] | None = None,
    options: ModelOptions | None = None,
    api_key: str = "",
    registry: ProviderRegistry | None = None,
    **kwargs: Any,
) -> str:
    """Non-streaming chat helper: drain one generation and return its content."""
    provider, resolved_model = (registry or DEFAULT_REGISTRY).resolve(model)
    message = await provider.complete(
        resolved_model,
        messages,
        tools=tools,
        options=options,
        api_key=api_key,
        **kwargs,
    )
    return message.content
