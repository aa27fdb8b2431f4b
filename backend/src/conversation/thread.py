"""Conversation thread: ordered message store plus the generation entry point."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence

from src.llm_stream.config import DEFAULT_MAX_TOOL_ROUNDS
from src.llm_stream.core import DEFAULT_REGISTRY, ProviderRegistry
from src.llm_stream.models import Message, ModelOptions
from src.llm_stream.providers import LLMProvider
from src.llm_stream.tools import BaseTool

from .generation import Generation


class MessageStore:
    """Ordered message history. Insertion order is the conversation order."""

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = list(messages or [])

    def list(self) -> list[Message]:
        """Copy of the current messages; mutating it does not touch the store."""
        return list(self._messages)

    def add(self, message: Message) -> None:
        self._messages.append(message)

    def remove(self, message: Message) -> None:
        """Remove ``message`` by identity; equal-looking messages are kept."""
        self._messages = [m for m in self._messages if m is not message]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.list())


class Thread:
    """
    A conversation bound to one provider, model, tool set and options.

    Only one generation may run on a thread at a time; concurrent
    ``generate()`` calls interleave their writes to the store.
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: str,
        *,
        messages: Iterable[Message] | None = None,
        tools: Sequence[BaseTool] | None = None,
        options: ModelOptions | None = None,
        api_key: str = "",
        max_tool_rounds: int | None = DEFAULT_MAX_TOOL_ROUNDS,
    ) -> None:
        self.provider = provider
        self.model = model
        self.messages = MessageStore(messages)
        self.tools = list(tools or [])
        self.options = options
        self.api_key = api_key
        self.max_tool_rounds = max_tool_rounds

    @classmethod
    def for_model(
        cls,
        model: str | None = None,
        *,
        registry: ProviderRegistry | None = None,
        **kwargs,
    ) -> Thread:
        """Build a thread from a 'provider:model' string."""
        registry = registry or DEFAULT_REGISTRY
        provider, model_name = registry.resolve(model)
        kwargs.setdefault("max_tool_rounds", registry.settings.max_tool_rounds)
        return cls(provider, model_name, **kwargs)

    def generate(self) -> Generation:
        """Start generating the next assistant turn. Requires a running event loop."""
        return Generation(self).start()


__all__ = ["MessageStore", "Thread"]
