"""Abstract LLM provider interface shared by the stream parsers."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any

import httpx

from ..exceptions import TransportError
from ..models import Message, ModelOptions
from ..signals import CancelSignal
from ..tools import BaseTool

# Prefix marking a yielded fragment as reasoning text rather than content.
REASONING_MARKER = "__REASONING__"

StreamUpdate = tuple[str, Message]
AcceptedCallback = Callable[[], None]


def dump_arguments(args: Any) -> str:
    """Encode tool arguments as compact JSON; strings that already hold JSON are kept."""
    if isinstance(args, str):
        try:
            json.loads(args)
        except ValueError:
            return json.dumps(args, separators=(",", ":"), ensure_ascii=False)
        return args
    return json.dumps({} if args is None else args, separators=(",", ":"), ensure_ascii=False)


class LLMProvider(ABC):
    """
    Abstract LLM provider. Implement this to plug in any backend.

    The conversation runtime only depends on this interface.
    """

    name: str = "provider"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = 300.0,
    ) -> None:
        self._client = client
        self._timeout = timeout

    @abstractmethod
    def generate_message(
        self,
        model: str,
        messages: Sequence[Message],
        *,
        tools: Sequence[BaseTool] | None = None,
        options: ModelOptions | None = None,
        api_key: str = "",
        signal: CancelSignal | None = None,
        on_accepted: AcceptedCallback | None = None,
    ) -> AsyncIterator[StreamUpdate]:
        """
        Stream the next assistant message.

        Yields (fragment, message) pairs where message is a snapshot of the
        cumulative assistant message. Reasoning fragments carry REASONING_MARKER.
        on_accepted is called once the backend accepted the request.
        """
        ...

    async def complete(
        self,
        model: str,
        messages: Sequence[Message],
        **kwargs: Any,
    ) -> Message:
        """Non-streaming convenience: drain the stream and return the final message."""
        final = Message(role="assistant")
        async for _fragment, message in self.generate_message(model, messages, **kwargs):
            final = message
        return final

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    async def _check_response(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        await response.aread()
        raise TransportError(
            f"{self.name} API error: {response.status_code} {response.text}",
            status_code=response.status_code,
        )


__all__ = [
    "AcceptedCallback",
    "LLMProvider",
    "REASONING_MARKER",
    "StreamUpdate",
    "dump_arguments",
]
