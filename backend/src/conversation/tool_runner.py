"""Tool loop: execute requested tool calls and re-generate after each result."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from typing import TYPE_CHECKING

from src.llm_stream.config import DEFAULT_MAX_TOOL_ROUNDS
from src.llm_stream.exceptions import ToolExecutionError
from src.llm_stream.models import Message, ToolCall
from src.llm_stream.signals import CancelSignal
from src.llm_stream.tools import BaseTool, format_tool_result

if TYPE_CHECKING:
    from .thread import MessageStore

logger = logging.getLogger(__name__)

Regenerate = Callable[[], Awaitable["Message | None"]]


class ToolRunner:
    """
    Runs tool calls depth-first: every result is followed by a new model turn,
    and tool calls requested by that turn are handled before the remaining
    calls of the earlier batch.

    ``max_rounds`` bounds the number of follow-up generations; None removes
    the bound.
    """

    def __init__(
        self,
        tools: Sequence[BaseTool],
        *,
        max_rounds: int | None = DEFAULT_MAX_TOOL_ROUNDS,
        signal: CancelSignal | None = None,
    ) -> None:
        self._tools = {t.name: t for t in tools}
        self.max_rounds = max_rounds
        self.signal = signal
        self.rounds = 0

    async def run(self, message: Message, store: MessageStore, regenerate: Regenerate) -> None:
        batches: list[Iterator[ToolCall]] = [iter(list(message.tool_calls or []))]
        while batches:
            if self.signal is not None and self.signal.cancelled:
                return
            call = next(batches[-1], None)
            if call is None:
                batches.pop()
                continue

            tool = self._tools.get(call.function.name)
            if tool is None:
                logger.debug("Skipping call to unregistered tool %r", call.function.name)
                continue

            try:
                content = await self.invoke(tool, call)
            except (Exception, asyncio.CancelledError) as exc:
                if self.signal is not None and self.signal.owns(exc):
                    logger.debug("Tool loop cancelled during %s", tool.name)
                    return
                raise
            store.add(Message(role="tool", tool_call_id=call.id, content=content))

            if self.max_rounds is not None and self.rounds >= self.max_rounds:
                logger.warning(
                    "Tool loop stopped after %d follow-up generations", self.rounds
                )
                return
            self.rounds += 1
            follow_up = await regenerate()
            if follow_up is not None and follow_up.tool_calls:
                batches.append(iter(list(follow_up.tool_calls)))

    async def invoke(self, tool: BaseTool, call: ToolCall) -> str:
        """Execute one call; failures come back as an ``Error:`` result."""
        arguments = call.function.arguments
        try:
            params = json.loads(arguments) if arguments.strip() else {}
        except ValueError as exc:
            return f"Error: {ToolExecutionError(tool.name, f'Invalid arguments: {exc}')}"
        try:
            result = await tool.execute(params)
        except Exception as exc:
            if self.signal is not None and self.signal.owns(exc):
                raise
            logger.exception("Tool %s failed", tool.name)
            return f"Error: {ToolExecutionError(tool.name, str(exc))}"
        return format_tool_result(result)


__all__ = ["ToolRunner"]
