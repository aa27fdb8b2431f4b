"""Scripted provider shared by the conversation and router tests."""
from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

from src.llm_stream import FunctionCall, LLMProvider, Message, ToolCall
from src.llm_stream.providers import REASONING_MARKER


@dataclass
class Turn:
    """One scripted assistant turn."""

    fragments: list[str] = field(default_factory=list)
    tool_calls: list[tuple[str, str]] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    error: Exception | None = None
    error_before_accept: bool = False
    block_after: int | None = None


class ScriptedProvider(LLMProvider):
    name = "scripted"

    def __init__(self, turns: Sequence[Turn]) -> None:
        super().__init__()
        self.turns = list(turns)
        self.requests: list[list[Message]] = []

    async def generate_message(
        self,
        model,
        messages,
        *,
        tools=None,
        options=None,
        api_key="",
        signal=None,
        on_accepted=None,
    ):
        if signal is not None:
            signal.raise_if_cancelled()
        self.requests.append(list(messages))
        turn = self.turns.pop(0) if self.turns else Turn(fragments=["(no more turns)"])
        if turn.error is not None and turn.error_before_accept:
            raise turn.error
        if on_accepted is not None:
            on_accepted()

        message = Message(role="assistant", content="")
        for piece in turn.reasoning:
            message.reasoning = (message.reasoning or "") + piece
            yield REASONING_MARKER + piece, message.snapshot()
        for index, fragment in enumerate(turn.fragments):
            if turn.block_after is not None and index == turn.block_after:
                await asyncio.Event().wait()
            await asyncio.sleep(0)
            if signal is not None:
                signal.raise_if_cancelled()
            message.content += fragment
            yield fragment, message.snapshot()
        if turn.error is not None:
            raise turn.error
        if turn.tool_calls:
            message.tool_calls = [
                ToolCall(id=f"call_{i}", function=FunctionCall(name=name, arguments=arguments))
                for i, (name, arguments) in enumerate(turn.tool_calls)
            ]
            yield "", message.snapshot()
