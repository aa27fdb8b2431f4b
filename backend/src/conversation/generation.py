"""Generation controller: runs one assistant turn and its tool loop as a task.

Progress is published on two equivalent surfaces, ``on()`` callbacks and the
``events()`` async iterator. Completion is a separate channel: ``wait()``
returns the last assistant message or re-raises the failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.llm_stream.models import Message
from src.llm_stream.providers import REASONING_MARKER
from src.llm_stream.signals import CancelSignal

from .tool_runner import ToolRunner

if TYPE_CHECKING:
    from .thread import Thread

logger = logging.getLogger(__name__)


class GenerationState(str, Enum):
    SENT = "sent"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    FAILED = "failed"


EVENT_TYPES = ("state", "data", "reasoning", "error", "end")
TERMINAL_EVENTS = ("end", "error")


@dataclass(frozen=True)
class GenerationEvent:
    """One progress event; ``payload`` depends on ``type``.

    state -> GenerationState, data/reasoning -> (fragment, message),
    error -> the exception, end -> None.
    """

    type: str
    payload: Any = None


Listener = Callable[..., Any]


class Generation:
    """A single running generation on a Thread."""

    def __init__(self, thread: Thread) -> None:
        self.thread = thread
        self.signal = CancelSignal()
        self.state: GenerationState | None = None
        self.message: Message | None = None
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._queue: asyncio.Queue[GenerationEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._current: Message | None = None

    def start(self) -> Generation:
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        self._task.add_done_callback(_retrieve_exception)
        self.signal.bind(self._task)
        return self

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event; returns a function that unsubscribes.

        data/reasoning listeners receive ``(fragment, message)``, state and
        error listeners one argument, end listeners none.
        """
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown generation event: {event}")
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    async def events(self) -> AsyncIterator[GenerationEvent]:
        """Every event of this generation, ending after ``end`` or ``error``."""
        while True:
            event = await self._queue.get()
            yield event
            if event.type in TERMINAL_EVENTS:
                return

    async def wait(self) -> Message | None:
        """Wait for completion; returns the last assistant message, re-raises failures."""
        if self._task is None:
            raise RuntimeError("generation was not started")
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        """Stop the generation; the partial message is kept and it ends as completed."""
        self.signal.cancel()

    # ------------------------------------------------------------------

    def _emit(self, event: str, payload: Any = None) -> None:
        self._queue.put_nowait(GenerationEvent(event, payload))
        if payload is None:
            args: tuple = ()
        elif isinstance(payload, tuple):
            args = payload
        else:
            args = (payload,)
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener for %r event raised", event)

    def _set_state(self, state: GenerationState) -> None:
        self.state = state
        self._emit("state", state)

    def _accepted(self) -> None:
        if self.state is GenerationState.SENT:
            self._set_state(GenerationState.RECEIVING)

    def _persist(self, message: Message) -> None:
        self.thread.messages.add(message)
        self.message = message

    async def _run(self) -> Message | None:
        thread = self.thread
        self._set_state(GenerationState.SENT)
        try:
            message = await self._generate_turn()
            if message is not None and message.tool_calls:
                runner = ToolRunner(
                    thread.tools,
                    max_rounds=thread.max_tool_rounds,
                    signal=self.signal,
                )
                await runner.run(message, thread.messages, self._generate_turn)
        except (Exception, asyncio.CancelledError) as exc:
            if not self.signal.owns(exc):
                if isinstance(exc, asyncio.CancelledError):
                    raise
                logger.debug("Generation failed: %s", exc)
                self._set_state(GenerationState.FAILED)
                self._emit("error", exc)
                raise
            logger.debug("Generation cancelled")
            if self._current is not None:
                self._persist(self._current)
                self._current = None
        self._set_state(GenerationState.COMPLETED)
        self._emit("end")
        return self.message

    async def _generate_turn(self) -> Message | None:
        """Stream one assistant message and persist it once the stream is exhausted."""
        thread = self.thread
        self._current = None
        stream = thread.provider.generate_message(
            thread.model,
            thread.messages.list(),
            tools=thread.tools or None,
            options=thread.options,
            api_key=thread.api_key,
            signal=self.signal,
            on_accepted=self._accepted,
        )
        async with aclosing(stream):
            async for fragment, message in stream:
                self._accepted()
                self._current = message
                if fragment.startswith(REASONING_MARKER):
                    self._emit("reasoning", (fragment[len(REASONING_MARKER):], message))
                else:
                    self._emit("data", (fragment, message))
                self.signal.raise_if_cancelled()

        message, self._current = self._current, None
        if message is not None:
            self._persist(message)
        return message


def _retrieve_exception(task: asyncio.Task) -> None:
    # Failures are delivered through wait() and the error event.
    if not task.cancelled():
        task.exception()


__all__ = ["EVENT_TYPES", "Generation", "GenerationEvent", "GenerationState"]
