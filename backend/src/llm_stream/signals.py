"""Cooperative cancellation shared by a generation, its transport reads and its tool loop."""

from __future__ import annotations

import asyncio

from .exceptions import GenerationCancelled


class CancelSignal:
    """One-shot cancellation flag, optionally bound to the task doing the work.

    Raising the signal from outside the bound task also cancels the task so a
    transport read that is blocked waiting for bytes is aborted. Raised from
    inside the task (for example from an event listener) it is only a flag,
    checked by the parsers between lines and by the tool loop between calls.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if current is not task:
            task.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled("generation cancelled")

    def owns(self, exc: BaseException) -> bool:
        """True when ``exc`` is the result of this signal being raised."""
        if isinstance(exc, GenerationCancelled):
            return True
        return isinstance(exc, asyncio.CancelledError) and self._cancelled


__all__ = ["CancelSignal"]
