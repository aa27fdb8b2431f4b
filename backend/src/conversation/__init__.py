"""Conversation runtime: threads, generations and the tool loop."""

from .generation import Generation, GenerationEvent, GenerationState
from .thread import MessageStore, Thread
from .tool_runner import ToolRunner

__all__ = [
    "Generation",
    "GenerationEvent",
    "GenerationState",
    "MessageStore",
    "Thread",
    "ToolRunner",
]
