"""LLM providers: pluggable stream parsers for the conversation runtime."""

from .base import REASONING_MARKER, LLMProvider, StreamUpdate
from .ollama import OllamaProvider
from .openrouter import OpenRouterProvider

__all__ = [
    "LLMProvider",
    "REASONING_MARKER",
    "StreamUpdate",
    "OllamaProvider",
    "OpenRouterProvider",
]
