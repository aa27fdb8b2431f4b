"""Shared LLM models, streaming providers and tools used across the backend."""

from .config import DEFAULT_SETTINGS, LLMStreamSettings
from .core import DEFAULT_REGISTRY, ProviderRegistry, chat, parse_model
from .exceptions import (
    GenerationCancelled,
    GenerationLookupError,
    LLMStreamError,
    MissingGenerationIdError,
    ProtocolError,
    ToolExecutionError,
    TransportError,
)
from .models import FunctionCall, Message, ModelOptions, ToolCall
from .pricing import ModelPricing, PricingResolver
from .providers import REASONING_MARKER, LLMProvider, OllamaProvider, OpenRouterProvider
from .signals import CancelSignal
from .tools import BaseTool, Tool

__all__ = [
    "BaseTool",
    "CancelSignal",
    "DEFAULT_REGISTRY",
    "DEFAULT_SETTINGS",
    "FunctionCall",
    "GenerationCancelled",
    "GenerationLookupError",
    "LLMProvider",
    "LLMStreamError",
    "LLMStreamSettings",
    "Message",
    "MissingGenerationIdError",
    "ModelOptions",
    "ModelPricing",
    "OllamaProvider",
    "OpenRouterProvider",
    "PricingResolver",
    "ProtocolError",
    "ProviderRegistry",
    "REASONING_MARKER",
    "Tool",
    "ToolCall",
    "ToolExecutionError",
    "TransportError",
    "chat",
    "parse_model",
]
