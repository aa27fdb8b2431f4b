"""Error types raised by providers, the generation controller and the tool loop."""

from __future__ import annotations


class LLMStreamError(Exception):
    """Base class for all errors raised by this package."""


class TransportError(LLMStreamError):
    """The backend could not be reached or answered with a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(LLMStreamError):
    """A single frame or line could not be interpreted; the stream continues."""


class MissingGenerationIdError(LLMStreamError):
    """The stream finished without the id needed to confirm usage and cost."""


class GenerationLookupError(TransportError):
    """Confirming usage for a finished generation failed on every attempt."""

    def __init__(self, generation_id: str, attempts: int, last_error: str = "") -> None:
        message = f"Failed to fetch generation {generation_id} after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.generation_id = generation_id
        self.attempts = attempts


class ToolExecutionError(LLMStreamError):
    """A tool handler failed; converted into an error tool message."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class GenerationCancelled(LLMStreamError):
    """The caller cancelled the generation; treated as a graceful end."""


__all__ = [
    "GenerationCancelled",
    "GenerationLookupError",
    "LLMStreamError",
    "MissingGenerationIdError",
    "ProtocolError",
    "ToolExecutionError",
    "TransportError",
]
