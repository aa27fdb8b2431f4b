"""Tool protocol: what the model may call and how its parameters are described."""

from __future__ import annotations

import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}}

ToolHandler = Callable[[Any], "Awaitable[str] | str"]


def describe_parameters(parameters: Any) -> dict[str, Any]:
    """Return a JSON Schema for a tool's parameter declaration.

    Accepts a pydantic model class, a JSON Schema mapping, or None.
    """
    if parameters is None:
        return dict(EMPTY_PARAMETERS)
    if isinstance(parameters, type) and issubclass(parameters, BaseModel):
        return parameters.model_json_schema()
    if isinstance(parameters, Mapping):
        return json.loads(json.dumps(parameters))
    raise TypeError(f"Unsupported tool parameter declaration: {parameters!r}")


class BaseTool(ABC):
    """Base class for tools offered to the model."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    def parameters(self) -> Any:
        """Parameter declaration; see describe_parameters()."""
        return None

    @abstractmethod
    async def execute(self, params: Any) -> str:
        """Run the tool. Raise to report a failure back to the model."""
        ...

    def parameters_schema(self) -> dict[str, Any]:
        return describe_parameters(self.parameters)

    def to_tool_schema(self) -> dict[str, Any]:
        """Standard function-calling schema for any LLM provider."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }


class Tool(BaseTool):
    """A tool backed by a plain function; the handler may be sync or async."""

    def __init__(
        self,
        name: str,
        description: str,
        handler: ToolHandler,
        parameters: Any = None,
    ) -> None:
        self._name = name
        self._description = description
        self._handler = handler
        self._parameters = parameters

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> Any:
        return self._parameters

    async def execute(self, params: Any) -> str:
        result = self._handler(params)
        if inspect.isawaitable(result):
            result = await result
        return format_tool_result(result)


def format_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    if result is None:
        return ""
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)


# ---------------------------------------------------------------------------
# Built-in tool: get current time
# ---------------------------------------------------------------------------


class GetTimeTool(BaseTool):
    """Returns current UTC time as ISO string."""

    @property
    def name(self) -> str:
        return "get_time"

    @property
    def description(self) -> str:
        return "Get the current UTC date and time in ISO format."

    async def execute(self, params: Any) -> str:
        return datetime.now(timezone.utc).isoformat()


__all__ = [
    "BaseTool",
    "EMPTY_PARAMETERS",
    "GetTimeTool",
    "Tool",
    "ToolHandler",
    "describe_parameters",
    "format_tool_result",
]
