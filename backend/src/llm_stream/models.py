from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]


class FunctionCall(BaseModel):
    """Name and JSON-encoded arguments of a requested function."""

    name: str = ""
    arguments: str = ""


class ToolCall(BaseModel):
    """A structured tool invocation requested by the model."""

    id: str = ""
    type: Literal["function"] = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)


class Message(BaseModel):
    """A single message in a conversation."""

    role: Role = Field(frozen=True)
    content: str = ""
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None
    reasoning: str | None = None
    tokens: int | None = None
    cost: float | None = None
    total_tokens: int | None = None
    total_cost: float | None = None

    def to_chat_dict(self) -> dict[str, Any]:
        """Format for LLM chat APIs."""
        out: dict[str, Any] = {"role": self.role, "content": self.content or ""}
        if self.tool_calls is not None:
            out["tool_calls"] = [tc.model_dump() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
        return out

    def snapshot(self) -> Message:
        """Deep copy handed to consumers while this instance keeps accumulating."""
        return self.model_copy(deep=True)


# ---------------------------------------------------------------------------
# Generation options
# ---------------------------------------------------------------------------


class ReasoningOptions(BaseModel):
    enabled: bool | None = None
    include: bool | None = None
    include_output: bool | None = None


class UsageOptions(BaseModel):
    include: bool | None = None


class ProviderRouting(BaseModel):
    """Upstream routing hints understood by OpenRouter."""

    order: list[str] | None = None
    allow_fallbacks: bool | None = None
    require_parameters: bool | None = None
    data_collection: Literal["allow", "deny"] | None = None
    only: list[str] | None = None
    ignore: list[str] | None = None
    quantizations: list[str] | None = None
    sort: Literal["price", "throughput"] | None = None
    max_price: dict[str, Any] | None = None


class JsonSchemaFormat(BaseModel):
    name: str
    strict: bool | None = None
    schema_: dict[str, Any] = Field(alias="schema")

    model_config = ConfigDict(populate_by_name=True)


class ResponseFormat(BaseModel):
    """Structured-output request (`json_schema` only)."""

    type: Literal["json_schema"] = "json_schema"
    json_schema: JsonSchemaFormat


class ModelOptions(BaseModel):
    """Flattened generation options; unset fields are never sent."""

    temperature: float | None = None
    max_tokens: int | None = None
    seed: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    repetition_penalty: float | None = None
    min_p: float | None = None
    top_a: float | None = None
    reasoning: ReasoningOptions | None = None
    usage: UsageOptions | None = None
    provider: ProviderRouting | None = None
    models: list[str] | None = None
    transforms: list[str] | None = None
    logit_bias: dict[str, float] | None = None
    top_logprobs: int | None = None
    response_format: ResponseFormat | None = None

    def to_request_fields(self) -> dict[str, Any]:
        """Options as top-level request body fields."""
        return self.model_dump(exclude_none=True, by_alias=True)


__all__ = [
    "FunctionCall",
    "JsonSchemaFormat",
    "Message",
    "ModelOptions",
    "ProviderRouting",
    "ReasoningOptions",
    "ResponseFormat",
    "Role",
    "ToolCall",
    "UsageOptions",
]
