"""Chat router: run a thread to completion, or relay its events as SSE."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from src.conversation import GenerationEvent, Thread
from src.llm_stream import LLMStreamSettings, Message, ModelOptions, ProviderRegistry
from src.llm_stream.tools import BaseTool, GetTimeTool

router = APIRouter(prefix="/chat", tags=["chat"])


class ChatRequest(BaseModel):
    """Request body for POST /chat and POST /chat/stream."""

    message: str = Field(..., description="User message")
    history: list[Message] = Field(
        default_factory=list, description="Earlier messages of the conversation, oldest first"
    )
    system_prompt: str | None = Field(None, description="Optional system prompt")
    model: str | None = Field(
        None,
        description=(
            "LLM model in 'provider:model' format (e.g. 'openrouter:qwen/qwen3-30b-a3b', "
            "'ollama:llama3.2'). Without a known provider prefix the value is "
            "treated as an Ollama model name."
        ),
    )
    options: ModelOptions | None = Field(None, description="Generation options")


class ChatResponse(BaseModel):
    """Response for POST /chat."""

    reply: str
    messages: list[Message]
    message_count: int = 0
    tokens: int = 0
    cost: float = 0.0
    total_tokens: int = 0
    total_cost: float = 0.0


@lru_cache
def get_provider_registry() -> ProviderRegistry:
    return ProviderRegistry(LLMStreamSettings.from_env())


def get_tools() -> list[BaseTool]:
    return [GetTimeTool()]


def _build_thread(request: ChatRequest, registry: ProviderRegistry, tools: list[BaseTool]) -> Thread:
    messages: list[Message] = []
    if request.system_prompt:
        messages.append(Message(role="system", content=request.system_prompt))
    messages.extend(request.history)
    messages.append(Message(role="user", content=request.message))
    return Thread.for_model(
        request.model,
        registry=registry,
        messages=messages,
        tools=tools,
        options=request.options,
    )


def _final_reply(messages: list[Message]) -> str:
    for m in reversed(messages):
        if m.role != "assistant" or m.tool_calls:
            continue
        if (m.content or "").strip():
            return m.content
    return ""


def format_sse(event: GenerationEvent) -> str:
    """Encode one generation event as a Server-Sent Events frame."""
    payload: dict[str, Any]
    if event.type == "state":
        payload = {"state": event.payload.value}
    elif event.type in ("data", "reasoning"):
        fragment, message = event.payload
        payload = {"fragment": fragment, "message": message.model_dump(exclude_none=True)}
    elif event.type == "error":
        payload = {"error": str(event.payload)}
    else:
        payload = {}
    return f"event: {event.type}\ndata: {json.dumps(payload)}\n\n"


@router.post("", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    registry: ProviderRegistry = Depends(get_provider_registry),
    tools: list[BaseTool] = Depends(get_tools),
) -> ChatResponse:
    """Run one turn, including any tool calls, and return the assistant reply."""
    thread = _build_thread(request, registry, tools)
    seeded = len(thread.messages)
    try:
        await thread.generate().wait()
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e)) from e

    messages = thread.messages.list()
    produced = [m for m in messages[seeded:] if m.role == "assistant"]
    return ChatResponse(
        reply=_final_reply(messages),
        messages=messages,
        message_count=len(messages),
        tokens=sum(m.tokens or 0 for m in produced),
        cost=sum(m.cost or 0.0 for m in produced),
        total_tokens=sum(m.total_tokens or 0 for m in produced),
        total_cost=sum(m.total_cost or 0.0 for m in produced),
    )


@router.post("/stream")
async def chat_stream(
    request: ChatRequest,
    registry: ProviderRegistry = Depends(get_provider_registry),
    tools: list[BaseTool] = Depends(get_tools),
) -> StreamingResponse:
    """Relay thread events as SSE; the generation is cancelled if the client goes away."""
    thread = _build_thread(request, registry, tools)
    generation = thread.generate()

    async def event_stream():
        try:
            async for event in generation.events():
                yield format_sse(event)
        finally:
            if not generation.done:
                generation.cancel()

    return StreamingResponse(event_stream(), media_type="text/event-stream")
