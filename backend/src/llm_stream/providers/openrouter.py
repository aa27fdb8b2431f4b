"""OpenRouter provider: chat completions streamed as Server-Sent Events."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import DEFAULT_SETTINGS, LLMStreamSettings
from ..exceptions import (
    GenerationLookupError,
    MissingGenerationIdError,
    ProtocolError,
    TransportError,
)
from ..models import FunctionCall, Message, ModelOptions, ToolCall
from ..pricing import ModelPricing, PricingResolver
from ..signals import CancelSignal
from ..tools import BaseTool
from .base import REASONING_MARKER, AcceptedCallback, LLMProvider, StreamUpdate

logger = logging.getLogger(__name__)

# JSON-Schema keywords Cerebras rejects in tool parameter schemas.
_CEREBRAS_UNSUPPORTED_KEYS = (
    "$schema",
    "additionalProperties",
    "minimum",
    "maximum",
    "minLength",
    "maxLength",
    "pattern",
    "format",
    "enum",
    "const",
    "multipleOf",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "minItems",
    "maxItems",
    "uniqueItems",
    "minProperties",
    "maxProperties",
    "dependencies",
    "patternProperties",
    "allOf",
    "anyOf",
    "oneOf",
    "not",
)


def _strip_for_cerebras(schema: Any) -> None:
    if not isinstance(schema, dict):
        return
    for key in _CEREBRAS_UNSUPPORTED_KEYS:
        schema.pop(key, None)
    properties = schema.get("properties")
    if isinstance(properties, dict):
        for prop in properties.values():
            _strip_for_cerebras(prop)
    if "items" in schema:
        _strip_for_cerebras(schema["items"])


def _targets_cerebras(options: ModelOptions | None) -> bool:
    if options is None or options.provider is None:
        return False
    return any(p.lower() == "cerebras" for p in options.provider.only or [])


class _UsageNotReady(Exception):
    """The generation endpoint has no usage for this id yet."""


class _SSEStreamState:
    """Accumulates one assistant message from chat-completion delta frames."""

    def __init__(self, pricing: ModelPricing) -> None:
        self.pricing = pricing
        self.message = Message(
            role="assistant",
            content="",
            tokens=0,
            cost=0.0,
            total_tokens=0,
            total_cost=0.0,
        )
        self.generation_id: str | None = None
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self._tool_calls: dict[int, ToolCall] = {}

    def apply(self, frame: Any) -> list[str]:
        """Fold one decoded frame into the message; return the fragments to emit."""
        if not isinstance(frame, dict):
            raise ProtocolError(f"frame is not an object: {frame!r}")

        if self.generation_id is None and frame.get("id"):
            self.generation_id = str(frame["id"])

        error = frame.get("error")
        if error:
            detail = error.get("message", error) if isinstance(error, dict) else error
            raise TransportError(f"OpenRouter stream error: {detail}")

        usage = frame.get("usage")
        if isinstance(usage, dict):
            self._apply_usage(usage)
        self._refresh_usage()

        fragments: list[str] = []
        choices = frame.get("choices") or []
        if not choices:
            return fragments
        delta = choices[0].get("delta") or {}

        reasoning = delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            self.message.reasoning = (self.message.reasoning or "") + reasoning
            fragments.append(REASONING_MARKER + reasoning)

        content = delta.get("content")
        if isinstance(content, str) and content:
            self.message.content += content
            fragments.append(content)

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list) and tool_calls:
            self._merge_tool_calls(tool_calls)
            fragments.append("")

        return fragments

    def _apply_usage(self, usage: dict[str, Any]) -> None:
        prompt = usage.get("prompt_tokens")
        if prompt and self.prompt_tokens == 0:
            self.prompt_tokens = int(prompt)
        completion = usage.get("completion_tokens")
        if completion and int(completion) > self.completion_tokens:
            self.completion_tokens = int(completion)

    def _refresh_usage(self) -> None:
        prompt_cost = self.prompt_tokens * self.pricing.prompt_price
        completion_cost = self.completion_tokens * self.pricing.completion_price
        self.message.tokens = self.completion_tokens
        self.message.cost = completion_cost
        self.message.total_tokens = self.prompt_tokens + self.completion_tokens
        self.message.total_cost = prompt_cost + completion_cost

    def _merge_tool_calls(self, fragments: list[Any]) -> None:
        # Providers address partial tool calls by index; pieces are concatenated.
        for fragment in fragments:
            if not isinstance(fragment, dict):
                continue
            index = fragment.get("index")
            if not isinstance(index, int):
                continue
            function = fragment.get("function") or {}
            name = function.get("name") or ""
            arguments = function.get("arguments") or ""
            existing = self._tool_calls.get(index)
            if existing is None:
                self._tool_calls[index] = ToolCall(
                    id=fragment.get("id") or "",
                    function=FunctionCall(name=name, arguments=arguments),
                )
                continue
            if not existing.id and fragment.get("id"):
                existing.id = fragment["id"]
            existing.function.name += name
            existing.function.arguments += arguments
        self.message.tool_calls = [self._tool_calls[i] for i in sorted(self._tool_calls)]

    def apply_generation(self, data: dict[str, Any]) -> None:
        """Replace running estimates with the authoritative figures."""
        prompt = int(data.get("native_tokens_prompt") or 0)
        completion = int(data.get("native_tokens_completion") or 0)
        self.message.tokens = completion
        self.message.cost = completion * self.pricing.completion_price
        self.message.total_tokens = prompt + completion
        self.message.total_cost = float(data.get("total_cost") or 0)


def _decode_frame(line: str) -> Any | None:
    """Return the JSON payload of a ``data:`` line, or None for lines to ignore."""
    if not line.strip() or not line.startswith("data: "):
        return None
    payload = line[len("data: "):].strip()
    if payload == "[DONE]":
        return None
    try:
        return json.loads(payload)
    except ValueError as exc:
        raise ProtocolError(f"malformed frame: {payload[:200]}") from exc


class OpenRouterProvider(LLMProvider):
    """OpenRouter-backed provider using the streamed Chat Completions API."""

    name = "OpenRouter"

    def __init__(
        self,
        settings: LLMStreamSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        pricing: PricingResolver | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        super().__init__(client=client, timeout=self.settings.request_timeout)
        self.base_url = self.settings.openrouter_base_url.rstrip("/")
        self.pricing = pricing or PricingResolver(
            self.base_url, client=client, timeout=self.settings.request_timeout
        )
        self._sleep = sleep or asyncio.sleep

    @staticmethod
    def _to_openrouter_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
        """Convert internal Message objects into chat-completion message dicts."""
        return [m.to_chat_dict() for m in messages]

    @staticmethod
    def _format_tools(
        tools: Sequence[BaseTool], options: ModelOptions | None
    ) -> list[dict[str, Any]]:
        cerebras = _targets_cerebras(options)
        formatted: list[dict[str, Any]] = []
        for tool in tools:
            schema = tool.to_tool_schema()
            if cerebras:
                # Cerebras requires every property to be listed as required.
                parameters = schema["function"]["parameters"]
                _strip_for_cerebras(parameters)
                if isinstance(parameters.get("properties"), dict):
                    parameters["required"] = list(parameters["properties"])
            formatted.append(schema)
        return formatted

    def build_body(
        self,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[BaseTool] | None,
        options: ModelOptions | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": self._to_openrouter_messages(messages),
            "stream": True,
        }
        if tools:
            body["tools"] = self._format_tools(tools, options)
        if options is not None:
            body.update(options.to_request_fields())
        return body

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": self.settings.app_url,
            "X-Title": self.settings.app_title,
        }

    async def generate_message(
        self,
        model: str,
        messages: Sequence[Message],
        *,
        tools: Sequence[BaseTool] | None = None,
        options: ModelOptions | None = None,
        api_key: str = "",
        signal: CancelSignal | None = None,
        on_accepted: AcceptedCallback | None = None,
    ) -> AsyncIterator[StreamUpdate]:
        if signal is not None:
            signal.raise_if_cancelled()
        api_key = api_key or self.settings.openrouter_api_key
        pricing = await self.pricing.resolve(model, api_key)
        body = self.build_body(model, messages, tools, options)
        state = _SSEStreamState(pricing)

        async with self._http() as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers=self._headers(api_key),
                ) as response:
                    await self._check_response(response)
                    if on_accepted is not None:
                        on_accepted()
                    async for line in response.aiter_lines():
                        if signal is not None:
                            signal.raise_if_cancelled()
                        try:
                            frame = _decode_frame(line)
                            if frame is None:
                                continue
                            fragments = state.apply(frame)
                        except (ProtocolError, KeyError, TypeError, ValueError, AttributeError) as exc:
                            logger.debug("Skipping malformed OpenRouter frame: %s", exc)
                            continue
                        for fragment in fragments:
                            yield fragment, state.message.snapshot()
            except httpx.HTTPError as exc:
                raise TransportError(f"OpenRouter request failed: {exc}") from exc

            if state.generation_id is None:
                raise MissingGenerationIdError(
                    "OpenRouter did not include a generation id in the stream response"
                )
            await self._confirm_usage(client, state, api_key)

        yield "", state.message.snapshot()

    async def _confirm_usage(
        self, client: httpx.AsyncClient, state: _SSEStreamState, api_key: str
    ) -> None:
        generation_id = state.generation_id or ""
        attempts = self.settings.cost_confirm_attempts
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self.settings.cost_confirm_base_delay,
                max=self.settings.cost_confirm_max_delay,
            ),
            retry=retry_if_exception_type((httpx.HTTPError, _UsageNotReady)),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    data = await self._fetch_generation(client, generation_id, api_key)
        except (httpx.HTTPError, _UsageNotReady) as exc:
            raise GenerationLookupError(generation_id, attempts, str(exc)) from exc
        state.apply_generation(data)

    async def _fetch_generation(
        self, client: httpx.AsyncClient, generation_id: str, api_key: str
    ) -> dict[str, Any]:
        response = await client.get(
            f"{self.base_url}/generation",
            params={"id": generation_id},
            headers={"Authorization": f"Bearer {api_key}"},
        )
        if not response.is_success:
            raise _UsageNotReady(
                f"HTTP {response.status_code} {response.reason_phrase}: {response.text}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise _UsageNotReady(f"Unreadable generation response: {exc}") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not data:
            raise _UsageNotReady("Generation response missing data payload")
        return data


__all__ = ["OpenRouterProvider"]
