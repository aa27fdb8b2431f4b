"""Ollama provider: /api/chat streamed as newline-delimited JSON."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from ..config import DEFAULT_SETTINGS, LLMStreamSettings
from ..exceptions import TransportError
from ..models import FunctionCall, Message, ModelOptions, ToolCall
from ..signals import CancelSignal
from ..tools import BaseTool
from .base import REASONING_MARKER, AcceptedCallback, LLMProvider, StreamUpdate, dump_arguments
from .recovery import (
    RecoveredToolCall,
    RecoveryEvent,
    TextPiece,
    ToolCallRecovery,
    parse_json_object,
    parse_tool_call_text,
    strip_wrappers,
)

logger = logging.getLogger(__name__)

# ModelOptions field -> Ollama runtime option.
_OPTION_NAMES = {
    "temperature": "temperature",
    "top_p": "top_p",
    "top_k": "top_k",
    "min_p": "min_p",
    "seed": "seed",
    "max_tokens": "num_predict",
    "repetition_penalty": "repeat_penalty",
}


def _decode_arguments(arguments: str) -> Any:
    if not arguments:
        return {}
    try:
        return json.loads(arguments)
    except ValueError:
        return arguments


def _canonical_arguments(encoded: str) -> str:
    try:
        return json.dumps(json.loads(encoded), sort_keys=True, separators=(",", ":"))
    except ValueError:
        return encoded


def _originating_tool_name(messages: Sequence[Message], index: int) -> str | None:
    """Name of the call a tool result answers, from the nearest assistant turn."""
    call_id = messages[index].tool_call_id
    for previous in reversed(messages[:index]):
        if previous.role != "assistant" or not previous.tool_calls:
            continue
        for call in previous.tool_calls:
            if call_id and call.id == call_id:
                return call.function.name
        return previous.tool_calls[0].function.name
    return None


class _NDJSONStreamState:
    """Accumulates one assistant message from Ollama chat lines."""

    def __init__(self, tools: Sequence[BaseTool], *, strict: bool, recover: bool) -> None:
        self.message = Message(
            role="assistant",
            content="",
            tokens=0,
            cost=0.0,
            total_tokens=0,
            total_cost=0.0,
        )
        self.known_tools = {tool.name for tool in tools}
        self.recovery = ToolCallRecovery() if recover else None
        self.strict = strict and recover
        self.held = ""
        self.finished = False
        self.emitted_tool_call = False
        self._seen: set[tuple[str, str]] = set()

    def add_tool_call(self, name: str, arguments: Any) -> bool:
        encoded = dump_arguments(arguments)
        key = (name, _canonical_arguments(encoded))
        if key in self._seen:
            return False
        self._seen.add(key)
        calls = list(self.message.tool_calls or [])
        calls.append(
            ToolCall(
                id=f"call_{len(calls)}",
                function=FunctionCall(name=name, arguments=encoded),
            )
        )
        self.message.tool_calls = calls
        self.emitted_tool_call = True
        return True

    def apply(self, line: dict[str, Any]) -> list[str]:
        """Fold one decoded line into the message; return the fragments to emit."""
        if line.get("error"):
            raise TransportError(f"Ollama stream error: {line['error']}")

        fragments: list[str] = []
        message = line.get("message")
        if isinstance(message, dict):
            thinking = message.get("thinking")
            if isinstance(thinking, str) and thinking:
                self.message.reasoning = (self.message.reasoning or "") + thinking
                fragments.append(REASONING_MARKER + thinking)

            content = message.get("content")
            if isinstance(content, str) and content:
                fragments.extend(self._feed_content(content))

            tool_calls = message.get("tool_calls")
            if isinstance(tool_calls, list) and tool_calls:
                for call in tool_calls:
                    function = call.get("function") if isinstance(call, dict) else None
                    if not isinstance(function, dict) or not function.get("name"):
                        continue
                    self.add_tool_call(str(function["name"]), function.get("arguments", {}))
                fragments.append("")

        if line.get("done") is True:
            fragments.extend(self._finish(line))
        return fragments

    def _feed_content(self, piece: str) -> list[str]:
        if self.recovery is None:
            self.message.content += piece
            return [piece]
        if self.strict and not self.emitted_tool_call:
            self.held += piece
            return []
        return self._apply_events(self.recovery.feed(piece))

    def _apply_events(self, events: list[RecoveryEvent]) -> list[str]:
        fragments: list[str] = []
        for event in events:
            if isinstance(event, TextPiece):
                self.message.content += event.text
                fragments.append(event.text)
            elif isinstance(event, RecoveredToolCall):
                if self.add_tool_call(event.name, event.arguments):
                    fragments.append("")
        return fragments

    def _finish(self, line: dict[str, Any]) -> list[str]:
        self.finished = True
        prompt = int(line.get("prompt_eval_count") or 0)
        completion = int(line.get("eval_count") or 0)
        self.message.tokens = completion
        self.message.total_tokens = prompt + completion
        self.message.cost = 0.0
        self.message.total_cost = 0.0

        if self.recovery is None:
            return []

        fragments = self._apply_events(self.recovery.finish())

        # Whole message written as a tool call for a tool we offered.
        if not self.emitted_tool_call and self.known_tools:
            call = parse_tool_call_text(self.message.content + self.held)
            if call is not None and call[0] in self.known_tools:
                self.message.content = ""
                self.held = ""
                self.add_tool_call(*call)
                fragments.append("")

        text = (self.message.content + self.held).strip()
        if text.startswith(("{", "```")):
            envelope = parse_json_object(strip_wrappers(text))
            if envelope is not None and isinstance(envelope.get("response"), str):
                self.message.content = envelope["response"]
                self.held = ""
                fragments.append(envelope["response"])

        held, self.held = self.held, ""
        if held.strip():
            if self.emitted_tool_call and parse_tool_call_text(held) is not None:
                logger.debug("Dropping held text duplicating a structured tool call")
            else:
                fragments.extend(self._apply_events(self.recovery.feed(held) + self.recovery.finish()))
        return fragments


def _decode_line(line: str) -> dict[str, Any] | None:
    if not line.strip():
        return None
    try:
        value = json.loads(line)
    except ValueError:
        logger.debug("Skipping malformed Ollama line: %s", line[:200])
        return None
    return value if isinstance(value, dict) else None


class OllamaProvider(LLMProvider):
    """Ollama-backed provider streaming /api/chat."""

    name = "Ollama"

    def __init__(
        self,
        settings: LLMStreamSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        strict: bool | None = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        super().__init__(client=client, timeout=self.settings.request_timeout)
        self.host = self.settings.ollama_host.rstrip("/")
        self.strict = self.settings.ollama_strict if strict is None else strict

    @staticmethod
    def _to_ollama_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
        """Convert our Message to Ollama chat format."""
        out: list[dict[str, Any]] = []
        for index, m in enumerate(messages):
            item: dict[str, Any] = {"role": m.role, "content": m.content or ""}
            if m.role == "assistant" and m.tool_calls:
                item["tool_calls"] = [
                    {
                        "function": {
                            "name": tc.function.name,
                            "arguments": _decode_arguments(tc.function.arguments),
                        }
                    }
                    for tc in m.tool_calls
                ]
            if m.role == "tool":
                tool_name = _originating_tool_name(messages, index)
                if tool_name:
                    item["tool_name"] = tool_name
            out.append(item)
        return out

    def build_body(
        self,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[BaseTool] | None,
        options: ModelOptions | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": self._to_ollama_messages(messages),
            "stream": True,
        }
        if tools:
            body["tools"] = [tool.to_tool_schema() for tool in tools]
        if options is None:
            return body
        if options.response_format is not None:
            body["format"] = options.response_format.json_schema.schema_
        if options.reasoning is not None and options.reasoning.enabled:
            body["think"] = True
        runtime = {
            target: getattr(options, source)
            for source, target in _OPTION_NAMES.items()
            if getattr(options, source) is not None
        }
        if runtime:
            body["options"] = runtime
        return body

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
        tools = list(tools or [])
        # Recovery needs offered tools; structured output passes through untouched.
        recover = bool(tools) and (options is None or options.response_format is None)
        state = _NDJSONStreamState(tools, strict=self.strict, recover=recover)
        body = self.build_body(model, messages, tools, options)
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

        async with self._http() as client:
            try:
                async with client.stream(
                    "POST", f"{self.host}/api/chat", json=body, headers=headers
                ) as response:
                    await self._check_response(response)
                    if on_accepted is not None:
                        on_accepted()
                    async for raw in response.aiter_lines():
                        if signal is not None:
                            signal.raise_if_cancelled()
                        line = _decode_line(raw)
                        if line is None:
                            continue
                        for fragment in state.apply(line):
                            yield fragment, state.message.snapshot()
                        if line.get("done") is True:
                            break
            except httpx.HTTPError as exc:
                raise TransportError(f"Ollama request failed: {exc}") from exc

        if not state.finished:
            logger.debug("Ollama stream ended without a done line")
            for fragment in state.apply({"done": True}):
                yield fragment, state.message.snapshot()

        yield "", state.message.snapshot()


__all__ = ["OllamaProvider"]
