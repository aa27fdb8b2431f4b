"""Recovery of tool calls that models emit as text instead of structured fields.

Content increments are fed to ToolCallRecovery, which runs an ordered list of
matchers. Each matcher knows how a region of its kind starts, where it ends
and what the finished region means (tool call, answer text, or verbatim
text). Text outside any region passes straight through. New model quirks are
handled by adding a matcher, not by editing the existing ones.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

ANSWER_FIELDS = ("response", "message", "text", "content")

_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n?(.*?)```", re.IGNORECASE | re.DOTALL)
_FENCE_REGION_RE = re.compile(r"```([A-Za-z0-9_+-]*)[ \t]*\n?(.*?)```\s*\Z", re.DOTALL)
_TAG_RE = re.compile(r"<tool_call>(.*?)</tool_call>", re.IGNORECASE | re.DOTALL)

TAG_OPEN = "<tool_call>"
TAG_CLOSE = "</tool_call>"
FENCE = "```"


@dataclass(frozen=True)
class TextPiece:
    text: str


@dataclass(frozen=True)
class RecoveredToolCall:
    name: str
    arguments: Any


RecoveryEvent = TextPiece | RecoveredToolCall


# ---------------------------------------------------------------------------
# Shape helpers
# ---------------------------------------------------------------------------


def parse_json_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def extract_tool_call(
    obj: Any, *, require_arguments: bool = False
) -> tuple[str, Any] | None:
    """Return (name, arguments) when ``obj`` looks like a tool call."""
    if not isinstance(obj, dict):
        return None
    function = obj.get("function") if isinstance(obj.get("function"), dict) else {}
    name = obj.get("name") or function.get("name") or obj.get("function_name")
    if not isinstance(name, str) or not name:
        return None
    for source, key in ((obj, "arguments"), (function, "arguments"), (obj, "args"), (obj, "parameters")):
        if key in source:
            return name, source[key]
    if require_arguments:
        return None
    return name, {}


def answer_text(obj: dict[str, Any]) -> str | None:
    """Literal answer carried by a ``response`` envelope or answer field, if any."""
    call = extract_tool_call(obj)
    if call is not None and call[0].lower() == "response":
        args = call[1]
        if isinstance(args, str) and args:
            return args
        if isinstance(args, dict):
            for field in ("message", "text", "content"):
                value = args.get(field)
                if isinstance(value, str) and value:
                    return value
    for field in ANSWER_FIELDS:
        value = obj.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def strip_wrappers(text: str) -> str:
    """Remove a Markdown fence or tool-call tags around a JSON payload."""
    tag = _TAG_RE.search(text)
    if tag:
        return tag.group(1).strip()
    fence = _FENCE_RE.search(text)
    if fence:
        return fence.group(1).strip()
    return text.strip()


def parse_tool_call_text(text: str) -> tuple[str, Any] | None:
    """Interpret a complete message body as a single tool call."""
    obj = parse_json_object(strip_wrappers(text))
    if obj is None:
        return None
    call = extract_tool_call(obj)
    if call is None or call[0].lower() == "response":
        return None
    return call


def json_object_end(buffer: str) -> int | None:
    """Index just past the object starting at buffer[0], or None while unbalanced."""
    depth = 0
    in_string = False
    escaped = False
    for i, char in enumerate(buffer):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


# ---------------------------------------------------------------------------
# Matchers
# ---------------------------------------------------------------------------


class Matcher(ABC):
    """One kind of buffered region inside assistant content."""

    #: Opening tokens; a piece ending in a prefix of one is held back.
    openers: tuple[str, ...] = ()

    @abstractmethod
    def find_start(self, text: str, at_line_start: bool) -> int | None:
        ...

    @abstractmethod
    def find_end(self, buffer: str) -> int | None:
        ...

    @abstractmethod
    def extract(self, region: str) -> list[RecoveryEvent]:
        ...

    def flush(self, region: str) -> list[RecoveryEvent]:
        """Interpret a region left open when the stream ended."""
        return [TextPiece(region)]


class TagMatcher(Matcher):
    """``<tool_call>{...}</tool_call>``"""

    openers = (TAG_OPEN,)

    def find_start(self, text: str, at_line_start: bool) -> int | None:
        index = text.lower().find(TAG_OPEN)
        return index if index >= 0 else None

    def find_end(self, buffer: str) -> int | None:
        index = buffer.lower().find(TAG_CLOSE)
        return index + len(TAG_CLOSE) if index >= 0 else None

    def extract(self, region: str) -> list[RecoveryEvent]:
        match = _TAG_RE.search(region)
        obj = parse_json_object(match.group(1).strip()) if match else None
        call = extract_tool_call(obj)
        if call is None:
            return []
        return [RecoveredToolCall(*call)]

    def flush(self, region: str) -> list[RecoveryEvent]:
        call = extract_tool_call(parse_json_object(region[len(TAG_OPEN):].strip()))
        if call is not None:
            return [RecoveredToolCall(*call)]
        return [TextPiece(region)]


class FencedJsonMatcher(Matcher):
    """Markdown code fences. JSON interiors are interpreted, anything else passes through."""

    openers = (FENCE,)

    def find_start(self, text: str, at_line_start: bool) -> int | None:
        index = text.find(FENCE)
        return index if index >= 0 else None

    def find_end(self, buffer: str) -> int | None:
        index = buffer.find(FENCE, len(FENCE))
        return index + len(FENCE) if index >= 0 else None

    def extract(self, region: str) -> list[RecoveryEvent]:
        match = _FENCE_REGION_RE.match(region)
        if match is None or match.group(1).lower() not in ("", "json"):
            return [TextPiece(region)]
        inner = match.group(2).strip()
        try:
            value = json.loads(inner)
        except ValueError:
            return [TextPiece(region)]
        if not isinstance(value, dict):
            return []
        answer = answer_text(value)
        if answer is not None:
            return [TextPiece(answer)]
        call = extract_tool_call(value, require_arguments=True)
        if call is not None:
            return [RecoveredToolCall(*call)]
        return []

    def flush(self, region: str) -> list[RecoveryEvent]:
        closed = region.rstrip() + "\n" + FENCE
        events = self.extract(closed)
        if events == [TextPiece(closed)]:
            return [TextPiece(region)]
        return events


class BareJsonMatcher(Matcher):
    """A JSON object opening at the start of a line, tracked by brace depth."""

    def find_start(self, text: str, at_line_start: bool) -> int | None:
        index = text.find("{")
        while index >= 0:
            prefix = text[:index]
            line = prefix.rsplit("\n", 1)
            if line[-1].strip() == "" and (len(line) > 1 or at_line_start):
                return index
            index = text.find("{", index + 1)
        return None

    def find_end(self, buffer: str) -> int | None:
        return json_object_end(buffer)

    def extract(self, region: str) -> list[RecoveryEvent]:
        obj = parse_json_object(region)
        if obj is None:
            return [TextPiece(region)]
        answer = answer_text(obj)
        if answer is not None:
            return [TextPiece(answer)]
        call = extract_tool_call(obj, require_arguments=True)
        if call is not None:
            return [RecoveredToolCall(*call)]
        return [TextPiece(region)]


def default_matchers() -> list[Matcher]:
    """Matchers in precedence order; on equal start positions the earlier one wins."""
    return [TagMatcher(), FencedJsonMatcher(), BareJsonMatcher()]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ToolCallRecovery:
    """Incremental scanner turning content increments into text and tool-call events."""

    def __init__(self, matchers: Sequence[Matcher] | None = None) -> None:
        self._matchers = list(matchers) if matchers is not None else default_matchers()
        self._active: Matcher | None = None
        self._buffer = ""
        self._carry = ""
        self._at_line_start = True

    @property
    def buffering(self) -> bool:
        return self._active is not None or bool(self._carry)

    def feed(self, piece: str) -> list[RecoveryEvent]:
        events: list[RecoveryEvent] = []
        pending = self._carry + piece
        self._carry = ""
        while pending:
            if self._active is None:
                start, matcher = self._earliest_start(pending)
                if matcher is None:
                    held = self._partial_opener(pending)
                    if held:
                        self._carry = pending[-held:]
                        pending = pending[:-held]
                    self._emit_text(pending, events)
                    break
                self._emit_text(pending[:start], events)
                self._active = matcher
                self._buffer = ""
                pending = pending[start:]

            self._buffer += pending
            pending = ""
            end = self._active.find_end(self._buffer)
            if end is None:
                break
            region, pending = self._buffer[:end], self._buffer[end:]
            matcher, self._active, self._buffer = self._active, None, ""
            events.extend(matcher.extract(region))
            self._at_line_start = True
        return events

    def finish(self) -> list[RecoveryEvent]:
        """Flush whatever is still buffered at the end of the stream."""
        events: list[RecoveryEvent] = []
        if self._active is not None:
            events.extend(self._active.flush(self._buffer))
            self._active, self._buffer = None, ""
        if self._carry:
            self._emit_text(self._carry, events)
            self._carry = ""
        return [e for e in events if not (isinstance(e, TextPiece) and not e.text)]

    def _earliest_start(self, text: str) -> tuple[int, Matcher | None]:
        best: tuple[int, Matcher | None] = (len(text), None)
        for matcher in self._matchers:
            start = matcher.find_start(text, self._at_line_start)
            if start is not None and start < best[0]:
                best = (start, matcher)
        return best

    def _partial_opener(self, text: str) -> int:
        longest = 0
        lowered = text.lower()
        for matcher in self._matchers:
            for opener in matcher.openers:
                for size in range(min(len(opener) - 1, len(text)), 0, -1):
                    if lowered.endswith(opener[:size]):
                        longest = max(longest, size)
                        break
        return longest

    def _emit_text(self, text: str, events: list[RecoveryEvent]) -> None:
        if not text:
            return
        self._at_line_start = text.endswith("\n") or (self._at_line_start and not text.strip())
        events.append(TextPiece(text))


__all__ = [
    "ANSWER_FIELDS",
    "BareJsonMatcher",
    "FencedJsonMatcher",
    "Matcher",
    "RecoveredToolCall",
    "RecoveryEvent",
    "TagMatcher",
    "TextPiece",
    "ToolCallRecovery",
    "answer_text",
    "default_matchers",
    "extract_tool_call",
    "json_object_end",
    "parse_json_object",
    "parse_tool_call_text",
    "strip_wrappers",
]
