"""Unit tests for the OpenRouter SSE stream parser (HTTP mocked with httpx.MockTransport)."""
from __future__ import annotations

import json
import unittest

import httpx

from src.llm_stream import (
    GenerationLookupError,
    LLMStreamSettings,
    Message,
    MissingGenerationIdError,
    ModelOptions,
    OpenRouterProvider,
    Tool,
    TransportError,
)
from src.llm_stream.providers import REASONING_MARKER

BASE_URL = "https://openrouter.test/api/v1"
MODEL = "vendor/model"
CATALOG = {"data": [{"id": MODEL, "pricing": {"prompt": "0.000001", "completion": "0.000002"}}]}
GENERATION = {
    "data": {"native_tokens_prompt": 10, "native_tokens_completion": 5, "total_cost": 0.00002}
}


def sse(*frames: object) -> str:
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines)


def delta(**fields: object) -> dict:
    return {"id": "gen-1", "choices": [{"delta": fields}]}


class FakeOpenRouter:
    """Routes /models, /chat/completions and /generation requests."""

    def __init__(self, stream: str, *, chat_status: int = 200, generation: list | None = None) -> None:
        self.stream = stream
        self.chat_status = chat_status
        self.generation = list(generation) if generation is not None else [httpx.Response(200, json=GENERATION)]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/models"):
            return httpx.Response(200, json=CATALOG)
        if path.endswith("/chat/completions"):
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, text="invalid key")
            return httpx.Response(200, text=self.stream, headers={"content-type": "text/event-stream"})
        if path.endswith("/generation"):
            if len(self.generation) > 1:
                return self.generation.pop(0)
            return self.generation[0]
        return httpx.Response(404)

    def paths(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


class TestOpenRouterProvider(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.delays: list[float] = []

    async def _sleep(self, seconds: float) -> None:
        self.delays.append(seconds)

    async def _run(self, fake: FakeOpenRouter, **kwargs) -> list[tuple[str, Message]]:
        settings = LLMStreamSettings(openrouter_base_url=BASE_URL, openrouter_api_key="sk-test")
        async with httpx.AsyncClient(transport=httpx.MockTransport(fake)) as client:
            provider = OpenRouterProvider(settings, client=client, sleep=self._sleep)
            messages = [Message(role="user", content="hi")]
            return [
                update
                async for update in provider.generate_message(MODEL, messages, **kwargs)
            ]

    async def test_fragments_concatenate_to_final_content(self) -> None:
        fake = FakeOpenRouter(sse(delta(content="Hel"), delta(content="lo"), delta(content=" there")))
        updates = await self._run(fake)
        final = updates[-1][1]
        self.assertEqual("".join(f for f, _ in updates), final.content)
        self.assertEqual(final.content, "Hello there")
        self.assertEqual([m.content for _, m in updates[:3]], ["Hel", "Hello", "Hello there"])

    async def test_request_shape(self) -> None:
        fake = FakeOpenRouter(sse(delta(content="ok")))
        tool = Tool("get_weather", "Weather", lambda p: "sunny")
        await self._run(fake, tools=[tool], options=ModelOptions(temperature=0.1))
        request = fake.paths("/chat/completions")[0]
        body = json.loads(request.content)
        self.assertTrue(body["stream"])
        self.assertEqual(body["model"], MODEL)
        self.assertEqual(body["temperature"], 0.1)
        self.assertEqual(body["tools"][0]["function"]["name"], "get_weather")
        self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
        self.assertIn("X-Title", request.headers)

    async def test_usage_and_confirmed_cost(self) -> None:
        usage_frame = {"id": "gen-1", "choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 4}}
        fake = FakeOpenRouter(sse(delta(content="a"), usage_frame, delta(content="b")))
        updates = await self._run(fake)
        running = updates[1][1]
        self.assertEqual(running.tokens, 4)
        self.assertEqual(running.total_tokens, 14)
        self.assertAlmostEqual(running.total_cost, 10 * 0.000001 + 4 * 0.000002)

        final = updates[-1][1]
        self.assertEqual(updates[-1][0], "")
        self.assertEqual(final.tokens, 5)
        self.assertAlmostEqual(final.cost, 5 * 0.000002)
        self.assertEqual(final.total_tokens, 15)
        self.assertAlmostEqual(final.total_cost, 0.00002)
        self.assertEqual(fake.paths("/generation")[0].url.params["id"], "gen-1")

    async def test_tool_call_fragments_merge_by_index(self) -> None:
        fake = FakeOpenRouter(
            sse(
                delta(tool_calls=[{"index": 0, "id": "call_a", "function": {"name": "get_weather", "arguments": '{"ci'}}]),
                delta(tool_calls=[{"index": 0, "function": {"arguments": 'ty":"Paris"}'}}]),
                delta(tool_calls=[{"index": 1, "id": "call_b", "function": {"name": "get_time", "arguments": ""}}]),
            )
        )
        updates = await self._run(fake)
        calls = updates[-1][1].tool_calls
        self.assertEqual([c.id for c in calls], ["call_a", "call_b"])
        self.assertEqual(calls[0].function.name, "get_weather")
        self.assertEqual(calls[0].function.arguments, '{"city":"Paris"}')
        self.assertEqual(updates[0][0], "")

    async def test_reasoning_fragments_are_marked(self) -> None:
        fake = FakeOpenRouter(sse(delta(reasoning="thinking"), delta(content="answer")))
        updates = await self._run(fake)
        self.assertEqual(updates[0][0], REASONING_MARKER + "thinking")
        self.assertEqual(updates[-1][1].reasoning, "thinking")
        self.assertEqual(updates[-1][1].content, "answer")

    async def test_malformed_frames_are_skipped(self) -> None:
        stream = sse(delta(content="a"), "{not json", delta(content="b")) + ": keep-alive\n\n"
        updates = await self._run(FakeOpenRouter(stream))
        self.assertEqual(updates[-1][1].content, "ab")

    async def test_missing_generation_id_fails(self) -> None:
        fake = FakeOpenRouter(sse({"choices": [{"delta": {"content": "hi"}}]}))
        with self.assertRaises(MissingGenerationIdError):
            await self._run(fake)
        self.assertEqual(fake.paths("/generation"), [])

    async def test_non_success_status_raises_transport_error(self) -> None:
        fake = FakeOpenRouter("", chat_status=401)
        with self.assertRaises(TransportError) as ctx:
            await self._run(fake)
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("invalid key", str(ctx.exception))

    async def test_stream_error_frame_raises(self) -> None:
        fake = FakeOpenRouter(sse({"id": "gen-1", "error": {"message": "upstream overloaded"}}))
        with self.assertRaises(TransportError):
            await self._run(fake)

    async def test_cost_confirmation_retries_with_backoff(self) -> None:
        fake = FakeOpenRouter(
            sse(delta(content="a")),
            generation=[httpx.Response(404, text="not ready"), httpx.Response(200, json=GENERATION)],
        )
        updates = await self._run(fake)
        self.assertEqual(len(fake.paths("/generation")), 2)
        self.assertEqual(self.delays, [0.5])
        self.assertEqual(updates[-1][1].total_tokens, 15)

    async def test_cost_confirmation_gives_up_after_five_attempts(self) -> None:
        fake = FakeOpenRouter(sse(delta(content="a")), generation=[httpx.Response(404, text="not ready")])
        with self.assertRaises(GenerationLookupError) as ctx:
            await self._run(fake)
        self.assertEqual(len(fake.paths("/generation")), 5)
        self.assertEqual(self.delays, [0.5, 1.0, 2.0, 4.0])
        self.assertIn("gen-1", str(ctx.exception))
        self.assertIn("5 attempts", str(ctx.exception))


class TestCerebrasSchemas(unittest.TestCase):
    def test_tool_schema_is_stripped_for_cerebras(self) -> None:
        params = {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "count": {"type": "integer", "minimum": 1},
                "tags": {"type": "array", "items": {"type": "string", "pattern": "^a"}},
            },
        }
        tool = Tool("search", "Search", lambda p: "", parameters=params)
        options = ModelOptions.model_validate({"provider": {"only": ["Cerebras"]}})
        body = OpenRouterProvider(LLMStreamSettings()).build_body(MODEL, [], [tool], options)
        schema = body["tools"][0]["function"]["parameters"]
        self.assertNotIn("additionalProperties", schema)
        self.assertNotIn("minimum", schema["properties"]["count"])
        self.assertNotIn("pattern", schema["properties"]["tags"]["items"])
        self.assertEqual(schema["required"], ["count", "tags"])
        self.assertEqual(body["provider"], {"only": ["Cerebras"]})

    def test_other_providers_keep_schema(self) -> None:
        params = {"type": "object", "properties": {"count": {"type": "integer", "minimum": 1}}}
        tool = Tool("search", "Search", lambda p: "", parameters=params)
        body = OpenRouterProvider(LLMStreamSettings()).build_body(MODEL, [], [tool], None)
        self.assertEqual(body["tools"][0]["function"]["parameters"], params)


if __name__ == "__main__":
    unittest.main()
