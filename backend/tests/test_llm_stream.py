"""Unit tests for llm_stream: messages, options, tools, settings, registry, pricing."""
from __future__ import annotations

import os
import unittest
from unittest.mock import patch

import httpx
from pydantic import BaseModel, ValidationError

from src.llm_stream import (
    LLMStreamSettings,
    Message,
    ModelOptions,
    OllamaProvider,
    OpenRouterProvider,
    PricingResolver,
    ProviderRegistry,
    Tool,
    chat,
    parse_model,
)
from src.llm_stream.models import FunctionCall, ToolCall
from src.llm_stream.pricing import ZERO_PRICING
from src.llm_stream.providers.base import dump_arguments
from src.llm_stream.tools import EMPTY_PARAMETERS, GetTimeTool, describe_parameters


class TestMessage(unittest.TestCase):
    def test_role_is_frozen(self) -> None:
        message = Message(role="user", content="hi")
        with self.assertRaises(ValidationError):
            message.role = "assistant"

    def test_unknown_role_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            Message(role="robot", content="beep")

    def test_to_chat_dict_omits_unset_fields(self) -> None:
        self.assertEqual(
            Message(role="user", content="hi").to_chat_dict(),
            {"role": "user", "content": "hi"},
        )

    def test_to_chat_dict_includes_tool_fields(self) -> None:
        call = ToolCall(id="c1", function=FunctionCall(name="f", arguments="{}"))
        assistant = Message(role="assistant", tool_calls=[call])
        tool = Message(role="tool", content="ok", tool_call_id="c1")
        self.assertEqual(
            assistant.to_chat_dict()["tool_calls"],
            [{"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}],
        )
        self.assertEqual(tool.to_chat_dict()["tool_call_id"], "c1")

    def test_snapshot_does_not_alias(self) -> None:
        message = Message(role="assistant", content="a", tool_calls=[ToolCall(id="x")])
        copy = message.snapshot()
        message.content += "b"
        message.tool_calls[0].function.arguments += "{"
        self.assertEqual(copy.content, "a")
        self.assertEqual(copy.tool_calls[0].function.arguments, "")


class TestModelOptions(unittest.TestCase):
    def test_unset_options_are_not_sent(self) -> None:
        self.assertEqual(ModelOptions().to_request_fields(), {})

    def test_nested_options_use_wire_names(self) -> None:
        options = ModelOptions.model_validate(
            {
                "temperature": 0.2,
                "reasoning": {"enabled": True},
                "response_format": {
                    "type": "json_schema",
                    "json_schema": {"name": "answer", "schema": {"type": "object"}},
                },
            }
        )
        fields = options.to_request_fields()
        self.assertEqual(fields["temperature"], 0.2)
        self.assertEqual(fields["reasoning"], {"enabled": True})
        self.assertEqual(
            fields["response_format"]["json_schema"],
            {"name": "answer", "schema": {"type": "object"}},
        )


class WeatherParams(BaseModel):
    city: str


class TestTools(unittest.IsolatedAsyncioTestCase):
    def test_describe_parameters_variants(self) -> None:
        self.assertEqual(describe_parameters(None), EMPTY_PARAMETERS)
        self.assertIn("city", describe_parameters(WeatherParams)["properties"])
        raw = {"type": "object", "properties": {"q": {"type": "string"}}}
        described = describe_parameters(raw)
        self.assertEqual(described, raw)
        self.assertIsNot(described, raw)
        with self.assertRaises(TypeError):
            describe_parameters(42)

    def test_to_tool_schema(self) -> None:
        tool = Tool("weather", "Look up weather", lambda p: "sunny", parameters=WeatherParams)
        schema = tool.to_tool_schema()
        self.assertEqual(schema["type"], "function")
        self.assertEqual(schema["function"]["name"], "weather")
        self.assertEqual(schema["function"]["parameters"]["required"], ["city"])

    async def test_sync_and_async_handlers(self) -> None:
        async def lookup(params):
            return {"city": params["city"], "temp": 21}

        self.assertEqual(await Tool("a", "", lambda p: "plain").execute({}), "plain")
        self.assertEqual(
            await Tool("b", "", lookup).execute({"city": "Oslo"}),
            '{"city": "Oslo", "temp": 21}',
        )

    async def test_get_time_tool(self) -> None:
        tool = GetTimeTool()
        self.assertEqual(tool.to_tool_schema()["function"]["parameters"], EMPTY_PARAMETERS)
        self.assertIn("T", await tool.execute({}))

    def test_dump_arguments_is_compact(self) -> None:
        self.assertEqual(dump_arguments({"x": 1, "y": [1, 2]}), '{"x":1,"y":[1,2]}')
        self.assertEqual(dump_arguments('{"x": 1}'), '{"x": 1}')
        self.assertEqual(dump_arguments(None), "{}")


class TestSettings(unittest.TestCase):
    def test_from_env(self) -> None:
        env = {
            "OPENROUTER_API_KEY": "sk-test",
            "OLLAMA_HOST": "http://gpu-box:11434/",
            "OLLAMA_STRICT": "0",
            "LLM_STREAM_MODEL": "openrouter:qwen/qwen3-30b-a3b",
            "LLM_STREAM_MAX_TOOL_ROUNDS": "none",
            "LLM_STREAM_TIMEOUT": "12.5",
        }
        with patch.dict(os.environ, env), patch("src.llm_stream.config.load_dotenv"):
            settings = LLMStreamSettings.from_env()
        self.assertEqual(settings.openrouter_api_key, "sk-test")
        self.assertEqual(settings.ollama_host, "http://gpu-box:11434")
        self.assertFalse(settings.ollama_strict)
        self.assertEqual(settings.default_model, "openrouter:qwen/qwen3-30b-a3b")
        self.assertIsNone(settings.max_tool_rounds)
        self.assertEqual(settings.request_timeout, 12.5)

    def test_defaults(self) -> None:
        settings = LLMStreamSettings()
        self.assertTrue(settings.ollama_strict)
        self.assertEqual(settings.cost_confirm_attempts, 5)
        self.assertEqual(settings.max_tool_rounds, 10)


class TestProviderRegistry(unittest.TestCase):
    def test_parse_model(self) -> None:
        self.assertEqual(parse_model("openrouter:qwen/qwen3"), ("openrouter", "qwen/qwen3"))
        self.assertEqual(parse_model("ollama:llama3.2:3b"), ("ollama", "llama3.2:3b"))
        self.assertEqual(parse_model("llama3.2:3b"), ("ollama", "llama3.2:3b"))
        self.assertEqual(parse_model(None, "ollama:mistral"), ("ollama", "mistral"))

    def test_resolve_caches_one_provider_per_backend(self) -> None:
        registry = ProviderRegistry(LLMStreamSettings())
        first, model = registry.resolve("openrouter:a/b")
        second, _ = registry.resolve("openrouter:c/d")
        ollama, _ = registry.resolve("llama3.2")
        self.assertIsInstance(first, OpenRouterProvider)
        self.assertIs(first, second)
        self.assertEqual(model, "a/b")
        self.assertIsInstance(ollama, OllamaProvider)

    def test_unknown_provider(self) -> None:
        with self.assertRaises(ValueError):
            ProviderRegistry().get("gemini")


class TestChatHelper(unittest.IsolatedAsyncioTestCase):
    async def test_chat_returns_final_content(self) -> None:
        body = '{"message":{"role":"assistant","content":"Hello"},"done":false}\n' \
               '{"message":{"role":"assistant","content":" world"},"done":true}\n'
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text=body))
        async with httpx.AsyncClient(transport=transport) as client:
            registry = ProviderRegistry(LLMStreamSettings(ollama_host="http://ollama.test"), client=client)
            reply = await chat([Message(role="user", content="hi")], model="ollama:llama3.2", registry=registry)
        self.assertEqual(reply, "Hello world")


class TestPricingResolver(unittest.IsolatedAsyncioTestCase):
    CATALOG = {
        "data": [
            {"id": "vendor/model", "pricing": {"prompt": "0.000001", "completion": "0.000002"}},
        ]
    }

    async def test_resolve_is_memoized(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=self.CATALOG)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = PricingResolver("https://openrouter.test/api/v1", client=client)
            first = await resolver.resolve("vendor/model", "key")
            second = await resolver.resolve("vendor/model", "key")
        self.assertEqual(first.prompt_price, 0.000001)
        self.assertEqual(first.completion_price, 0.000002)
        self.assertIs(first, second)
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].headers["Authorization"], "Bearer key")

    async def test_failures_return_zero_and_are_not_cached(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500, text="boom")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = PricingResolver("https://openrouter.test/api/v1", client=client)
            with self.assertLogs("src.llm_stream.pricing", level="WARNING"):
                self.assertEqual(await resolver.resolve("vendor/model", "key"), ZERO_PRICING)
                self.assertEqual(await resolver.resolve("vendor/model", "key"), ZERO_PRICING)
        self.assertEqual(len(calls), 2)
        self.assertIsNone(resolver.cached("vendor/model"))

    async def test_unknown_model_returns_zero(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=self.CATALOG))
        async with httpx.AsyncClient(transport=transport) as client:
            resolver = PricingResolver("https://openrouter.test/api/v1", client=client)
            with self.assertLogs("src.llm_stream.pricing", level="WARNING"):
                self.assertEqual(await resolver.resolve("other/model", "key"), ZERO_PRICING)


if __name__ == "__main__":
    unittest.main()
