from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_OLLAMA_HOST = "http://localhost:11434"
DEFAULT_MODEL = "ollama:llama3.2"
DEFAULT_MAX_TOOL_ROUNDS = 10


class LLMStreamSettings(BaseModel):
    """Configuration shared by the providers and the conversation runtime."""

    openrouter_api_key: str = Field(
        default="",
        description="Bearer credential for OpenRouter requests.",
    )
    openrouter_base_url: str = Field(
        default=DEFAULT_OPENROUTER_BASE_URL,
        description="Base URL of the OpenRouter API (chat, models and generation endpoints).",
    )
    app_url: str = Field(
        default="https://github.com/markwylde/ailib",
        description="Sent as HTTP-Referer for OpenRouter attribution.",
    )
    app_title: str = Field(
        default="llm-stream",
        description="Sent as X-Title for OpenRouter attribution.",
    )
    ollama_host: str = Field(
        default=DEFAULT_OLLAMA_HOST,
        description="Base URL for the Ollama server.",
    )
    ollama_strict: bool = Field(
        default=True,
        description="Hold back Ollama content until a tool call or the end of the stream is confirmed.",
    )
    request_timeout: float | None = Field(
        default=300.0,
        description="Seconds before an HTTP request is abandoned; None disables the timeout.",
    )
    cost_confirm_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts made to fetch authoritative usage for an OpenRouter generation.",
    )
    cost_confirm_base_delay: float = Field(
        default=0.5,
        ge=0,
        description="Delay in seconds after the first failed usage lookup; doubles per attempt.",
    )
    cost_confirm_max_delay: float = Field(
        default=8.0,
        ge=0,
        description="Upper bound for a single usage lookup backoff delay.",
    )
    default_model: str = Field(
        default=DEFAULT_MODEL,
        description="Model in 'provider:model' form used when none is given.",
    )
    max_tool_rounds: int | None = Field(
        default=DEFAULT_MAX_TOOL_ROUNDS,
        description="Follow-up generations allowed per tool loop; None removes the bound.",
    )

    @classmethod
    def from_env(cls) -> LLMStreamSettings:
        """Build settings from the environment, loading a .env file when present."""
        load_dotenv()
        values: dict[str, object] = {}
        if os.getenv("OPENROUTER_API_KEY"):
            values["openrouter_api_key"] = os.environ["OPENROUTER_API_KEY"]
        if os.getenv("OPENROUTER_BASE_URL"):
            values["openrouter_base_url"] = os.environ["OPENROUTER_BASE_URL"].rstrip("/")
        if os.getenv("OLLAMA_HOST"):
            values["ollama_host"] = os.environ["OLLAMA_HOST"].rstrip("/")
        if os.getenv("OLLAMA_STRICT") is not None:
            values["ollama_strict"] = os.environ["OLLAMA_STRICT"].strip() != "0"
        if os.getenv("LLM_STREAM_MODEL"):
            values["default_model"] = os.environ["LLM_STREAM_MODEL"]
        if os.getenv("LLM_STREAM_TIMEOUT"):
            values["request_timeout"] = float(os.environ["LLM_STREAM_TIMEOUT"])
        rounds = os.getenv("LLM_STREAM_MAX_TOOL_ROUNDS")
        if rounds:
            values["max_tool_rounds"] = None if rounds.strip().lower() == "none" else int(rounds)
        return cls(**values)


DEFAULT_SETTINGS = LLMStreamSettings()
