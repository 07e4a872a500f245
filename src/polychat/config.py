"""
Configuration management for polychat.

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

Provider = Literal["anthropic", "openai", "google", "openrouter", "deepseek", "xai"]

# Conservative context windows per model family, in tokens
DEFAULT_CONTEXT_LIMITS: dict[str, int] = {
    # OpenAI
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4-turbo": 128000,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 16385,
    "o1": 200000,
    "o1-mini": 128000,
    "o1-preview": 128000,
    "o3": 200000,
    "o3-mini": 200000,
    "gpt-5": 400000,
    # Anthropic
    "claude-3-5-sonnet": 200000,
    "claude-3-opus": 200000,
    "claude-3-sonnet": 200000,
    "claude-3-haiku": 200000,
    "claude-sonnet-4": 200000,
    # Google
    "gemini-2.0-flash": 1048576,
    "gemini-2.5-flash": 1048576,
    "gemini-1.5-pro": 2000000,
    "gemini-1.5-flash": 1048576,
    # Grok
    "grok-2": 131072,
    "grok-3": 2000000,
    # DeepSeek
    "deepseek-chat": 64000,
    "deepseek-reasoner": 64000,
    "default": 8000,
}


def get_model_context_limit(model: str, limits: dict[str, int] | None = None) -> int:
    """Resolve the context window for a model identifier.

    Exact match first, then the longest table key that is contained in the
    model id (or contains it), then the ``default`` entry.
    """
    table = limits if limits is not None else DEFAULT_CONTEXT_LIMITS
    fallback = table.get("default", DEFAULT_CONTEXT_LIMITS["default"])

    if not model:
        return fallback
    if model in table:
        return table[model]

    candidates = [
        key for key in table
        if key != "default" and (key in model or model in key)
    ]
    if not candidates:
        return fallback

    return table[max(candidates, key=len)]


# OpenAI-compatible providers served through the OpenAI SDK
COMPATIBLE_BASE_URLS = {
    "openrouter": "https://openrouter.ai/api/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "xai": "https://api.x.ai/v1",
}


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Provider = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "polychat"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    google_api_key: str = Field(default="", description="Google AI API key for Gemini")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    deepseek_api_key: str = Field(default="", description="DeepSeek API key")
    xai_api_key: str = Field(default="", description="xAI API key for Grok")

    # Default model settings
    default_provider: Provider = "anthropic"
    default_model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = 0.7

    # Agentic loop
    max_iterations: int = Field(default=20, description="Max tool rounds before the forced final answer")
    tool_result_max_tokens: int = Field(default=2000, description="Per-tool-result token ceiling")
    chunk_timeout_seconds: float = Field(default=30.0, description="Inactivity timeout between streamed events")
    backend_max_attempts: int = Field(default=3, description="Attempts for transient backend failures")
    backend_backoff_seconds: float = Field(default=1.0, description="Initial exponential backoff between attempts")
    context_max_retries: int = Field(default=2, description="Retries after a context-length error")

    # Context budget
    context_limits: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CONTEXT_LIMITS))
    reserve_for_response: int = 8192
    reserve_for_system_prompt: int = 2000
    reserve_for_tool_definitions: int = 8000
    safety_buffer_tokens: int = 5000
    minimum_turns_to_keep: int = 2
    max_turn_tokens: int = 4000

    # Tools
    tools_directory: str = Field(default="", description="Directory of user-defined tool modules")
    tavily_api_key: str = Field(default="", description="Tavily API key for web search")
    enable_web_search: bool = True
    enable_browser: bool = True

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/polychat.db",
        description="Database connection URL",
    )

    @field_validator("context_limits", mode="after")
    @classmethod
    def ensure_default_limit(cls, v: dict[str, int]) -> dict[str, int]:
        if "default" not in v:
            v = {**v, "default": DEFAULT_CONTEXT_LIMITS["default"]}
        return v

    def context_limit_for(self, model: str) -> int:
        """Get the context window for a model."""
        return get_model_context_limit(model, self.context_limits)

    def get_llm_config(self, provider: str | None = None, model: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "google": self.google_api_key,
            "openrouter": self.openrouter_api_key,
            "deepseek": self.deepseek_api_key,
            "xai": self.xai_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "google": "gemini-2.5-flash",
            "openrouter": "anthropic/claude-sonnet-4",
            "deepseek": "deepseek-chat",
            "xai": "grok-3",
        }

        if model is None:
            if provider == self.default_provider:
                model = self.default_model
            else:
                model = model_map.get(provider, self.default_model)

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model,
            api_key=api_key_map.get(provider, ""),
            base_url=COMPATIBLE_BASE_URLS.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
