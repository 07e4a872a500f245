"""
LLM factory for creating provider instances.

Supports: Anthropic Claude, OpenAI GPT, Google Gemini (native), and the
OpenAI-compatible endpoints of OpenRouter, DeepSeek and xAI.
"""

from ..config import COMPATIBLE_BASE_URLS, LLMConfig, Settings
from .anthropic import AnthropicLLM
from .base import BaseLLM
from .openai import OpenAILLM


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Create an LLM instance based on configuration.

    Provider routing:
    - anthropic -> AnthropicLLM (native Anthropic SDK)
    - openai -> OpenAILLM (native OpenAI SDK)
    - google -> GoogleGeminiLLM (native Gemini SDK)
    - openrouter / deepseek / xai -> OpenAILLM (OpenAI-compatible endpoint)
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    provider = config.provider

    if provider == "anthropic":
        return AnthropicLLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider == "openai":
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider == "google":
        from .google import GoogleGeminiLLM
        return GoogleGeminiLLM(
            api_key=config.api_key,
            model=config.model,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider in COMPATIBLE_BASE_URLS:
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url or COMPATIBLE_BASE_URLS[provider],
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            provider=provider,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")
