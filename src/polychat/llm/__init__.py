"""
LLM module for multi-provider AI model support.

Providers:
- Anthropic Claude (native SDK)
- OpenAI GPT (native SDK)
- Google Gemini (native SDK)
- OpenRouter, DeepSeek, xAI (via OpenAI-compatible endpoints)
"""

from .base import (
    BaseLLM,
    ContentPart,
    ImagePart,
    ModelRequest,
    TextPart,
    ToolCall,
    ToolDefinition,
    ToolInvocationPart,
    ToolResultPart,
    Turn,
)
from .deltas import (
    DeltaNormalizer,
    InvalidToolCall,
    NormalizedEvent,
    StopReason,
    TextDelta,
    ToolCallArgumentDelta,
    ToolCallAssembler,
    ToolCallComplete,
    ToolCallStart,
    TurnComplete,
)
from .anthropic import AnthropicLLM
from .openai import OpenAILLM
from .google import GoogleGeminiLLM
from .factory import create_llm

__all__ = [
    "BaseLLM",
    "ContentPart",
    "ImagePart",
    "ModelRequest",
    "TextPart",
    "ToolCall",
    "ToolDefinition",
    "ToolInvocationPart",
    "ToolResultPart",
    "Turn",
    "DeltaNormalizer",
    "InvalidToolCall",
    "NormalizedEvent",
    "StopReason",
    "TextDelta",
    "ToolCallArgumentDelta",
    "ToolCallAssembler",
    "ToolCallComplete",
    "ToolCallStart",
    "TurnComplete",
    "AnthropicLLM",
    "OpenAILLM",
    "GoogleGeminiLLM",
    "create_llm",
]
