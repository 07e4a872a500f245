"""
OpenAI GPT LLM provider (also works with OpenRouter, DeepSeek, xAI and other
compatible APIs).
"""

import json
from typing import Any, AsyncIterator

import openai
import structlog

from ..errors import BackendStreamError
from .base import BaseLLM, ImagePart, ModelRequest, TextPart, ToolDefinition, Turn, render_result
from .deltas import (
    DeltaNormalizer,
    NormalizedEvent,
    StopReason,
    TextDelta,
    ToolCallArgumentDelta,
)

logger = structlog.get_logger()

_FINISH_REASONS = {
    "stop": StopReason.STOP,
    "tool_calls": StopReason.TOOL_CALLS,
    "function_call": StopReason.TOOL_CALLS,
    "length": StopReason.LENGTH,
}


class OpenAIDeltaNormalizer(DeltaNormalizer):
    """Chat-completion chunks to canonical events.

    Tool calls are keyed by ``delta.tool_calls[].index``; the id and function
    name come with the first fragment only. The chunk carrying
    ``finish_reason`` completes every open call.
    """

    def feed(self, chunk: dict[str, Any]) -> list[NormalizedEvent]:
        if chunk.get("error"):
            error = chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise BackendStreamError(f"OpenAI stream error: {message}")
        if self.turn_done:
            return []

        out: list[NormalizedEvent] = []
        for choice in chunk.get("choices") or []:
            if choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta") or {}

            content = delta.get("content")
            if content:
                out.append(TextDelta(content))

            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                function = tc.get("function") or {}
                out.extend(self._open_call(index, tc.get("id"), function.get("name")))
                fragment = function.get("arguments")
                if fragment:
                    out.append(ToolCallArgumentDelta(index=index, fragment=fragment))

            finish_reason = choice.get("finish_reason")
            if finish_reason:
                out.extend(self._end_turn(
                    _FINISH_REASONS.get(finish_reason, StopReason.OTHER),
                    complete_open=True,
                ))
        return out


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        provider: str = "openai",
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self._provider = provider
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return self._provider

    def normalizer(self) -> OpenAIDeltaNormalizer:
        return OpenAIDeltaNormalizer()

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, (
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        )):
            return True
        return super().is_retryable(error)

    def _convert_messages(self, turns: list[Turn]) -> list[dict[str, Any]]:
        """Convert Turns to OpenAI format."""
        converted: list[dict[str, Any]] = []

        for turn in turns:
            if turn.role == "system":
                continue

            if turn.role == "tool":
                for result in turn.tool_results:
                    converted.append({
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "content": render_result(result.result),
                    })
            elif turn.role == "assistant" and turn.tool_invocations:
                tool_calls = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in turn.tool_invocations
                ]
                converted.append({
                    "role": "assistant",
                    "content": turn.text or None,
                    "tool_calls": tool_calls,
                })
            elif any(isinstance(p, ImagePart) for p in turn.parts):
                content: list[dict[str, Any]] = []
                for part in turn.parts:
                    if isinstance(part, TextPart):
                        content.append({"type": "text", "text": part.text})
                    elif isinstance(part, ImagePart):
                        url = part.url or f"data:{part.media_type};base64,{part.data}"
                        content.append({"type": "image_url", "image_url": {"url": url}})
                converted.append({"role": turn.role, "content": content})
            else:
                converted.append({
                    "role": turn.role,
                    "content": turn.text,
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def _request_kwargs(self, request: ModelRequest) -> dict[str, Any]:
        """Build chat-completion arguments for a request."""
        converted_messages = self._convert_messages(request.turns)

        system = self._system_prompt(request)
        if system:
            converted_messages.insert(0, {"role": "system", "content": system})

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._max_tokens(request),
            "temperature": self._temperature(request),
            "messages": converted_messages,
            "stream": True,
        }

        if request.tools:
            kwargs["tools"] = self._convert_tools(request.tools)
            if request.tool_choice:
                kwargs["tool_choice"] = request.tool_choice

        return kwargs

    async def send(self, request: ModelRequest) -> AsyncIterator[dict[str, Any]]:
        """Stream chat-completion chunks from GPT."""
        kwargs = self._request_kwargs(request)

        try:
            stream = await self.client.chat.completions.create(**kwargs)

            async for chunk in stream:  # type: ignore
                yield chunk.model_dump()

        except openai.APIError as e:
            logger.error("OpenAI streaming error", error=str(e))
            raise
