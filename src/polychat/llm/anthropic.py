"""
Anthropic Claude LLM provider.
"""

import json
from typing import Any, AsyncIterator

import anthropic
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

_STOP_REASONS = {
    "end_turn": StopReason.STOP,
    "stop_sequence": StopReason.STOP,
    "tool_use": StopReason.TOOL_CALLS,
    "max_tokens": StopReason.LENGTH,
}


class AnthropicDeltaNormalizer(DeltaNormalizer):
    """Messages API stream events to canonical events.

    Content blocks share one index space; only ``tool_use`` blocks open a
    tool call. ``content_block_stop`` completes the block at that index.
    """

    def __init__(self) -> None:
        super().__init__()
        self._initial_input: dict[int, Any] = {}
        self._streamed: set[int] = set()

    def feed(self, event: dict[str, Any]) -> list[NormalizedEvent]:
        event_type = event.get("type")

        if event_type == "error":
            error = event.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise BackendStreamError(f"Anthropic stream error: {message}")
        if self.turn_done:
            return []

        out: list[NormalizedEvent] = []
        index = event.get("index", 0)

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "text":
                if block.get("text"):
                    out.append(TextDelta(block["text"]))
            elif block.get("type") == "tool_use":
                self._initial_input[index] = block.get("input")
                out.extend(self._open_call(index, block.get("id"), block.get("name")))

        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                if delta.get("text"):
                    out.append(TextDelta(delta["text"]))
            elif delta_type == "input_json_delta":
                fragment = delta.get("partial_json")
                if fragment:
                    self._streamed.add(index)
                    out.append(ToolCallArgumentDelta(index=index, fragment=fragment))

        elif event_type == "content_block_stop":
            # A tool with no streamed input still carries its input on the start block
            initial = self._initial_input.get(index)
            if index in self._open and index not in self._streamed and initial is not None:
                out.append(ToolCallArgumentDelta(index=index, fragment=json.dumps(initial)))
            out.extend(self._complete_call(index))

        elif event_type == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason")
            if stop_reason:
                self._stop_reason = _STOP_REASONS.get(stop_reason, StopReason.OTHER)

        elif event_type == "message_stop":
            out.extend(self._end_turn(None))

        return out


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def normalizer(self) -> AnthropicDeltaNormalizer:
        return AnthropicDeltaNormalizer()

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, (
            anthropic.APIConnectionError,
            anthropic.RateLimitError,
            anthropic.InternalServerError,
        )):
            return True
        return super().is_retryable(error)

    def _convert_part(self, part: Any) -> dict[str, Any] | None:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text} if part.text else None
        if isinstance(part, ImagePart):
            if part.data:
                source = {"type": "base64", "media_type": part.media_type, "data": part.data}
            else:
                source = {"type": "url", "url": part.url}
            return {"type": "image", "source": source}
        return None

    def _convert_messages(self, turns: list[Turn]) -> list[dict[str, Any]]:
        """Convert Turns to Anthropic format.

        Consecutive tool turns are folded into one user message, since every
        tool_result for an assistant turn has to arrive together.
        """
        converted: list[dict[str, Any]] = []

        for turn in turns:
            if turn.role == "system":
                continue

            if turn.role == "tool":
                blocks = [
                    {
                        "type": "tool_result",
                        "tool_use_id": result.tool_call_id,
                        "content": render_result(result.result),
                        "is_error": result.is_error,
                    }
                    for result in turn.tool_results
                ]
                previous = converted[-1] if converted else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and all(b.get("type") == "tool_result" for b in previous["content"])
                ):
                    previous["content"].extend(blocks)
                else:
                    converted.append({"role": "user", "content": blocks})
            elif turn.role == "assistant" and turn.tool_invocations:
                content: list[dict[str, Any]] = []
                if turn.text:
                    content.append({"type": "text", "text": turn.text})
                for tc in turn.tool_invocations:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                converted.append({"role": "assistant", "content": content})
            elif isinstance(turn.content, str):
                converted.append({
                    "role": turn.role,
                    "content": turn.content,
                })
            else:
                blocks = [b for b in (self._convert_part(p) for p in turn.parts) if b]
                converted.append({"role": turn.role, "content": blocks})

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _request_kwargs(self, request: ModelRequest) -> dict[str, Any]:
        """Build Messages API arguments for a request."""
        system = self._system_prompt(request)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._max_tokens(request),
            "temperature": self._temperature(request),
            "messages": self._convert_messages(request.turns),
            "stream": True,
        }

        if system:
            kwargs["system"] = system

        if request.tools:
            kwargs["tools"] = self._convert_tools(request.tools)
            if request.tool_choice:
                kwargs["tool_choice"] = {"type": request.tool_choice}

        return kwargs

    async def send(self, request: ModelRequest) -> AsyncIterator[dict[str, Any]]:
        """Stream raw message events from Claude."""
        kwargs = self._request_kwargs(request)

        try:
            stream = await self.client.messages.create(**kwargs)

            async for event in stream:  # type: ignore
                yield event.model_dump()

        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            raise
