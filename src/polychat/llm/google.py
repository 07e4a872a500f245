"""
Native Google Gemini LLM provider.

Uses the google-generativeai SDK directly. Gemini streams function calls as
whole parts (no argument fragments), so the normalizer emits each one as a
start / single fragment / complete triple.
"""

import base64
import json
from collections.abc import Mapping
from typing import Any, AsyncIterator

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

# Keys of the JSON Schema subset Gemini function declarations accept
_SCHEMA_KEYS = {"type", "description", "properties", "required", "items", "enum", "format", "nullable"}

_RETRYABLE_ERRORS = {"ServiceUnavailable", "ResourceExhausted", "DeadlineExceeded", "InternalServerError"}


def _to_plain(value: Any) -> Any:
    """Convert proto map/repeated composites into plain JSON values."""
    if isinstance(value, Mapping):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)) or (
        hasattr(value, "__iter__") and not isinstance(value, (str, bytes, dict))
    ):
        return [_to_plain(v) for v in value]
    return value


def _clean_schema(schema: Any) -> Any:
    if not isinstance(schema, dict):
        return schema
    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: _clean_schema(prop) for name, prop in value.items()}
        elif key == "items":
            cleaned[key] = _clean_schema(value)
        else:
            cleaned[key] = value
    return cleaned


class GeminiDeltaNormalizer(DeltaNormalizer):
    """Gemini ``generate_content`` chunks to canonical events."""

    def __init__(self) -> None:
        super().__init__()
        self._next_index = 0

    def feed(self, chunk: dict[str, Any]) -> list[NormalizedEvent]:
        if chunk.get("error"):
            raise BackendStreamError(f"Gemini stream error: {chunk['error']}")
        if self.turn_done:
            return []

        out: list[NormalizedEvent] = []
        candidates = chunk.get("candidates") or []
        if not candidates:
            return out
        candidate = candidates[0]

        for part in (candidate.get("content") or {}).get("parts") or []:
            function_call = part.get("function_call")
            if function_call and function_call.get("name"):
                index = self._next_index
                self._next_index += 1
                name = function_call["name"]
                call_id = function_call.get("id") or f"gemini_{name}_{index}"
                out.extend(self._open_call(index, call_id, name))
                out.append(ToolCallArgumentDelta(
                    index=index,
                    fragment=json.dumps(function_call.get("args") or {}),
                ))
                out.extend(self._complete_call(index))
            elif part.get("text"):
                out.append(TextDelta(part["text"]))

        finish_reason = candidate.get("finish_reason")
        if finish_reason and finish_reason != "FINISH_REASON_UNSPECIFIED":
            if finish_reason == "STOP":
                # Gemini reports STOP even when the turn ends in function calls
                stop = StopReason.TOOL_CALLS if self._next_index else StopReason.STOP
            elif finish_reason == "MAX_TOKENS":
                stop = StopReason.LENGTH
            else:
                stop = StopReason.OTHER
            out.extend(self._end_turn(stop))

        return out


class GoogleGeminiLLM(BaseLLM):
    """Native Google Gemini LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self._client = None

    def _get_client(self):
        """Lazy-initialize the Gemini client."""
        if self._client is None:
            try:
                import google.generativeai as genai
                genai.configure(api_key=self.api_key)
                self._client = genai
            except ImportError:
                raise ImportError(
                    "google-generativeai not installed. "
                    "Run: pip install google-generativeai"
                )
        return self._client

    @property
    def provider_name(self) -> str:
        return "google"

    def normalizer(self) -> GeminiDeltaNormalizer:
        return GeminiDeltaNormalizer()

    def is_retryable(self, error: BaseException) -> bool:
        if type(error).__name__ in _RETRYABLE_ERRORS:
            return True
        return super().is_retryable(error)

    def _convert_messages(self, turns: list[Turn]) -> list[dict[str, Any]]:
        """Convert Turns to Gemini format.

        Gemini uses 'user' and 'model' roles, and has a different
        structure for tool calls/results.
        """
        converted: list[dict[str, Any]] = []

        for turn in turns:
            if turn.role == "system":
                continue  # System prompt handled separately

            if turn.role == "tool":
                parts = [
                    {
                        "function_response": {
                            "name": result.name or "unknown",
                            "response": {"result": render_result(result.result)},
                        }
                    }
                    for result in turn.tool_results
                ]
                previous = converted[-1] if converted else None
                if previous and previous.get("_tool_results"):
                    previous["parts"].extend(parts)
                else:
                    converted.append({"role": "user", "parts": parts, "_tool_results": True})
            elif turn.role == "assistant":
                parts = []
                if turn.text:
                    parts.append({"text": turn.text})
                for tc in turn.tool_invocations:
                    parts.append({
                        "function_call": {
                            "name": tc.name,
                            "args": tc.arguments,
                        }
                    })
                converted.append({"role": "model", "parts": parts})
            elif turn.role == "user":
                parts = []
                for part in turn.parts:
                    if isinstance(part, TextPart):
                        parts.append({"text": part.text})
                    elif isinstance(part, ImagePart):
                        if part.data:
                            parts.append({
                                "inline_data": {
                                    "mime_type": part.media_type,
                                    "data": base64.b64decode(part.data),
                                }
                            })
                        else:
                            parts.append({"text": f"[Image: {part.url}]"})
                converted.append({"role": "user", "parts": parts})

        for message in converted:
            message.pop("_tool_results", None)
        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Gemini function declarations."""
        function_declarations = [
            {
                "name": tool.name,
                "description": tool.description,
                "parameters": _clean_schema(tool.parameters),
            }
            for tool in tools
        ]
        return [{"function_declarations": function_declarations}]

    def _chunk_to_dict(self, chunk: Any) -> dict[str, Any]:
        candidates = []
        for candidate in getattr(chunk, "candidates", None) or []:
            parts = []
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                function_call = getattr(part, "function_call", None)
                if function_call and function_call.name:
                    parts.append({
                        "function_call": {
                            "name": function_call.name,
                            "args": _to_plain(function_call.args) if function_call.args else {},
                        }
                    })
                elif getattr(part, "text", None):
                    parts.append({"text": part.text})
            finish_reason = getattr(candidate, "finish_reason", None)
            candidates.append({
                "content": {"parts": parts},
                "finish_reason": getattr(finish_reason, "name", None) if finish_reason else None,
            })
        return {"candidates": candidates}

    def _generate_kwargs(self, request: ModelRequest) -> dict[str, Any]:
        """Build ``generate_content_async`` arguments for a request."""
        generate_kwargs: dict[str, Any] = {
            "contents": self._convert_messages(request.turns),
            "stream": True,
        }

        if request.tools:
            generate_kwargs["tools"] = self._convert_tools(request.tools)
            if request.tool_choice:
                generate_kwargs["tool_config"] = {
                    "function_calling_config": {"mode": request.tool_choice.upper()}
                }

        return generate_kwargs

    async def send(self, request: ModelRequest) -> AsyncIterator[dict[str, Any]]:
        """Stream chunks from Gemini."""
        genai = self._get_client()

        generation_config = {
            "max_output_tokens": self._max_tokens(request),
            "temperature": self._temperature(request),
        }

        model_kwargs: dict[str, Any] = {
            "model_name": self.model,
            "generation_config": generation_config,
        }

        system = self._system_prompt(request)
        if system:
            model_kwargs["system_instruction"] = system

        model = genai.GenerativeModel(**model_kwargs)

        generate_kwargs = self._generate_kwargs(request)

        try:
            response = await model.generate_content_async(**generate_kwargs)

            async for chunk in response:
                yield self._chunk_to_dict(chunk)

        except Exception as e:
            logger.error("Gemini streaming error", error=str(e))
            raise
