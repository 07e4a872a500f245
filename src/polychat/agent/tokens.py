"""
Token estimation.

A heuristic, not a tokenizer: counts are deliberately high so that a history
judged to fit really does fit on every provider.
"""

import json
import math
from collections.abc import Iterable, Mapping
from typing import Any

from ..llm.base import ImagePart, TextPart, ToolDefinition, ToolInvocationPart, ToolResultPart, Turn

# Real tokenizers average ~3.5-4 chars per token
CHARS_PER_TOKEN = 3.2

SAFETY_BUFFER_PERCENT = 0.05
SAFETY_BUFFER_FLAT = 10

# Role markers and message framing
TURN_OVERHEAD_TOKENS = 4

# Flat cost of one image, roughly a few vision tiles
IMAGE_TOKENS = 500


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def estimate_tokens(text: str | None) -> int:
    """Estimate the token count of a string."""
    if not text:
        return 0
    base = math.ceil(len(text) / CHARS_PER_TOKEN)
    margin = math.ceil(base * SAFETY_BUFFER_PERCENT) + SAFETY_BUFFER_FLAT
    return base + margin


def _estimate_part(part: Any) -> int:
    if isinstance(part, TextPart):
        return estimate_tokens(part.text)
    if isinstance(part, ToolInvocationPart):
        return estimate_tokens(part.name) + estimate_tokens(_to_text(part.arguments))
    if isinstance(part, ToolResultPart):
        return estimate_tokens(_to_text(part.result))
    if isinstance(part, ImagePart):
        return IMAGE_TOKENS

    # Provider-shaped dict parts
    if isinstance(part, Mapping):
        part_type = part.get("type")
        if part_type in ("image", "image_url"):
            return IMAGE_TOKENS
        if part_type == "text":
            return estimate_tokens(part.get("text"))
        if part_type in ("tool_result", "tool-result"):
            return estimate_tokens(_to_text(part.get("result", part.get("content"))))
        if part_type == "tool_use":
            return estimate_tokens(_to_text(part.get("input") or {}))
    return 0


def estimate_turn_tokens(turn: Turn | Mapping[str, Any]) -> int:
    """Estimate tokens for one turn, including role overhead."""
    content = turn.content if isinstance(turn, Turn) else turn.get("content")

    tokens = TURN_OVERHEAD_TOKENS
    if isinstance(content, str):
        tokens += estimate_tokens(content)
    elif isinstance(content, Iterable):
        tokens += sum(_estimate_part(part) for part in content)
    return tokens


def estimate_total_tokens(turns: Iterable[Turn | Mapping[str, Any]]) -> int:
    """Estimate total tokens for a sequence of turns."""
    return sum(estimate_turn_tokens(turn) for turn in turns)


def estimate_definitions_tokens(definitions: Iterable[ToolDefinition]) -> int:
    """Estimate what a set of tool definitions costs inside a request."""
    return sum(
        estimate_tokens(_to_text({
            "name": d.name,
            "description": d.description,
            "parameters": d.parameters,
        }))
        for d in definitions
    )
