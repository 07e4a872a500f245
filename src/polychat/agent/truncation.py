"""
Context truncation - keeps a conversation inside a model's context window.

Strategy:
1. Shrink any single oversized turn in place (tool results are summarized,
   plain text is hard-cut with a marker)
2. If the history still does not fit, keep system turns and a protected
   tail around the most recent user turn, and drop the oldest turns in
   between until the budget is met

Oldest-first removal keeps the active task intact at the cost of older
background context. The most recent user turn is never removed, even when
the protected tail alone is over budget.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any

import structlog

from ..llm.base import TextPart, ToolResultPart, Turn
from .tokens import CHARS_PER_TOKEN, estimate_tokens, estimate_total_tokens, estimate_turn_tokens

logger = structlog.get_logger()

TRUNCATION_MARKER = "\n\n[Content truncated due to length...]"

ARRAY_PREVIEW_ITEMS = 3
OBJECT_KEY_THRESHOLD = 10
OBJECT_PREVIEW_KEYS = 5

CONTEXT_ERROR_PATTERNS = (
    "context length",
    "context_length",
    "token limit",
    "tokens exceed",
    "maximum context",
    "max_tokens",
    "too many tokens",
    "prompt is too long",
    "input too long",
    "request too large",
    "content too long",
    "context window",
    "sequence length",
)


@dataclass
class TruncationOptions:
    """Reserves and limits for one truncation pass."""

    reserve_for_response: int = 8192
    reserve_for_system_prompt: int = 2000
    reserve_for_tool_definitions: int = 8000  # 0 when tools are disabled
    safety_buffer_tokens: int = 5000
    minimum_turns_to_keep: int = 2
    max_turn_tokens: int = 4000

    @property
    def total_reserved(self) -> int:
        return (
            self.reserve_for_response
            + self.reserve_for_system_prompt
            + self.reserve_for_tool_definitions
            + self.safety_buffer_tokens
        )


@dataclass
class TruncationReport:
    """What a truncation pass did."""

    original_turn_count: int
    final_turn_count: int
    original_token_estimate: int
    final_token_estimate: int
    removed_turn_count: int = 0
    was_truncated: bool = False
    over_budget: bool = False
    available_tokens: int = 0


@dataclass
class TruncationResult:
    """A possibly shortened history plus its report."""

    turns: list[Turn]
    report: TruncationReport = field(repr=False)


def truncate_string(text: str, max_tokens: int) -> str:
    """Hard-cut a string to roughly ``max_tokens`` and append a marker."""
    if estimate_tokens(text) <= max_tokens:
        return text

    max_chars = max(0, math.floor(max_tokens * CHARS_PER_TOKEN * 0.9))
    return text[:max_chars] + TRUNCATION_MARKER


def _dump(value: Any, indent: int | None = None) -> str:
    return json.dumps(value, indent=indent, default=str)


def _summarize_array(result: list[Any], max_tokens: int) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "truncated": True,
        "originalLength": len(result),
        "preview": result[:ARRAY_PREVIEW_ITEMS],
        "message": (
            f"Array truncated from {len(result)} items to "
            f"{min(len(result), ARRAY_PREVIEW_ITEMS)} for context limit"
        ),
    }
    if estimate_tokens(_dump(summary)) > max_tokens:
        item_budget = max(1, max_tokens // (ARRAY_PREVIEW_ITEMS + 1))
        summary["preview"] = [
            truncate_string(_dump(item), item_budget) for item in result[:ARRAY_PREVIEW_ITEMS]
        ]
    return summary


def _summarize_object(result: dict[str, Any], max_tokens: int) -> dict[str, Any]:
    keys = list(result.keys())
    preview_keys = keys[:OBJECT_PREVIEW_KEYS]

    summary: dict[str, Any] = {"truncated": True, "originalKeyCount": len(keys)}
    for key in preview_keys:
        summary[key] = result[key]
    summary["remainingKeys"] = keys[OBJECT_PREVIEW_KEYS:]

    if estimate_tokens(_dump(summary)) > max_tokens:
        value_budget = max(1, max_tokens // (OBJECT_PREVIEW_KEYS + 2))
        for key in preview_keys:
            summary[key] = truncate_string(_dump(result[key]), value_budget)
    if estimate_tokens(_dump(summary)) > max_tokens:
        summary["remainingKeys"] = keys[OBJECT_PREVIEW_KEYS:OBJECT_PREVIEW_KEYS + 20]
        summary["remainingKeyCount"] = len(keys) - OBJECT_PREVIEW_KEYS
    return summary


def shrink_tool_result(result: Any, max_tokens: int = 4000) -> Any:
    """Bound a tool result to roughly ``max_tokens``.

    Returns the result itself when it already fits. Otherwise arrays become
    a preview summary, objects with many keys keep their first few pairs and
    list the rest, and everything else is cut as a string.
    """
    result_str = result if isinstance(result, str) else _dump(result, indent=2)
    current_tokens = estimate_tokens(result_str)

    if current_tokens <= max_tokens:
        return result

    logger.info(
        "Truncating tool result",
        from_tokens=current_tokens,
        to_tokens=max_tokens,
    )

    if isinstance(result, (list, tuple)):
        return _summarize_array(list(result), max_tokens)

    if isinstance(result, dict) and len(result) > OBJECT_KEY_THRESHOLD:
        return _summarize_object(result, max_tokens)

    return truncate_string(result_str, max_tokens)


def _shrink_turn(turn: Turn, max_tokens: int) -> Turn:
    """Shrink a single oversized tool turn or structured user turn."""
    if turn.role != "tool" and not (turn.role == "user" and not isinstance(turn.content, str)):
        return turn

    turn_tokens = estimate_turn_tokens(turn)
    if turn_tokens <= max_tokens:
        return turn

    logger.info("Truncating oversized turn", role=turn.role, tokens=turn_tokens)

    if isinstance(turn.content, str):
        return turn.with_content(truncate_string(turn.content, max_tokens), truncated=True)

    parts = []
    for part in turn.content:
        if isinstance(part, ToolResultPart):
            part = ToolResultPart(
                tool_call_id=part.tool_call_id,
                name=part.name,
                result=shrink_tool_result(part.result, max_tokens // 2),
                is_error=part.is_error,
            )
        elif isinstance(part, TextPart):
            part = TextPart(truncate_string(part.text, max_tokens))
        parts.append(part)
    return turn.with_content(parts, truncated=True)


def _drop_orphaned_results(kept: list[Turn], original: list[Turn]) -> list[Turn]:
    """Drop tool turns whose invoking assistant turn was removed."""
    original_ids = {inv.id for t in original for inv in t.tool_invocations}
    kept_ids = {inv.id for t in kept for inv in t.tool_invocations}
    orphaned = original_ids - kept_ids
    if not orphaned:
        return kept

    result = []
    for turn in kept:
        ids = {r.tool_call_id for r in turn.tool_results}
        if turn.role == "tool" and ids and ids <= orphaned:
            continue
        result.append(turn)
    return result


def truncate_context(
    turns: list[Turn],
    context_limit: int,
    options: TruncationOptions | None = None,
) -> TruncationResult:
    """Truncate conversation history to fit within a model's context limit.

    Never raises. If even the protected tail is over budget it is returned
    anyway and ``report.over_budget`` is set.
    """
    options = options or TruncationOptions()

    available_tokens = max(0, context_limit - options.total_reserved)
    original_turn_count = len(turns)
    original_tokens = estimate_total_tokens(turns)

    logger.debug(
        "Checking context",
        tokens=original_tokens,
        available=available_tokens,
        context_limit=context_limit,
    )

    # First pass: shrink individual oversized turns
    shrunk = [_shrink_turn(turn, options.max_turn_tokens) for turn in turns]
    current_tokens = estimate_total_tokens(shrunk)

    if current_tokens <= available_tokens:
        return TruncationResult(
            turns=shrunk,
            report=TruncationReport(
                original_turn_count=original_turn_count,
                final_turn_count=len(shrunk),
                original_token_estimate=original_tokens,
                final_token_estimate=current_tokens,
                removed_turn_count=0,
                was_truncated=current_tokens != original_tokens,
                available_tokens=available_tokens,
            ),
        )

    logger.info(
        "Truncating context",
        tokens=current_tokens,
        available=available_tokens,
    )

    system_turns = [t for t in shrunk if t.role == "system"]
    conversation = [t for t in shrunk if t.role != "system"]

    last_user_index = -1
    for i in range(len(conversation) - 1, -1, -1):
        if conversation[i].role == "user":
            last_user_index = i
            break

    if last_user_index == -1:
        keep_end = min(len(conversation), options.minimum_turns_to_keep)
    else:
        keep_end = min(
            len(conversation),
            max(options.minimum_turns_to_keep, len(conversation) - last_user_index + 2),
        )

    split = len(conversation) - keep_end
    middle = conversation[:split]
    tail = conversation[split:]

    # Remove oldest turns first
    removed = 0
    while current_tokens > available_tokens and middle:
        dropped = middle.pop(0)
        current_tokens -= estimate_turn_tokens(dropped)
        removed += 1

    final_turns = system_turns + middle + tail
    if removed:
        final_turns = _drop_orphaned_results(final_turns, shrunk)
    final_tokens = estimate_total_tokens(final_turns)

    report = TruncationReport(
        original_turn_count=original_turn_count,
        final_turn_count=len(final_turns),
        original_token_estimate=original_tokens,
        final_token_estimate=final_tokens,
        removed_turn_count=original_turn_count - len(final_turns),
        was_truncated=True,
        over_budget=final_tokens > available_tokens,
        available_tokens=available_tokens,
    )

    if report.over_budget:
        logger.warning(
            "Protected context still exceeds budget",
            tokens=final_tokens,
            available=available_tokens,
        )

    logger.info(
        "Truncation complete",
        original_turns=original_turn_count,
        final_turns=report.final_turn_count,
        original_tokens=original_tokens,
        final_tokens=final_tokens,
    )

    return TruncationResult(turns=final_turns, report=report)


def is_context_length_error(error: BaseException) -> bool:
    """Check whether a provider error means the prompt was too long."""
    message = getattr(error, "message", None) or str(error)
    message_lower = str(message).lower()
    return any(pattern in message_lower for pattern in CONTEXT_ERROR_PATTERNS)


def escalated_limit(context_limit: int, attempt: int) -> int:
    """Shrink the context limit for the n-th retry after a context error."""
    if attempt <= 0:
        return context_limit
    factor = max(0.1, 0.8 - 0.1 * attempt)
    return int(context_limit * factor)
