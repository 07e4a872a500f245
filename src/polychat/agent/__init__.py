"""
Agent module - context management and the agentic loop.

Includes:
- Token estimation for turns and tool definitions
- Context truncation to a model's window
- AgenticLoop: model call -> tool calls -> model call orchestration
"""

from .tokens import estimate_tokens, estimate_total_tokens, estimate_turn_tokens
from .truncation import (
    TruncationOptions,
    TruncationReport,
    TruncationResult,
    shrink_tool_result,
    truncate_context,
)
from .retry import RetryPolicy
from .events import StreamEvent
from .loop import AgenticLoop, IterationState, LoopOutcome, LoopState

__all__ = [
    "estimate_tokens",
    "estimate_total_tokens",
    "estimate_turn_tokens",
    "TruncationOptions",
    "TruncationReport",
    "TruncationResult",
    "shrink_tool_result",
    "truncate_context",
    "RetryPolicy",
    "StreamEvent",
    "AgenticLoop",
    "IterationState",
    "LoopOutcome",
    "LoopState",
]
