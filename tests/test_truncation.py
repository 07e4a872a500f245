"""
Tests for token estimation and context truncation.
"""

import json

import pytest

from polychat.agent.tokens import (
    IMAGE_TOKENS,
    TURN_OVERHEAD_TOKENS,
    estimate_definitions_tokens,
    estimate_tokens,
    estimate_total_tokens,
    estimate_turn_tokens,
)
from polychat.agent.truncation import (
    TRUNCATION_MARKER,
    TruncationOptions,
    escalated_limit,
    is_context_length_error,
    shrink_tool_result,
    truncate_context,
    truncate_string,
)
from polychat.llm.base import ImagePart, TextPart, ToolCall, ToolDefinition, Turn


NO_RESERVES = TruncationOptions(
    reserve_for_response=0,
    reserve_for_system_prompt=0,
    reserve_for_tool_definitions=0,
    safety_buffer_tokens=0,
)


def test_estimate_tokens_empty():
    """Empty text costs nothing."""
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0


def test_estimate_tokens_heuristic():
    """Estimates follow the characters-per-token rule plus margin."""
    # 32 chars -> 10 base tokens, 1 percent margin, 10 flat
    assert estimate_tokens("a" * 32) == 21
    assert estimate_tokens("a" * 3200) == 1000 + 50 + 10


def test_estimate_tokens_is_monotonic():
    """Longer text never estimates lower."""
    previous = 0
    for length in range(0, 2000, 37):
        current = estimate_tokens("x" * length)
        assert current >= previous
        previous = current


def test_turn_overhead_and_images():
    """Turns add role overhead and a flat cost per image."""
    turn = Turn.user([TextPart("a" * 32), ImagePart(url="https://example.com/cat.png")])

    assert estimate_turn_tokens(turn) == TURN_OVERHEAD_TOKENS + 21 + IMAGE_TOKENS


def test_estimate_dict_turns():
    """Plain dict messages are estimated like turns."""
    turns = [{"role": "user", "content": "a" * 32}, {"role": "assistant", "content": [{"type": "text", "text": "a" * 32}]}]

    assert estimate_total_tokens(turns) == 2 * (TURN_OVERHEAD_TOKENS + 21)


def test_estimate_definitions_tokens():
    """Tool definitions are estimated by their JSON size."""
    small = ToolDefinition(name="a", description="b", parameters={})
    large = ToolDefinition(name="a", description="b" * 3200, parameters={})

    assert estimate_definitions_tokens([]) == 0
    assert estimate_definitions_tokens([small, large]) > estimate_definitions_tokens([large]) > 1000


def test_truncate_string_adds_marker():
    """Cut strings end with the truncation marker."""
    text = "z" * 10000

    cut = truncate_string(text, 100)

    assert cut.endswith(TRUNCATION_MARKER)
    assert len(cut) < len(text)
    assert truncate_string("short", 100) == "short"


def test_shrink_tool_result_returns_original_when_it_fits():
    """Small results are returned unchanged."""
    result = {"temperature": 21}

    assert shrink_tool_result(result, 100) is result


def test_shrink_large_object():
    """Objects with many keys keep the first few and list the rest."""
    result = {f"key_{i}": "v" * 200 for i in range(50)}

    shrunk = shrink_tool_result(result, 1000)

    assert shrunk["truncated"] is True
    assert shrunk["originalKeyCount"] == 50
    assert "key_0" in shrunk and "key_4" in shrunk
    assert "key_5" not in shrunk
    assert shrunk["remainingKeys"][0] == "key_5"
    assert estimate_tokens(json.dumps(shrunk)) <= 1000


def test_shrink_small_object_with_huge_value_is_cut_as_string():
    """Small objects with huge values are cut as text."""
    shrunk = shrink_tool_result({"body": "b" * 20000}, 500)

    assert isinstance(shrunk, str)
    assert shrunk.endswith(TRUNCATION_MARKER)


def make_history(count: int, chars: int = 3200) -> list[Turn]:
    turns = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        turns.append(Turn(role=role, content=f"{i}:" + "x" * chars))
    return turns


def test_history_that_fits_is_untouched():
    """History within budget is returned as is."""
    history = make_history(4, chars=100)

    result = truncate_context(history, 128000)

    assert result.turns == history
    assert result.report.was_truncated is False
    assert result.report.removed_turn_count == 0


def test_oversized_history_is_reduced():
    """Long history is reduced and keeps the latest user turn."""
    history = make_history(500)
    history.append(Turn.user("latest"))

    result = truncate_context(history, 8000)

    assert result.report.was_truncated is True
    assert result.report.original_turn_count == 501
    assert result.report.final_turn_count < 500
    assert result.turns[-1].content == "latest"
    assert result.report.removed_turn_count == 501 - len(result.turns)


def test_oldest_turns_are_removed_first():
    """Removal starts from the oldest turns."""
    history = make_history(20)
    history.append(Turn.user("latest"))

    result = truncate_context(history, 6000, NO_RESERVES)

    kept = [t.content.split(":")[0] for t in result.turns[:-1]]
    assert kept == sorted(kept, key=int)
    assert int(kept[0]) > 0
    assert result.report.final_token_estimate <= 6000


def test_system_turns_are_kept():
    """System turns are never removed."""
    history = [Turn.system("You are helpful.")] + make_history(20)
    history.append(Turn.user("latest"))

    result = truncate_context(history, 5000, NO_RESERVES)

    assert result.turns[0].role == "system"
    assert result.report.removed_turn_count > 0


def test_tail_after_last_user_turn_is_protected():
    """The latest exchange stays whole."""
    history = make_history(10)
    history += [
        Turn.user("question"),
        Turn.assistant("", tool_calls=[ToolCall(id="c1", name="search", arguments={"q": "x"})]),
        Turn.tool_result("c1", "search", "result " * 400),
    ]

    result = truncate_context(history, 3000, NO_RESERVES)

    assert [t.role for t in result.turns[-3:]] == ["user", "assistant", "tool"]
    assert result.turns[-3].content == "question"


def test_over_budget_tail_is_returned_anyway():
    """An oversized latest turn is kept and flagged."""
    history = [Turn.user("q" * 40000)]

    result = truncate_context(history, 8000)

    assert len(result.turns) == 1
    assert result.report.over_budget is True


def test_tool_result_turns_are_shrunk():
    """Oversized tool results are shrunk without touching the input."""
    big = [{"id": i, "payload": "p" * 50} for i in range(2000)]
    history = [
        Turn.user("list everything"),
        Turn.assistant("", tool_calls=[ToolCall(id="c1", name="list", arguments={})]),
        Turn.tool_result("c1", "list", big),
    ]

    result = truncate_context(history, 128000)

    shrunk = result.turns[-1].tool_results[0].result
    assert shrunk["originalLength"] == 2000
    assert result.turns[-1].metadata["truncated"] is True
    # Input turns are never mutated
    assert history[-1].tool_results[0].result is big


def test_orphaned_tool_results_are_dropped():
    """Tool results whose invoking turn was removed go too."""
    history = [
        Turn.user("old question"),
        Turn.assistant("", tool_calls=[ToolCall(id="old", name="search", arguments={"q": "x" * 3000})]),
        Turn.tool_result("old", "search", "r" * 100),
        Turn.user("q2"),
        Turn.assistant("a2"),
        Turn.user("latest"),
    ]

    # Budget is met once the invoking turn is gone, leaving its result behind
    result = truncate_context(history, 500, NO_RESERVES)

    assert [t.role for t in result.turns] == ["user", "assistant", "user"]
    assert result.report.removed_turn_count == 3


def test_truncation_is_idempotent():
    """Truncating a truncated history changes nothing."""
    history = make_history(100)
    history.append(Turn.user("latest"))

    first = truncate_context(history, 40000)
    second = truncate_context(first.turns, 40000)

    assert second.turns == first.turns
    assert second.report.removed_turn_count == 0


@pytest.mark.parametrize(
    "message",
    [
        "This model's maximum context length is 128000 tokens",
        "prompt is too long: 210000 tokens > 200000 maximum",
        "Request too large for gpt-4",
        "input exceeds the context window",
    ],
)
def test_context_length_errors_are_recognized(message):
    """Provider context-length messages are recognized."""
    assert is_context_length_error(RuntimeError(message)) is True


def test_other_errors_are_not_context_errors():
    """Unrelated errors are not treated as context errors."""
    assert is_context_length_error(RuntimeError("invalid api key")) is False


def test_escalated_limit():
    """Each retry lowers the limit, down to a floor."""
    assert escalated_limit(10000, 0) == 10000
    assert escalated_limit(10000, 1) == 7000
    assert escalated_limit(10000, 2) == 6000
    assert escalated_limit(10000, 20) == 1000
