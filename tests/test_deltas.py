"""
Tests for streaming delta normalization and tool-call assembly.
"""

import json
import random

import pytest

from polychat.errors import BackendStreamError
from polychat.llm.anthropic import AnthropicDeltaNormalizer
from polychat.llm.deltas import (
    StopReason,
    TextDelta,
    ToolCallArgumentDelta,
    ToolCallAssembler,
    ToolCallComplete,
    ToolCallStart,
    TurnComplete,
)
from polychat.llm.google import GeminiDeltaNormalizer
from polychat.llm.openai import OpenAIDeltaNormalizer


def assemble(events) -> ToolCallAssembler:
    assembler = ToolCallAssembler()
    for event in events:
        assembler.apply(event)
    return assembler


def random_split(text: str, rng: random.Random) -> list[str]:
    cuts = sorted(rng.sample(range(1, len(text)), k=min(len(text) - 1, rng.randint(1, 12))))
    return [text[i:j] for i, j in zip([0, *cuts], [*cuts, len(text)])]


@pytest.mark.parametrize("seed", range(20))
def test_arguments_survive_any_fragmentation(seed):
    """Arguments parse the same however the JSON is split."""
    arguments = {"query": "weather in Zürich", "days": 3, "units": {"temp": "C"}, "tags": ["a", "b"]}
    raw = json.dumps(arguments, ensure_ascii=False)
    rng = random.Random(seed)

    events = [ToolCallStart(index=0, id="call_1", name="forecast")]
    events += [ToolCallArgumentDelta(index=0, fragment=f) for f in random_split(raw, rng)]
    events += [ToolCallComplete(index=0), TurnComplete(StopReason.TOOL_CALLS)]

    assembler = assemble(events)

    assert assembler.invalid_calls == []
    assert len(assembler.valid_calls) == 1
    assert assembler.valid_calls[0].arguments == arguments


def test_text_is_concatenated():
    """Text deltas join into the assistant text."""
    assembler = assemble([TextDelta("Hel"), TextDelta("lo"), TurnComplete(StopReason.STOP)])

    assert assembler.text == "Hello"
    assert assembler.complete is True
    assert assembler.has_tool_calls is False


def test_malformed_json_is_rejected():
    """Unparseable arguments make the call invalid."""
    assembler = assemble([
        ToolCallStart(index=0, id="call_1", name="add"),
        ToolCallArgumentDelta(index=0, fragment='{"a": 2,'),
        ToolCallComplete(index=0),
        TurnComplete(StopReason.TOOL_CALLS),
    ])

    assert assembler.valid_calls == []
    [invalid] = assembler.invalid_calls
    assert invalid.raw_arguments == '{"a": 2,'
    assert "not valid JSON" in invalid.reason
    assert "add (call_1)" in assembler.describe_invalid()


@pytest.mark.parametrize(
    "start, fragments, reason",
    [
        (ToolCallStart(index=0, id=None, name="add"), ["{}"], "missing tool call id"),
        (ToolCallStart(index=0, id="call_1", name=None), ["{}"], "missing tool name"),
        (ToolCallStart(index=0, id="call_1", name="add"), [], "no arguments were received"),
        (ToolCallStart(index=0, id="call_1", name="add"), ["[1, 2]"], "must be a JSON object"),
    ],
)
def test_incomplete_calls_are_rejected(start, fragments, reason):
    """Calls missing an id, a name or arguments are rejected with a reason."""
    events = [start]
    events += [ToolCallArgumentDelta(index=0, fragment=f) for f in fragments]
    events += [ToolCallComplete(index=0), TurnComplete(StopReason.TOOL_CALLS)]

    assembler = assemble(events)

    assert assembler.valid_calls == []
    assert reason in assembler.invalid_calls[0].reason


def test_call_never_completed_is_rejected():
    """A call still open when the turn ends is abandoned."""
    assembler = assemble([
        ToolCallStart(index=0, id="call_1", name="add"),
        ToolCallArgumentDelta(index=0, fragment='{"a": 1}'),
        TurnComplete(StopReason.OTHER),
    ])

    assert assembler.valid_calls == []
    assert "stream ended" in assembler.invalid_calls[0].reason


def test_interleaved_calls_keep_declaration_order():
    """Valid calls come back ordered by index, not arrival."""
    assembler = assemble([
        ToolCallStart(index=0, id="a", name="first"),
        ToolCallStart(index=1, id="b", name="second"),
        ToolCallArgumentDelta(index=1, fragment='{"n":'),
        ToolCallArgumentDelta(index=0, fragment='{"n":'),
        ToolCallArgumentDelta(index=0, fragment="0}"),
        ToolCallArgumentDelta(index=1, fragment="1}"),
        ToolCallComplete(index=1),
        ToolCallComplete(index=0),
        TurnComplete(StopReason.TOOL_CALLS),
    ])

    assert [(c.id, c.arguments) for c in assembler.valid_calls] == [("a", {"n": 0}), ("b", {"n": 1})]


def test_openai_normalizer_tool_calls():
    """OpenAI tool-call chunks become start, fragment and complete events."""
    normalizer = OpenAIDeltaNormalizer()
    chunks = [
        {"choices": [{"index": 0, "delta": {"content": "Checking. "}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [
            {"index": 0, "id": "call_a", "function": {"name": "add", "arguments": '{"a"'}},
        ]}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [
            {"index": 1, "id": "call_b", "function": {"name": "mul", "arguments": ""}},
        ]}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [
            {"index": 0, "function": {"arguments": ": 1}"}},
            {"index": 1, "function": {"arguments": '{"b": 2}'}},
        ]}}]},
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
    ]

    events = [e for chunk in chunks for e in normalizer.feed(chunk)]
    events += normalizer.finish()
    assembler = assemble(events)

    assert assembler.text == "Checking. "
    assert assembler.stop_reason == StopReason.TOOL_CALLS
    assert [(c.id, c.name, c.arguments) for c in assembler.valid_calls] == [
        ("call_a", "add", {"a": 1}),
        ("call_b", "mul", {"b": 2}),
    ]
    assert sum(isinstance(e, TurnComplete) for e in events) == 1


def test_openai_normalizer_error_chunk():
    """An error chunk in the stream raises a backend error."""
    normalizer = OpenAIDeltaNormalizer()

    with pytest.raises(BackendStreamError):
        normalizer.feed({"error": {"message": "overloaded"}})


def test_openai_normalizer_ignores_other_choices():
    """Only the first choice is followed."""
    normalizer = OpenAIDeltaNormalizer()

    events = normalizer.feed({"choices": [{"index": 1, "delta": {"content": "ignored"}}]})

    assert events == []


def test_anthropic_normalizer():
    """Anthropic content blocks map onto canonical events."""
    normalizer = AnthropicDeltaNormalizer()
    stream = [
        {"type": "message_start", "message": {"id": "msg_1"}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Let me add."}},
        {"type": "content_block_stop", "index": 0},
        {"type": "content_block_start", "index": 1, "content_block": {
            "type": "tool_use", "id": "toolu_1", "name": "add", "input": {},
        }},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"a": 2'}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ', "b": 2}'}},
        {"type": "content_block_stop", "index": 1},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
        {"type": "message_stop"},
    ]

    events = [e for event in stream for e in normalizer.feed(event)]
    events += normalizer.finish()
    assembler = assemble(events)

    assert assembler.text == "Let me add."
    assert assembler.stop_reason == StopReason.TOOL_CALLS
    [call] = assembler.valid_calls
    assert (call.id, call.name, call.arguments) == ("toolu_1", "add", {"a": 2, "b": 2})


def test_anthropic_tool_without_streamed_input():
    """A tool_use block with no streamed input keeps its start input."""
    normalizer = AnthropicDeltaNormalizer()
    stream = [
        {"type": "content_block_start", "index": 0, "content_block": {
            "type": "tool_use", "id": "toolu_1", "name": "get_datetime", "input": {},
        }},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
        {"type": "message_stop"},
    ]

    assembler = assemble([e for event in stream for e in normalizer.feed(event)])

    [call] = assembler.valid_calls
    assert call.arguments == {}


def test_anthropic_error_event():
    """An Anthropic error event raises a backend error."""
    normalizer = AnthropicDeltaNormalizer()

    with pytest.raises(BackendStreamError):
        normalizer.feed({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})


def test_gemini_normalizer():
    """Whole Gemini function calls are split into canonical events."""
    normalizer = GeminiDeltaNormalizer()
    chunks = [
        {"candidates": [{"content": {"parts": [{"text": "Looking up. "}]}}]},
        {"candidates": [{
            "content": {"parts": [
                {"function_call": {"name": "lookup", "args": {"key": "a"}}},
                {"function_call": {"name": "lookup", "args": {"key": "b"}}},
            ]},
            "finish_reason": "STOP",
        }]},
    ]

    events = [e for chunk in chunks for e in normalizer.feed(chunk)]
    assembler = assemble(events)

    assert assembler.text == "Looking up. "
    assert assembler.stop_reason == StopReason.TOOL_CALLS
    assert [(c.id, c.arguments) for c in assembler.valid_calls] == [
        ("gemini_lookup_0", {"key": "a"}),
        ("gemini_lookup_1", {"key": "b"}),
    ]


def test_gemini_plain_stop():
    """A Gemini STOP finish ends the turn."""
    normalizer = GeminiDeltaNormalizer()

    events = normalizer.feed({"candidates": [{
        "content": {"parts": [{"text": "Hi"}]},
        "finish_reason": "STOP",
    }]})

    assert events[-1] == TurnComplete(StopReason.STOP)


def test_finish_emits_single_turn_complete():
    """Exactly one turn completion is produced per stream."""
    normalizer = OpenAIDeltaNormalizer()
    normalizer.feed({"choices": [{"index": 0, "delta": {"content": "x"}, "finish_reason": "stop"}]})

    assert normalizer.turn_done is True
    assert normalizer.finish() == []


def test_finish_abandons_open_calls():
    """Finishing a stream closes calls the provider never completed."""
    normalizer = OpenAIDeltaNormalizer()
    events = normalizer.feed({"choices": [{"index": 0, "delta": {"tool_calls": [
        {"index": 0, "id": "call_1", "function": {"name": "add", "arguments": '{"a": 1}'}},
    ]}}]})
    events += normalizer.finish()

    assembler = assemble(events)

    assert assembler.valid_calls == []
    assert len(assembler.invalid_calls) == 1


@pytest.mark.asyncio
async def test_normalize_async_stream():
    """The async helper yields canonical events for a whole stream."""
    async def provider_events():
        yield {"choices": [{"index": 0, "delta": {"content": "Hi"}}]}
        yield {"choices": [{"index": 0, "delta": {}, "finish_reason": "length"}]}

    events = [e async for e in OpenAIDeltaNormalizer().normalize(provider_events())]

    assert events == [TextDelta("Hi"), TurnComplete(StopReason.LENGTH)]
