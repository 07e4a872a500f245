"""
Provider-agnostic streaming events.

Every provider streams its reply in its own vocabulary. A provider adapter
(a :class:`DeltaNormalizer` subclass living next to the provider) maps those
wire events onto the small canonical set defined here, and
:class:`ToolCallAssembler` rebuilds complete assistant text and tool calls
from the canonical stream.

Tool-call arguments arrive as raw JSON fragments keyed by a positional index.
Fragments are concatenated untouched and only parsed once the provider says
the call is complete.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Union

import structlog

from .base import ToolCall

logger = structlog.get_logger()


class StopReason:
    """Canonical reasons a model turn ended."""

    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    OTHER = "other"


@dataclass(frozen=True)
class TextDelta:
    content: str


@dataclass(frozen=True)
class ToolCallStart:
    index: int
    id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class ToolCallArgumentDelta:
    index: int
    fragment: str


@dataclass(frozen=True)
class ToolCallComplete:
    index: int


@dataclass(frozen=True)
class TurnComplete:
    stop_reason: str = StopReason.OTHER


NormalizedEvent = Union[
    TextDelta,
    ToolCallStart,
    ToolCallArgumentDelta,
    ToolCallComplete,
    TurnComplete,
]


class DeltaNormalizer(ABC):
    """Converts one provider stream into canonical events.

    Subclasses implement :meth:`feed` for their wire format and use the
    ``_open_call`` / ``_complete_call`` / ``_end_turn`` helpers, which keep
    track of open indices and guarantee a single :class:`TurnComplete`.
    """

    def __init__(self) -> None:
        self._open: set[int] = set()
        self._seen: dict[int, tuple[str | None, str | None]] = {}
        self._stop_reason: str | None = None
        self._turn_done = False

    @abstractmethod
    def feed(self, event: Any) -> list[NormalizedEvent]:
        """Translate one provider event."""

    def finish(self) -> list[NormalizedEvent]:
        """Signal end of the provider stream.

        Indices still open are abandoned: they never receive a
        :class:`ToolCallComplete` and the assembler reports them invalid.
        """
        if self._turn_done:
            return []
        if self._open:
            logger.warning("Stream ended with open tool calls", indices=sorted(self._open))
        self._turn_done = True
        return [TurnComplete(self._stop_reason or StopReason.OTHER)]

    async def normalize(self, events: AsyncIterable[Any]) -> AsyncIterator[NormalizedEvent]:
        """Normalize a whole provider stream."""
        async for event in events:
            for normalized in self.feed(event):
                yield normalized
        for normalized in self.finish():
            yield normalized

    @property
    def turn_done(self) -> bool:
        return self._turn_done

    def _open_call(self, index: int, call_id: str | None, name: str | None) -> list[NormalizedEvent]:
        known_id, known_name = self._seen.get(index, (None, None))
        if index not in self._seen:
            self._seen[index] = (call_id, name)
            self._open.add(index)
            return [ToolCallStart(index=index, id=call_id, name=name)]
        # Late id or name for an index that is already open
        if index in self._open and ((call_id and not known_id) or (name and not known_name)):
            self._seen[index] = (known_id or call_id, known_name or name)
            return [ToolCallStart(index=index, id=call_id, name=name)]
        return []

    def _complete_call(self, index: int) -> list[NormalizedEvent]:
        if index not in self._open:
            return []
        self._open.discard(index)
        return [ToolCallComplete(index=index)]

    def _end_turn(self, stop_reason: str | None, complete_open: bool = False) -> list[NormalizedEvent]:
        if self._turn_done:
            return []
        out: list[NormalizedEvent] = []
        if complete_open:
            for index in sorted(self._open):
                out.extend(self._complete_call(index))
        if stop_reason:
            self._stop_reason = stop_reason
        out.extend(self.finish())
        return out


@dataclass
class InvalidToolCall:
    """A tool call that cannot be executed."""

    index: int
    id: str | None
    name: str | None
    raw_arguments: str
    reason: str


@dataclass
class _PendingCall:
    index: int
    id: str | None = None
    name: str | None = None
    fragments: list[str] = field(default_factory=list)


class ToolCallAssembler:
    """Rebuilds assistant text and tool calls from canonical events."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._pending: dict[int, _PendingCall] = {}
        self._valid: dict[int, ToolCall] = {}
        self._invalid: dict[int, InvalidToolCall] = {}
        self._order: list[int] = []
        self.stop_reason: str | None = None

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def complete(self) -> bool:
        return self.stop_reason is not None

    @property
    def valid_calls(self) -> list[ToolCall]:
        """Executable calls in the order the model declared them."""
        return [self._valid[i] for i in self._order if i in self._valid]

    @property
    def invalid_calls(self) -> list[InvalidToolCall]:
        return [self._invalid[i] for i in self._order if i in self._invalid]

    @property
    def has_tool_calls(self) -> bool:
        return bool(self._order)

    def apply(self, event: NormalizedEvent) -> None:
        if isinstance(event, TextDelta):
            self._text.append(event.content)
        elif isinstance(event, ToolCallStart):
            self._start(event)
        elif isinstance(event, ToolCallArgumentDelta):
            pending = self._pending.get(event.index)
            if pending is None:
                if event.index in self._valid or event.index in self._invalid:
                    logger.warning("Argument fragment after tool call completed", index=event.index)
                    return
                pending = self._start(ToolCallStart(index=event.index))
            pending.fragments.append(event.fragment)
        elif isinstance(event, ToolCallComplete):
            self._finalize(event.index)
        elif isinstance(event, TurnComplete):
            for index in list(self._pending):
                pending = self._pending.pop(index)
                self._reject(pending, "stream ended before the tool call was complete")
            self.stop_reason = event.stop_reason

    def describe_invalid(self) -> str:
        """Explain which calls were rejected and why."""
        if not self._invalid:
            return ""
        lines = ["Some tool calls could not be executed:"]
        for call in self.invalid_calls:
            label = call.name or "unknown tool"
            if call.id:
                label += f" ({call.id})"
            lines.append(f"- {label}: {call.reason}")
        return "\n".join(lines)

    def _start(self, event: ToolCallStart) -> _PendingCall:
        pending = self._pending.get(event.index)
        if pending is None:
            if event.index in self._valid or event.index in self._invalid:
                logger.warning("Tool call index reused after completion", index=event.index)
                return _PendingCall(index=event.index)
            pending = _PendingCall(index=event.index)
            self._pending[event.index] = pending
            self._order.append(event.index)
        pending.id = pending.id or event.id
        pending.name = pending.name or event.name
        return pending

    def _finalize(self, index: int) -> None:
        pending = self._pending.pop(index, None)
        if pending is None:
            return
        raw = "".join(pending.fragments)

        if not pending.id:
            self._reject(pending, "missing tool call id")
            return
        if not pending.name:
            self._reject(pending, "missing tool name")
            return
        if not raw.strip():
            self._reject(pending, "no arguments were received")
            return

        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as e:
            self._reject(pending, f"arguments are not valid JSON ({e.msg})")
            return

        if not isinstance(arguments, dict):
            self._reject(pending, f"arguments must be a JSON object, got {type(arguments).__name__}")
            return

        self._valid[index] = ToolCall(id=pending.id, name=pending.name, arguments=arguments)

    def _reject(self, pending: _PendingCall, reason: str) -> None:
        raw = "".join(pending.fragments)
        logger.warning(
            "Rejected tool call",
            index=pending.index,
            tool=pending.name,
            reason=reason,
        )
        self._invalid[pending.index] = InvalidToolCall(
            index=pending.index,
            id=pending.id,
            name=pending.name,
            raw_arguments=raw,
            reason=reason,
        )
