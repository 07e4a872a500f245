"""
Caller-facing stream events.

A chat request produces ``start``, any number of ``chunk`` and ``note``
events, and exactly one terminal ``end`` or ``error`` event.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Literal

EventType = Literal["start", "chunk", "note", "end", "error"]


@dataclass(frozen=True)
class StreamEvent:
    """One event on the caller-facing stream."""

    type: EventType
    content: str = ""
    conversation_id: str | None = None
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def start(cls, conversation_id: str) -> "StreamEvent":
        return cls(type="start", conversation_id=conversation_id)

    @classmethod
    def chunk(cls, content: str) -> "StreamEvent":
        return cls(type="chunk", content=content)

    @classmethod
    def note(cls, content: str, **data: Any) -> "StreamEvent":
        return cls(type="note", content=content, data=data)

    @classmethod
    def end(cls, conversation_id: str, content: str, **data: Any) -> "StreamEvent":
        return cls(type="end", conversation_id=conversation_id, content=content, data=data)

    @classmethod
    def failure(cls, conversation_id: str, error: str) -> "StreamEvent":
        return cls(type="error", conversation_id=conversation_id, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.type in ("end", "error")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.conversation_id is not None:
            payload["conversationId"] = self.conversation_id
        if self.content:
            payload["content"] = self.content
        if self.error is not None:
            payload["error"] = self.error
        if self.data:
            payload.update(self.data)
        return payload

    def to_sse(self) -> str:
        """Server-sent-events framing."""
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"
