"""
Conversation persistence.

The agent loop appends every turn it produces, as it produces it, so the
stored conversation is complete even when the caller disconnects early.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Any

from ..llm.base import (
    ContentPart,
    ImagePart,
    TextPart,
    ToolInvocationPart,
    ToolResultPart,
    Turn,
)


class ConversationStore(ABC):
    """Append-only storage of conversation turns."""

    @abstractmethod
    async def append(self, conversation_id: str, turn: Turn) -> None:
        """Persist one turn at the end of a conversation."""

    @abstractmethod
    async def list_turns(self, conversation_id: str) -> list[Turn]:
        """All turns of a conversation, oldest first."""


class InMemoryConversationStore(ConversationStore):
    """Process-local store, used by the CLI and tests."""

    def __init__(self) -> None:
        self._conversations: dict[str, list[Turn]] = defaultdict(list)

    async def append(self, conversation_id: str, turn: Turn) -> None:
        self._conversations[conversation_id].append(turn)

    async def list_turns(self, conversation_id: str) -> list[Turn]:
        return list(self._conversations.get(conversation_id, []))


def part_to_dict(part: ContentPart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "image", "url": part.url, "data": part.data, "media_type": part.media_type}
    if isinstance(part, ToolInvocationPart):
        return {"type": "tool_invocation", "id": part.id, "name": part.name, "arguments": part.arguments}
    return {
        "type": "tool_result",
        "tool_call_id": part.tool_call_id,
        "name": part.name,
        "result": part.result,
        "is_error": part.is_error,
    }


def part_from_dict(data: dict[str, Any]) -> ContentPart:
    kind = data.get("type")
    if kind == "image":
        return ImagePart(
            url=data.get("url") or "",
            data=data.get("data"),
            media_type=data.get("media_type") or "image/jpeg",
        )
    if kind == "tool_invocation":
        return ToolInvocationPart(id=data["id"], name=data["name"], arguments=data.get("arguments") or {})
    if kind == "tool_result":
        return ToolResultPart(
            tool_call_id=data["tool_call_id"],
            name=data.get("name", ""),
            result=data.get("result"),
            is_error=bool(data.get("is_error", False)),
        )
    return TextPart(data.get("text", ""))


def turn_to_dict(turn: Turn) -> dict[str, Any]:
    """JSON-compatible form of a turn."""
    content: Any = turn.content
    if not isinstance(content, str):
        content = [part_to_dict(p) for p in content]
    return {
        "role": turn.role,
        "content": content,
        "timestamp": turn.timestamp.isoformat(),
        "metadata": dict(turn.metadata),
    }


def turn_from_dict(data: dict[str, Any]) -> Turn:
    content = data.get("content", "")
    if not isinstance(content, str):
        content = tuple(part_from_dict(p) for p in content)
    kwargs: dict[str, Any] = {
        "role": data["role"],
        "content": content,
        "metadata": dict(data.get("metadata") or {}),
    }
    if data.get("timestamp"):
        kwargs["timestamp"] = datetime.fromisoformat(data["timestamp"])
    return Turn(**kwargs)
