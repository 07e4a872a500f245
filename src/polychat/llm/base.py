"""
Base classes for LLM providers and the conversation data model.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Literal, Union

if TYPE_CHECKING:
    from .deltas import DeltaNormalizer, NormalizedEvent

Role = Literal["user", "assistant", "system", "tool"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def render_result(result: Any) -> str:
    """Render a tool result payload as the text sent to a model."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


@dataclass(frozen=True)
class TextPart:
    """Plain text content."""

    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ImagePart:
    """Reference to an image, either by URL or inline base64 data."""

    url: str = ""
    data: str | None = None
    media_type: str = "image/jpeg"
    type: Literal["image"] = "image"


@dataclass(frozen=True)
class ToolInvocationPart:
    """A tool call the assistant made."""

    id: str
    name: str
    arguments: dict[str, Any]
    type: Literal["tool_invocation"] = "tool_invocation"


@dataclass(frozen=True)
class ToolResultPart:
    """The outcome of a tool call, fed back to the model."""

    tool_call_id: str
    name: str
    result: Any
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"


ContentPart = Union[TextPart, ImagePart, ToolInvocationPart, ToolResultPart]


@dataclass(frozen=True)
class Turn:
    """A message in the conversation.

    Turns are immutable. Anything that needs a different version of a turn
    (a shrunk tool result, a user message with knowledge appended) builds a
    new one with :meth:`with_content`.
    """

    role: Role
    content: str | tuple[ContentPart, ...]
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.content, list):
            object.__setattr__(self, "content", tuple(self.content))

    @classmethod
    def user(cls, content: str | list[ContentPart], **metadata: Any) -> "Turn":
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def system(cls, content: str) -> "Turn":
        return cls(role="system", content=content)

    @classmethod
    def assistant(
        cls,
        text: str,
        tool_calls: list["ToolCall"] | None = None,
        **metadata: Any,
    ) -> "Turn":
        if not tool_calls:
            return cls(role="assistant", content=text, metadata=metadata)
        parts: list[ContentPart] = []
        if text:
            parts.append(TextPart(text))
        for tc in tool_calls:
            parts.append(ToolInvocationPart(id=tc.id, name=tc.name, arguments=tc.arguments))
        return cls(role="assistant", content=parts, metadata=metadata)

    @classmethod
    def tool_result(
        cls,
        tool_call_id: str,
        name: str,
        result: Any,
        is_error: bool = False,
        **metadata: Any,
    ) -> "Turn":
        part = ToolResultPart(
            tool_call_id=tool_call_id,
            name=name,
            result=result,
            is_error=is_error,
        )
        return cls(role="tool", content=(part,), metadata=metadata)

    @property
    def parts(self) -> tuple[ContentPart, ...]:
        """Content as a sequence of parts, wrapping plain strings."""
        if isinstance(self.content, str):
            return (TextPart(self.content),) if self.content else ()
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_invocations(self) -> list[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    def with_content(self, content: str | list[ContentPart], **metadata: Any) -> "Turn":
        """Return a copy with new content, keeping role and timestamp."""
        return replace(self, content=content, metadata={**self.metadata, **metadata})


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool call made by the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ModelRequest:
    """Everything a backend needs for one model call."""

    turns: list[Turn]
    tools: list[ToolDefinition] | None = None
    # "auto" or "none"; "none" keeps tools declared for a history that uses them
    tool_choice: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None


class BaseLLM(ABC):
    """Base class for LLM providers.

    A provider turns a :class:`ModelRequest` into its own stream of wire
    events via :meth:`send`. The matching :meth:`normalizer` converts those
    events into the provider-agnostic stream the agent loop consumes.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    def send(self, request: ModelRequest) -> AsyncIterator[dict[str, Any]]:
        """Stream provider-native events for a request."""

    @abstractmethod
    def normalizer(self) -> "DeltaNormalizer":
        """Create a fresh delta normalizer for one stream."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""

    def is_retryable(self, error: BaseException) -> bool:
        """Whether a failed call may be attempted again."""
        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return True
        return bool(getattr(error, "retriable", False))

    def stream(self, request: ModelRequest) -> AsyncIterator["NormalizedEvent"]:
        """Send a request and yield normalized events."""
        return self.normalizer().normalize(self.send(request))

    def _temperature(self, request: ModelRequest) -> float:
        return self.temperature if request.temperature is None else request.temperature

    def _max_tokens(self, request: ModelRequest) -> int:
        return request.max_output_tokens or self.max_tokens

    @staticmethod
    def _system_prompt(request: ModelRequest) -> str | None:
        """Merge the request's system prompt with any system turns."""
        parts = [request.system_prompt] if request.system_prompt else []
        parts.extend(t.text for t in request.turns if t.role == "system" and t.text)
        return "\n\n".join(parts) if parts else None
