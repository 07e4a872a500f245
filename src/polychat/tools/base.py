"""
Base classes for tools.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from ..llm.base import ToolDefinition

ToolExecutor = Callable[..., Union[Awaitable[Any], Any]]


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    data: Any = None
    error: str | None = None
    call_id: str = ""
    tool_name: str = ""
    truncated: bool = False

    def to_payload(self) -> Any:
        """The value folded back into the conversation."""
        if self.success:
            return self.data
        return {"success": False, "error": self.error}


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


def build_parameters_schema(parameters: list[ToolParameter]) -> dict[str, Any]:
    """Convert parameters to JSON Schema format."""
    properties = {}
    required = []

    for param in parameters:
        prop: dict[str, Any] = {
            "type": param.param_type,
            "description": param.description,
        }
        if param.enum:
            prop["enum"] = param.enum
        if param.default is not None:
            prop["default"] = param.default

        properties[param.name] = prop

        if param.required:
            required.append(param.name)

    return {
        "type": "object",
        "properties": properties,
        "required": required,
    }


@dataclass
class ToolDescriptor:
    """A registry entry: schema plus the coroutine that runs the tool.

    The executor is called with the parsed arguments as keyword arguments
    and returns any JSON-compatible value. Raising signals failure.
    """

    name: str
    description: str
    executor: ToolExecutor
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    source: str = "builtin"

    @classmethod
    def from_parameters(
        cls,
        name: str,
        description: str,
        parameters: list[ToolParameter],
        executor: ToolExecutor,
        source: str = "builtin",
    ) -> "ToolDescriptor":
        return cls(
            name=name,
            description=description,
            executor=executor,
            parameters=build_parameters_schema(parameters),
            source=source,
        )

    def to_definition(self) -> ToolDefinition:
        """Convert to a tool definition for LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    async def execute(self, **kwargs: Any) -> Any:
        """Execute the tool. Plain functions are accepted as executors too."""
        result = self.executor(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
