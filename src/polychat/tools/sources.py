"""
Pluggable tool sources.

A registry snapshot is rebuilt by asking every source for its descriptors:
built-in tools, user-defined tool modules dropped into a directory, and
tools bridged in from an external tool server.
"""

import importlib.util
import itertools
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Protocol

import structlog

from ..errors import ToolLoadError
from .base import ToolDescriptor

logger = structlog.get_logger()

_module_counter = itertools.count()


class ToolSource(ABC):
    """Something that can produce tool descriptors."""

    name: str = "source"

    @abstractmethod
    async def load(self) -> list[ToolDescriptor]:
        """Return the current descriptors of this source."""


class BuiltinToolSource(ToolSource):
    """A fixed, in-process list of tools."""

    name = "builtin"

    def __init__(self, descriptors: list[ToolDescriptor] | None = None):
        self._descriptors: list[ToolDescriptor] = list(descriptors or [])

    def add(self, descriptor: ToolDescriptor) -> None:
        self._descriptors = [d for d in self._descriptors if d.name != descriptor.name]
        self._descriptors.append(descriptor)

    def remove(self, name: str) -> None:
        self._descriptors = [d for d in self._descriptors if d.name != name]

    async def load(self) -> list[ToolDescriptor]:
        return list(self._descriptors)


def _coerce_descriptor(obj: Any, source: str) -> ToolDescriptor:
    """Accept a ToolDescriptor or a dict with name/description/parameters/execute."""
    if isinstance(obj, ToolDescriptor):
        obj.source = source
        return obj
    if isinstance(obj, dict):
        executor = obj.get("execute") or obj.get("executor")
        if not obj.get("name") or not obj.get("description") or not callable(executor):
            raise ToolLoadError("Tool is missing required properties (name, description, execute)")
        return ToolDescriptor(
            name=obj["name"],
            description=obj["description"],
            executor=executor,
            parameters=obj.get("parameters") or {"type": "object", "properties": {}, "required": []},
            source=source,
        )
    raise ToolLoadError(f"Unsupported tool object: {type(obj).__name__}")


class DirectoryToolSource(ToolSource):
    """User-defined tools, one Python module per file.

    Each ``*.py`` file (not starting with ``_``) exposes ``TOOL`` or
    ``TOOLS``. Modules are executed fresh on every load, so editing a file
    and reloading the registry picks up the change.
    """

    name = "directory"

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load_module(self, file: Path) -> Any:
        module_name = f"polychat_user_tools.{file.stem}_{next(_module_counter)}"
        spec = importlib.util.spec_from_file_location(module_name, file)
        if spec is None or spec.loader is None:
            raise ToolLoadError(f"Cannot import {file}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    async def load(self) -> list[ToolDescriptor]:
        if not self.path.is_dir():
            logger.debug("Tools directory not found", path=str(self.path))
            return []

        descriptors: list[ToolDescriptor] = []
        for file in sorted(self.path.glob("*.py")):
            if file.name.startswith("_"):
                continue
            try:
                module = self._load_module(file)
                found = getattr(module, "TOOLS", None) or []
                if hasattr(module, "TOOL"):
                    found = [module.TOOL, *found]
                if not found:
                    logger.warning("Tool module exports nothing", file=file.name)
                    continue
                for obj in found:
                    descriptors.append(_coerce_descriptor(obj, f"directory:{file.name}"))
            except Exception as e:
                logger.error("Error loading tool module", file=file.name, error=str(e))

        return descriptors


class ToolServerClient(Protocol):
    """An external tool server connection (e.g. an MCP client session)."""

    async def list_tools(self) -> Any: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any: ...


def _field(obj: Any, *names: str, default: Any = None) -> Any:
    for name in names:
        if isinstance(obj, dict) and name in obj:
            return obj[name]
        if hasattr(obj, name):
            return getattr(obj, name)
    return default


def _normalize_schema(schema: Any) -> dict[str, Any]:
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}, "required": []}
    if schema.get("type") and "properties" in schema:
        return schema
    return {
        "type": "object",
        "properties": schema.get("properties") or {},
        "required": schema.get("required") or [],
        "additionalProperties": schema.get("additionalProperties", False),
    }


def _plain(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return value


class BridgedToolSource(ToolSource):
    """Tools served by an external tool server, exposed as ``mcp_{server}_{tool}``."""

    def __init__(self, server_name: str, client: ToolServerClient):
        self.server_name = server_name
        self.client = client
        self.name = f"bridge:{server_name}"

    def _make_executor(self, tool_name: str):
        async def executor(**arguments: Any) -> Any:
            logger.info(
                "Executing bridged tool",
                tool=tool_name,
                server=self.server_name,
            )
            result = await self.client.call_tool(tool_name, arguments)
            if _field(result, "isError", "is_error", default=False):
                content = _field(result, "content", default="")
                raise RuntimeError(f"Tool server reported an error: {_plain(content)}")
            return {
                "success": True,
                "data": _plain(result),
                "toolName": tool_name,
                "serverName": self.server_name,
            }

        return executor

    async def load(self) -> list[ToolDescriptor]:
        listed = await self.client.list_tools()
        tools = _field(listed, "tools", default=listed) or []

        descriptors = []
        for tool in tools:
            tool_name = _field(tool, "name")
            if not tool_name:
                continue
            descriptors.append(ToolDescriptor(
                name=f"mcp_{self.server_name}_{tool_name}",
                description=_field(tool, "description")
                or f"MCP tool '{tool_name}' from server '{self.server_name}'",
                executor=self._make_executor(tool_name),
                parameters=_normalize_schema(_field(tool, "inputSchema", "input_schema")),
                source=self.name,
            ))
        return descriptors
