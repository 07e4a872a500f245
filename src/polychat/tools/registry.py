"""
Tool registry for managing available tools.

The registry holds an immutable snapshot (name -> descriptor). Reloading
builds a brand-new snapshot from every source and swaps it in with a single
assignment, so a caller that already resolved a descriptor keeps running
against it and nobody ever sees a mix of old and new tools.
"""

from dataclasses import replace
from types import MappingProxyType
from typing import Any, Mapping

import asyncio
import structlog

from ..agent.truncation import shrink_tool_result, truncate_string
from ..config import Settings, get_settings
from ..llm.base import ToolDefinition
from .base import ToolDescriptor, ToolResult
from .sources import BuiltinToolSource, DirectoryToolSource, ToolSource

logger = structlog.get_logger()

DEFAULT_MAX_RESULT_TOKENS = 2000


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(
        self,
        sources: list[ToolSource] | None = None,
        max_result_tokens: int = DEFAULT_MAX_RESULT_TOKENS,
    ):
        self._runtime = BuiltinToolSource()
        self._runtime.name = "runtime"
        self._sources: list[ToolSource] = [*(sources or []), self._runtime]
        self.max_result_tokens = max_result_tokens

        self._snapshot: Mapping[str, ToolDescriptor] = MappingProxyType({})
        self._loaded = False
        self._generation = 0
        self._reload_lock = asyncio.Lock()

    @property
    def snapshot(self) -> Mapping[str, ToolDescriptor]:
        return self._snapshot

    @property
    def generation(self) -> int:
        """How many snapshots have been built."""
        return self._generation

    def add_source(self, source: ToolSource) -> None:
        """Add a source; its tools appear on the next reload."""
        self._sources.insert(len(self._sources) - 1, source)

    async def load(self, force_reload: bool = False) -> Mapping[str, ToolDescriptor]:
        """Return the current snapshot, building it first if needed."""
        if self._loaded and not force_reload:
            return self._snapshot

        seen_generation = self._generation
        async with self._reload_lock:
            # Another caller rebuilt while we waited for the lock
            if self._loaded and self._generation != seen_generation:
                return self._snapshot

            snapshot = await self._build_snapshot()
            self._snapshot = snapshot
            self._loaded = True
            self._generation += 1

        logger.info(
            "Tool registry loaded",
            tool_count=len(self._snapshot),
            generation=self._generation,
        )
        return self._snapshot

    async def _build_snapshot(self) -> Mapping[str, ToolDescriptor]:
        tools: dict[str, ToolDescriptor] = {}
        for source in self._sources:
            try:
                descriptors = await source.load()
            except Exception as e:
                logger.error("Failed to load tool source", source=source.name, error=str(e))
                continue

            for descriptor in descriptors:
                if descriptor.name in tools:
                    logger.warning(
                        "Duplicate tool name skipped",
                        tool_name=descriptor.name,
                        source=source.name,
                        kept_source=tools[descriptor.name].source,
                    )
                    continue
                tools[descriptor.name] = descriptor

        return MappingProxyType(tools)

    def register(self, tool: ToolDescriptor) -> ToolDescriptor:
        """Register a tool at runtime.

        Names follow the same rule as a reload: a name already provided by
        another source cannot be taken over, so this raises ``ValueError``.
        Returns the registered copy, tagged with the runtime source.
        """
        existing = self._snapshot.get(tool.name)
        if existing is not None and existing.source != self._runtime.name:
            raise ValueError(
                f"Tool '{tool.name}' is already provided by source '{existing.source}'"
            )

        registered = replace(tool, source=self._runtime.name)
        self._runtime.add(registered)
        if self._loaded:
            updated = dict(self._snapshot)
            updated[registered.name] = registered
            self._snapshot = MappingProxyType(updated)
        logger.info("Tool registered", tool_name=registered.name)
        return registered

    def unregister(self, name: str) -> None:
        """Unregister a runtime tool."""
        self._runtime.remove(name)
        if name in self._snapshot and self._snapshot[name].source == self._runtime.name:
            updated = dict(self._snapshot)
            del updated[name]
            self._snapshot = MappingProxyType(updated)
            logger.info("Tool unregistered", tool_name=name)

    def get(self, name: str) -> ToolDescriptor | None:
        """Get a tool by name."""
        return self._snapshot.get(name)

    def list_tools(self) -> list[str]:
        """List all tool names in the current snapshot."""
        return list(self._snapshot.keys())

    def list_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [tool.to_definition() for tool in self._snapshot.values()]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        call_id: str = "",
    ) -> ToolResult:
        """Execute a tool by name.

        Never raises: unknown tools and executor failures come back as
        unsuccessful results, and oversized output is summarized.
        """
        snapshot = await self.load()
        tool = snapshot.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                error=f"Tool '{name}' not found",
                call_id=call_id,
                tool_name=name,
            )

        try:
            logger.info("Executing tool", tool_name=name, arguments=arguments)
            raw = await tool.execute(**arguments)
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            return ToolResult(
                success=False,
                error=truncate_string(str(e) or type(e).__name__, self.max_result_tokens),
                call_id=call_id,
                tool_name=name,
            )

        bounded = shrink_tool_result(raw, self.max_result_tokens)
        truncated = bounded is not raw
        logger.info("Tool executed", tool_name=name, truncated=truncated)

        return ToolResult(
            success=True,
            data=bounded,
            call_id=call_id,
            tool_name=name,
            truncated=truncated,
        )


_registry: ToolRegistry | None = None


def create_tool_registry(settings: Settings | None = None) -> ToolRegistry:
    """Build a registry with the built-in tools and the configured directory."""
    from .builtin import create_builtin_tools

    settings = settings or get_settings()

    sources: list[ToolSource] = [
        BuiltinToolSource(create_builtin_tools(
            enable_web_search=settings.enable_web_search,
            enable_browser=settings.enable_browser,
            tavily_api_key=settings.tavily_api_key,
        )),
    ]
    if settings.tools_directory:
        sources.append(DirectoryToolSource(settings.tools_directory))

    return ToolRegistry(sources, max_result_tokens=settings.tool_result_max_tokens)


def get_tool_registry() -> ToolRegistry:
    """Get or create the global tool registry."""
    global _registry

    if _registry is None:
        _registry = create_tool_registry()

    return _registry


def reset_tool_registry() -> None:
    """Drop the global registry (used by tests)."""
    global _registry
    _registry = None
