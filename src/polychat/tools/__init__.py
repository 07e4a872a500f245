"""
Tools module for agent capabilities.
"""

from .base import ToolDescriptor, ToolParameter, ToolResult, build_parameters_schema
from .sources import BridgedToolSource, BuiltinToolSource, DirectoryToolSource, ToolSource
from .registry import ToolRegistry, create_tool_registry, get_tool_registry, reset_tool_registry

__all__ = [
    "ToolDescriptor",
    "ToolParameter",
    "ToolResult",
    "build_parameters_schema",
    "BridgedToolSource",
    "BuiltinToolSource",
    "DirectoryToolSource",
    "ToolSource",
    "ToolRegistry",
    "create_tool_registry",
    "get_tool_registry",
    "reset_tool_registry",
]
