"""Tools exposed by the gateway, with lazily loaded implementations."""

from __future__ import annotations

from modelmesh.tools.catalog import register_gateway_tools
from modelmesh.tools.lazy_registry import LazyToolRegistry, ToolMetadata, ToolResult

__all__ = [
    "LazyToolRegistry",
    "ToolMetadata",
    "ToolResult",
    "register_gateway_tools",
]
