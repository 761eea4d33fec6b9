"""Lazy tool registry - metadata up front, implementations on first use.

Tool metadata (name, description, tags, input schema) is registered eagerly
so callers can list tools and their schemas without importing anything.
The implementation behind a tool is produced by an async loader the first
time it is needed and cached afterwards.

Concurrent first requests for the same tool share one in-flight load, so
the loader runs once and every waiter receives the same handler. A failed
load is raised to every waiter and leaves nothing cached; the next request
starts a new load.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError

from modelmesh.errors import GatewayError, ToolNotFoundError

log = structlog.get_logger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]
ToolLoader = Callable[[], Awaitable[ToolHandler]]


@dataclass(frozen=True)
class ToolMetadata:
    """Description of a tool, available before its implementation is loaded."""

    name: str
    description: str
    tags: frozenset[str] = frozenset()
    input_schema: dict[str, Any] = field(default_factory=dict)

    def to_function_schema(self) -> dict[str, Any]:
        """OpenAI function-calling schema for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass
class ToolResult:
    """Result from a tool call."""

    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class _Entry:
    metadata: ToolMetadata
    loader: ToolLoader


class LazyToolRegistry:
    """Registry of tools whose implementations load on demand."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._loaded: dict[str, ToolHandler] = {}
        self._inflight: dict[str, asyncio.Task[ToolHandler]] = {}

    # ------------------------------------------------------------------ #
    # Registration and metadata
    # ------------------------------------------------------------------ #

    def register_metadata(self, metadata: ToolMetadata, loader: ToolLoader) -> None:
        """Register a tool's metadata and the loader for its implementation.

        Raises:
            ValueError: If a tool with the same name is already registered
        """
        if metadata.name in self._entries:
            raise ValueError(f"Tool already registered: {metadata.name!r}")
        self._entries[metadata.name] = _Entry(metadata=metadata, loader=loader)
        log.debug("tool_registry.registered", tool=metadata.name, tags=sorted(metadata.tags))

    def has_tool(self, name: str) -> bool:
        return name in self._entries

    def get_metadata(self, name: str) -> ToolMetadata:
        entry = self._entries.get(name)
        if entry is None:
            raise ToolNotFoundError(name)
        return entry.metadata

    def list_metadata(self) -> list[ToolMetadata]:
        return [entry.metadata for entry in self._entries.values()]

    def get_tool_schemas(self) -> list[dict[str, Any]]:
        return [entry.metadata.to_function_schema() for entry in self._entries.values()]

    def is_loaded(self, name: str) -> bool:
        return name in self._loaded

    # ------------------------------------------------------------------ #
    # Loading
    # ------------------------------------------------------------------ #

    async def get_implementation(self, name: str) -> ToolHandler:
        """Return the tool's handler, loading it on first use.

        Raises:
            ToolNotFoundError: If no tool with this name is registered
            Exception: Whatever the loader raised, for every concurrent waiter
        """
        handler = self._loaded.get(name)
        if handler is not None:
            return handler

        entry = self._entries.get(name)
        if entry is None:
            raise ToolNotFoundError(name)

        task = self._inflight.get(name)
        if task is None:
            task = asyncio.create_task(self._load(name, entry.loader))
            self._inflight[name] = task
        # A cancelled waiter must not cancel the load the others share.
        return await asyncio.shield(task)

    async def _load(self, name: str, loader: ToolLoader) -> ToolHandler:
        started = time.perf_counter()
        try:
            handler = await loader()
        except Exception as exc:
            self._inflight.pop(name, None)
            log.error("tool_registry.load_failed", tool=name, error=str(exc))
            raise
        self._loaded[name] = handler
        self._inflight.pop(name, None)
        log.info(
            "tool_registry.loaded",
            tool=name,
            load_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return handler

    async def preload(self, names: Iterable[str]) -> None:
        """Load several tools concurrently."""
        await asyncio.gather(*(self.get_implementation(name) for name in names))

    async def preload_by_tag(self, tag: str) -> list[str]:
        """Load every tool carrying ``tag``; returns the names loaded."""
        names = [name for name, entry in self._entries.items() if tag in entry.metadata.tags]
        await self.preload(names)
        return names

    # ------------------------------------------------------------------ #
    # Calling
    # ------------------------------------------------------------------ #

    async def call(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Load (if needed) and invoke a tool.

        Invalid arguments and gateway errors raised by the handler are
        returned as failed results.

        Raises:
            ToolNotFoundError: If no tool with this name is registered
        """
        handler = await self.get_implementation(name)
        started = time.perf_counter()
        log.info("tool.executing", tool=name)
        try:
            data = await handler(arguments or {})
        except ValidationError as exc:
            log.warning("tool.invalid_arguments", tool=name, errors=exc.error_count())
            return ToolResult(success=False, error=f"Invalid arguments for {name}: {exc}")
        except GatewayError as exc:
            log.error("tool.execution_failed", tool=name, error=str(exc))
            return ToolResult(
                success=False,
                error=str(exc),
                metadata={"error_type": type(exc).__name__},
            )
        return ToolResult(
            success=True,
            data=data,
            metadata={"duration_ms": round((time.perf_counter() - started) * 1000, 1)},
        )

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def stats(self) -> dict[str, float]:
        total = len(self._entries)
        loaded = sum(1 for name in self._entries if name in self._loaded)
        return {
            "total": total,
            "loaded": loaded,
            "percentage": round(loaded / total * 100, 1) if total else 0.0,
        }

    def clear(self) -> None:
        """Remove every tool and cached implementation. Used for testing."""
        self._entries.clear()
        self._loaded.clear()
        self._inflight.clear()
