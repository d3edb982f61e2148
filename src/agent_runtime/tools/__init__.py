"""Tooling layer for schema-validated execution."""

from agent_runtime.tools.backends import ArxivSearchBackend, InMemorySearchBackend, SearchBackend
from agent_runtime.tools.gateway import ToolExecutor
from agent_runtime.tools.registry import (
    BackendResolution,
    ToolSpec,
    build_registry,
    resolve_backends,
    tool_catalogue,
)
from agent_runtime.tools.schemas import Artifact, SearchHit, SearchInput, ToolResult

__all__ = [
    "ArxivSearchBackend",
    "Artifact",
    "BackendResolution",
    "InMemorySearchBackend",
    "SearchBackend",
    "SearchHit",
    "SearchInput",
    "ToolExecutor",
    "ToolResult",
    "ToolSpec",
    "build_registry",
    "resolve_backends",
    "tool_catalogue",
]
