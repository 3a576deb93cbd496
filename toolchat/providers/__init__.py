"""Tool providers and the registry that resolves tool names to handlers."""

from __future__ import annotations

from .base import ToolDefinition, ToolExecutionResult, ToolInputSchema, ToolProvider
from .registry import ResolvedTool, ToolRegistry

__all__ = [
    "ResolvedTool",
    "ToolDefinition",
    "ToolExecutionResult",
    "ToolInputSchema",
    "ToolProvider",
    "ToolRegistry",
]
