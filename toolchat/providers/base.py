"""
Provider and tool definitions.

A provider bundles the tools of one capability domain together with the
optional system-prompt and context-extraction hooks for that domain.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# handler(input, context) -> result, awaitable result, or raises
ToolHandler = Callable[[dict[str, Any], dict[str, Any]], Any]


class ToolInputSchema(BaseModel):
    """JSON-schema style description of accepted parameters."""

    model_config = ConfigDict(extra="allow")

    type: str = "object"
    properties: dict[str, Any] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class ToolDefinition(BaseModel):
    """A named tool the model may request, backed by a handler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    category: str = "utility"
    input_schema: ToolInputSchema = Field(default_factory=ToolInputSchema)
    handler: ToolHandler = Field(exclude=True)

    def schema_dict(self) -> dict[str, Any]:
        return self.input_schema.model_dump()


class ToolExecutionResult(BaseModel):
    """Registry-level outcome of invoking a handler."""

    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None


class ToolProvider:
    """
    Base provider. Subclass and override the hooks, or instantiate directly
    with a static system prompt (string or callable).
    """

    def __init__(
        self,
        id: str,
        tools: list[ToolDefinition],
        name: str | None = None,
        description: str = "",
        version: str = "1.0.0",
        system_prompt: str | Callable[[dict[str, Any], bool], str | None] | None = None,
        context_requirements: dict[str, str] | None = None,
    ) -> None:
        self.id = id
        self.name = name or id
        self.description = description
        self.version = version
        self.tools = tools
        self.system_prompt = system_prompt
        self.context_requirements = context_requirements or {}

    def get_system_prompt(self, context: dict[str, Any], has_image: bool = False) -> str | None:
        if callable(self.system_prompt):
            return self.system_prompt(context, has_image)
        return self.system_prompt

    def extract_context(self, route: str, global_context: dict[str, Any]) -> dict[str, Any]:
        """Provider-specific context derived from the route. Empty by default."""
        return {}

    def validate_context(self, context: dict[str, Any]) -> tuple[bool, list[str]]:
        errors = [
            f"Missing context field '{key}': {desc}"
            for key, desc in self.context_requirements.items()
            if context.get(key) is None
        ]
        return not errors, errors

    def get_tool(self, name: str) -> ToolDefinition | None:
        return next((t for t in self.tools if t.name == name), None)

    async def cleanup(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, tools={len(self.tools)})"
