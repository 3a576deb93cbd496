"""Error types raised across the chat engine."""

from __future__ import annotations

from mcp import McpError, types


class ToolResolutionError(McpError):
    """Raised by the registry before any handler runs."""

    def __init__(self, message: str) -> None:
        super().__init__(types.ErrorData(code=types.INVALID_PARAMS, message=message))


class ProviderNotFoundError(ToolResolutionError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider not found: {provider_id}")
        self.provider_id = provider_id


class ToolNotFoundError(ToolResolutionError):
    def __init__(self, tool_name: str, message: str | None = None) -> None:
        super().__init__(message or f"Tool {tool_name} not found")
        self.tool_name = tool_name


class SessionNotFoundError(KeyError):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"
