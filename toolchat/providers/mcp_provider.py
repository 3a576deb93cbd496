"""
MCP tool provider.

Exposes the tools of a connected MCP server as a ToolProvider so the
registry can resolve and invoke them like local handlers.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
from typing import Any

from mcp import ClientSession, McpError, StdioServerParameters, types
from mcp.client.stdio import stdio_client

from .base import ToolDefinition, ToolInputSchema, ToolProvider

logger = logging.getLogger(__name__)


def pluck_content(res: types.CallToolResult) -> str:
    """
    Flatten an MCP CallToolResult into text for the conversation.

    Structured content wins when present; otherwise each content item is
    rendered (text as-is, other types as placeholders).
    """
    if res.structuredContent:
        try:
            return json.dumps(res.structuredContent, indent=2)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize structured content: %s", e)

    if not res.content:
        return "✓ done"

    out: list[str] = []
    for item in res.content:
        if isinstance(item, types.TextContent):
            out.append(item.text)
        elif isinstance(item, types.ImageContent):
            out.append(f"[Image: {item.mimeType}, {len(item.data)} bytes]")
        elif isinstance(item, types.EmbeddedResource):
            if isinstance(item.resource, types.TextResourceContents):
                out.append(f"[Embedded resource: {item.resource.text}]")
            else:
                out.append(f"[Embedded resource: {type(item.resource).__name__}]")
        else:
            out.append(f"[{type(item).__name__}]")

    return "\n".join(out)


class McpToolProvider(ToolProvider):
    """ToolProvider backed by an MCP ClientSession."""

    def __init__(
        self,
        id: str,
        session: ClientSession,
        tools: list[types.Tool],
        exit_stack: contextlib.AsyncExitStack | None = None,
        **kwargs: Any,
    ) -> None:
        self.session = session
        self._exit_stack = exit_stack
        super().__init__(id, [self._adapt_tool(t) for t in tools], **kwargs)

    @classmethod
    async def from_session(cls, id: str, session: ClientSession, **kwargs: Any) -> McpToolProvider:
        """Build a provider from an already-initialized session."""
        result = await session.list_tools()
        logger.info("MCP provider %s exposes %d tools", id, len(result.tools))
        return cls(id, session, result.tools, **kwargs)

    @classmethod
    async def connect_stdio(
        cls,
        id: str,
        server_config: dict[str, Any],
        connection_timeout: float = 30.0,
        **kwargs: Any,
    ) -> McpToolProvider:
        """
        Launch an MCP server over stdio and wrap it.

        server_config keys: command, args, env. The provider owns the
        process; cleanup() shuts it down.
        """
        command = shutil.which(server_config["command"]) or server_config["command"]
        env = server_config.get("env")
        params = StdioServerParameters(
            command=command,
            args=server_config.get("args", []),
            env={**os.environ, **env} if env else None,
        )

        exit_stack = contextlib.AsyncExitStack()
        try:
            read_stream, write_stream = await exit_stack.enter_async_context(stdio_client(params))
            session = await exit_stack.enter_async_context(
                ClientSession(
                    read_stream,
                    write_stream,
                    client_info=types.Implementation(name=id, version="1.0.0"),
                )
            )
            await asyncio.wait_for(session.initialize(), timeout=connection_timeout)
            result = await session.list_tools()
        except BaseException:
            await exit_stack.aclose()
            raise

        logger.info("MCP server '%s' connected with %d tools", id, len(result.tools))
        return cls(id, session, result.tools, exit_stack=exit_stack, **kwargs)

    def _adapt_tool(self, tool: types.Tool) -> ToolDefinition:
        async def handler(tool_input: dict[str, Any], context: dict[str, Any]) -> str:
            result = await self.session.call_tool(tool.name, tool_input)
            content = pluck_content(result)
            if result.isError:
                raise McpError(error=types.ErrorData(code=types.INTERNAL_ERROR, message=content))
            return content

        return ToolDefinition(
            name=tool.name,
            description=tool.description or "",
            category="mcp",
            input_schema=ToolInputSchema.model_validate(tool.inputSchema or {}),
            handler=handler,
        )

    async def cleanup(self) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._exit_stack = None
            logger.info("MCP server '%s' disconnected", self.id)
