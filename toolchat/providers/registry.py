"""
Tool Registry

Holds the registered tool providers and maps model-facing tool names to
concrete handlers:
- `provider.tool` names resolve against that provider only
- bare names are searched across providers in registration order
- unknown bare names fall back to a static alias table

Resolution is repeated on every call (no caching) so providers can be
swapped between calls.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from toolchat.errors import ProviderNotFoundError, ToolNotFoundError

from .base import ToolDefinition, ToolExecutionResult, ToolProvider

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = "."

# Synonyms models commonly produce -> canonical tool name
DEFAULT_TOOL_ALIASES: dict[str, str] = {
    "set_background": "set_canvas_background",
    "set_bg": "set_canvas_background",
    "change_background": "set_canvas_background",
    "background": "set_canvas_background",
    "update_text_properties": "style_text",
    "update_text_style": "style_text",
    "modify_text": "style_text",
    "format_text": "style_text",
    "text_style": "style_text",
    "change_text_style": "style_text",
    "update_text": "update_text_content",
    "modify_text_content": "update_text_content",
    "change_text": "update_text_content",
}


@dataclass(frozen=True)
class ResolvedTool:
    """Result of resolving a model-facing name to a provider's tool."""

    provider: ToolProvider
    tool: ToolDefinition
    requested_name: str

    @property
    def qualified_name(self) -> str:
        return f"{self.provider.id}{NAMESPACE_SEPARATOR}{self.tool.name}"

    @property
    def via_alias(self) -> bool:
        return self.requested_name not in (self.tool.name, self.qualified_name)


class ToolRegistry:
    """Registry of tool providers with name resolution and invocation."""

    def __init__(
        self,
        providers: list[ToolProvider] | None = None,
        aliases: Mapping[str, str] | None = None,
    ) -> None:
        self._providers: dict[str, ToolProvider] = {}
        self.aliases: dict[str, str] = dict(DEFAULT_TOOL_ALIASES)
        if aliases:
            self.aliases.update(aliases)
        for provider in providers or []:
            self.register_provider(provider)

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------

    def register_provider(self, provider: ToolProvider) -> None:
        """Add a provider. Re-registering an id replaces the previous one."""
        if provider.id in self._providers:
            logger.warning("Provider '%s' already registered, replacing it", provider.id)
        self._providers[provider.id] = provider
        logger.info("Registered provider '%s' with %d tools", provider.id, len(provider.tools))

    def get_provider(self, provider_id: str) -> ToolProvider:
        """Look up a registered provider.

        Raises:
            ProviderNotFoundError: no provider with that id is registered
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return provider

    def has_provider(self, provider_id: str) -> bool:
        """Check whether a provider id is registered."""
        return provider_id in self._providers

    def get_active_providers(self) -> list[ToolProvider]:
        """Registered providers in registration order."""
        return list(self._providers.values())

    def get_provider_tools(self, provider_id: str) -> list[ToolDefinition]:
        """Get the tools of one provider.

        Returns:
            The provider's tool definitions, unqualified names as declared.

        Raises:
            ProviderNotFoundError: unknown provider id
        """
        return self.get_provider(provider_id).tools

    def get_all_tools(self) -> list[ToolDefinition]:
        """Tools of every registered provider, concatenated in registration order."""
        tools: list[ToolDefinition] = []
        for provider in self._providers.values():
            tools.extend(provider.tools)
        return tools

    def list_qualified_names(self) -> list[str]:
        return [
            f"{provider.id}{NAMESPACE_SEPARATOR}{tool.name}"
            for provider in self._providers.values()
            for tool in provider.tools
        ]

    def deactivate(self, provider_id: str) -> bool:
        """Unregister a provider without running its cleanup.

        Returns:
            True if the provider was registered, False otherwise.
        """
        return self._providers.pop(provider_id, None) is not None

    async def cleanup(self) -> None:
        """Run each provider's cleanup hook. Failures are logged and skipped."""
        for provider in list(self._providers.values()):
            try:
                await provider.cleanup()
            except Exception as e:
                logger.error("Error cleaning up provider %s: %s", provider.id, e)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, tool_name: str) -> ResolvedTool:
        """
        Resolve a model-facing tool name.

        Raises:
            ProviderNotFoundError: namespaced name with an unknown provider
            ToolNotFoundError: no provider exposes the tool (message lists
                every available `provider.tool` pair)
        """
        if NAMESPACE_SEPARATOR in tool_name:
            provider_id, bare_name = tool_name.split(NAMESPACE_SEPARATOR, 1)
            provider = self.get_provider(provider_id)
            tool = provider.get_tool(bare_name)
            if tool is None:
                raise ToolNotFoundError(
                    bare_name, f"Tool {bare_name} not found in provider {provider.id}"
                )
            return ResolvedTool(provider, tool, tool_name)

        logger.debug("Searching all providers for tool: %s", tool_name)
        found = self._search(tool_name)
        if found is None and tool_name in self.aliases:
            alias = self.aliases[tool_name]
            logger.info("Trying alias: %s -> %s", tool_name, alias)
            found = self._search(alias)

        if found is None:
            available = ", ".join(self.list_qualified_names())
            raise ToolNotFoundError(
                tool_name,
                f"Tool {tool_name} not found in any provider. Available tools: {available}",
            )

        provider, tool = found
        return ResolvedTool(provider, tool, tool_name)

    def _search(self, name: str) -> tuple[ToolProvider, ToolDefinition] | None:
        for provider in self._providers.values():
            tool = provider.get_tool(name)
            if tool is not None:
                return provider, tool
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_tool(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None,
        context: dict[str, Any] | None = None,
    ) -> ToolExecutionResult:
        """
        Resolve and invoke a tool handler.

        The handler receives the context merged with the resolved provider id.
        Handler exceptions propagate to the caller.
        """
        resolved = self.resolve(tool_name)
        if resolved.via_alias:
            logger.info("Resolved '%s' to %s", tool_name, resolved.qualified_name)

        provider_context = {"provider_id": resolved.provider.id, **(context or {})}
        result = resolved.tool.handler(tool_input or {}, provider_context)
        if inspect.isawaitable(result):
            result = await result

        return ToolExecutionResult(success=True, data=result)
