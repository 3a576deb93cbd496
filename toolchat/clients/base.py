"""Interface the orchestrator expects from a language-model client."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from toolchat.chat.models import ChatMessage, LLMReply, ToolResult
from toolchat.providers.base import ToolDefinition


@runtime_checkable
class LanguageModelClient(Protocol):
    """
    Turns a message history plus tool definitions into a model reply.

    `options` may carry `system_prompt` and `tool_choice`.
    """

    async def send(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        options: dict[str, Any] | None = None,
    ) -> LLMReply: ...

    async def continue_with_results(
        self,
        messages: list[ChatMessage],
        tool_results: list[ToolResult],
        tools: list[ToolDefinition],
        system_prompt: str | None = None,
    ) -> LLMReply: ...
