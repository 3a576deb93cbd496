"""Scripted collaborators shared by the chat engine tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from toolchat.chat.models import ChatMessage, LLMReply, ToolCall, ToolResult
from toolchat.providers.base import ToolDefinition, ToolInputSchema, ToolProvider


def call(call_id: str, name: str, **tool_input: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, input=tool_input)


def reply(text: str = "", *tool_calls: ToolCall) -> LLMReply:
    calls = list(tool_calls)
    return LLMReply(
        message=ChatMessage(role="assistant", content=text, tool_calls=calls or None),
        tool_calls=calls,
        model="scripted",
    )


def tool(name: str, handler: Callable[[dict, dict], Any], description: str = "") -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=description or f"{name} tool",
        input_schema=ToolInputSchema(),
        handler=handler,
    )


def provider(provider_id: str, tools: list[ToolDefinition], system_prompt: Any = None) -> ToolProvider:
    return ToolProvider(provider_id, tools, system_prompt=system_prompt)


class ScriptedLLM:
    """
    Language-model stand-in that returns queued replies in order.

    A queued exception is raised instead of returned. Every request is
    recorded with a snapshot of the messages it received.
    """

    def __init__(self, *replies: LLMReply | Exception, repeat: LLMReply | None = None) -> None:
        self.replies: list[LLMReply | Exception] = list(replies)
        self.repeat = repeat
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    def _next(self) -> LLMReply:
        if self.replies:
            item = self.replies.pop(0)
        elif self.repeat is not None:
            item = self.repeat
        else:
            raise AssertionError("ScriptedLLM ran out of replies")
        if isinstance(item, Exception):
            raise item
        return item

    async def send(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        options: dict[str, Any] | None = None,
    ) -> LLMReply:
        self.requests.append(
            {
                "kind": "send",
                "messages": list(messages),
                "tools": [t.name for t in tools],
                "system_prompt": (options or {}).get("system_prompt"),
            }
        )
        return self._next()

    async def continue_with_results(
        self,
        messages: list[ChatMessage],
        tool_results: list[ToolResult],
        tools: list[ToolDefinition],
        system_prompt: str | None = None,
    ) -> LLMReply:
        self.requests.append(
            {
                "kind": "continue",
                "messages": list(messages),
                "tool_results": list(tool_results),
                "tools": [t.name for t in tools],
                "system_prompt": system_prompt,
            }
        )
        return self._next()

    async def close(self) -> None:
        self.closed = True
