"""
HTTP client for OpenAI-compatible chat completion APIs.

Converts the engine's message history (content blocks, tool calls, tool
results) into the `/chat/completions` wire format and parses replies back
into LLMReply objects. Rebuilds its HTTP client when the connection-level
configuration changes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import httpx
from mcp import McpError, types

from toolchat.chat.conversation import build_tool_result_message
from toolchat.chat.models import (
    ChatMessage,
    ImageBlock,
    LLMReply,
    TextBlock,
    ToolCall,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
)
from toolchat.config import Configuration
from toolchat.providers.base import ToolDefinition
from toolchat.providers.registry import NAMESPACE_SEPARATOR

logger = logging.getLogger(__name__)

# Provider config keys that describe the connection rather than the request
_CONNECTION_KEYS = ("base_url", "timeout")
_EXCLUDED_PAYLOAD_KEYS = {"base_url", "model", "timeout"}


def tool_to_function(tool: ToolDefinition) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.schema_dict(),
        },
    }


def _tool_call_entry(call_id: str, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments)},
    }


def to_wire_messages(messages: list[ChatMessage], system_prompt: str | None = None) -> list[dict[str, Any]]:
    """
    Convert history into chat-completions messages.

    The system prompt becomes the single leading system message; system
    entries stored in the history are dropped in its favour.

    Tool calls that never received a result (a follow-up reply's calls, or
    the calls left over at the round limit) are omitted. Chat-completions
    APIs reject an assistant tool_call without a matching tool message.
    """
    answered = {block.tool_use_id for m in messages for block in m.tool_results()}

    wire: list[dict[str, Any]] = []
    if system_prompt:
        wire.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role == "system":
            continue

        tool_calls = [
            _tool_call_entry(c.id, c.name, c.input)
            for c in message.tool_calls or []
            if c.id in answered
        ]

        if isinstance(message.content, str):
            entry: dict[str, Any] = {"role": message.role, "content": message.content}
            if tool_calls:
                entry["tool_calls"] = tool_calls
                entry["content"] = message.content or None
            wire.append(entry)
            continue

        parts: list[dict[str, Any]] = []
        known_ids = {c["id"] for c in tool_calls}
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                wire.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content})
            elif isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                url = f"data:{block.source.media_type};base64,{block.source.data}"
                parts.append({"type": "image_url", "image_url": {"url": url}})
            elif isinstance(block, ToolUseBlock) and block.id in answered and block.id not in known_ids:
                tool_calls.append(_tool_call_entry(block.id, block.name, block.input))

        if message.role == "assistant":
            if parts or tool_calls:
                text = "".join(p["text"] for p in parts if p["type"] == "text")
                entry = {"role": "assistant", "content": text or None}
                if tool_calls:
                    entry["tool_calls"] = tool_calls
                wire.append(entry)
        elif parts:
            wire.append({"role": message.role, "content": parts})

    return wire


def parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for raw in raw_calls:
        function = raw["function"]
        name = function["name"]
        arguments = function.get("arguments") or "{}"
        try:
            tool_input = json.loads(arguments) if isinstance(arguments, str) else dict(arguments)
        except json.JSONDecodeError as e:
            raise McpError(
                error=types.ErrorData(
                    code=types.PARSE_ERROR,
                    message=f"Invalid arguments for tool call {name}: {e}",
                )
            ) from e
        provider = name.split(NAMESPACE_SEPARATOR, 1)[0] if NAMESPACE_SEPARATOR in name else None
        calls.append(ToolCall(id=raw["id"], name=name, input=tool_input or {}, provider=provider))
    return calls


class LLMClient:
    """
    Language-model client for OpenAI-compatible providers (OpenAI,
    OpenRouter, Groq).

    Subscribes to configuration changes: request parameters apply on the
    next call, connection changes replace the HTTP client.
    """

    def __init__(self, configuration: Configuration, http_client: httpx.AsyncClient | None = None) -> None:
        self.configuration = configuration
        self._current_config: dict[str, Any] = configuration.get_llm_config()
        self._owns_client = http_client is None
        self._config_lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task[None]] = set()
        self.client: httpx.AsyncClient | None = http_client or self._create_http_client(
            self._current_config, configuration.llm_api_key
        )

        self.configuration.subscribe_to_changes(self._on_config_change)
        logger.info("LLM client initialized with model: %s", self._current_config.get("model", "unknown"))

    def _create_http_client(self, provider_config: dict[str, Any], api_key: str) -> httpx.AsyncClient:
        pool = self.configuration.get_connection_pool_config()
        return httpx.AsyncClient(
            base_url=provider_config["base_url"],
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=provider_config.get("timeout", pool["request_timeout_seconds"]),
            http2=True,
            limits=httpx.Limits(
                max_connections=pool["max_connections"],
                max_keepalive_connections=pool["max_keepalive_connections"],
                keepalive_expiry=pool["keepalive_expiry_seconds"],
            ),
            trust_env=False,
        )

    @property
    def config(self) -> dict[str, Any]:
        return self._current_config

    def _on_config_change(self, new_config: dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._handle_config_change())
        except RuntimeError:
            logger.warning("Configuration changed outside an event loop; LLM client not updated")
            return
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _handle_config_change(self) -> None:
        async with self._config_lock:
            try:
                provider_config = self.configuration.get_llm_config()
            except ValueError as e:
                logger.error("Invalid LLM configuration, keeping previous settings: %s", e)
                return

            if provider_config == self._current_config:
                return

            breaking = [k for k in _CONNECTION_KEYS if provider_config.get(k) != self._current_config.get(k)]
            logger.info("🔄 LLM configuration change detected (model: %s)", provider_config.get("model"))

            if breaking and self._owns_client:
                logger.info("Replacing HTTP client, changed: %s", breaking)
                old_client = self.client
                self.client = self._create_http_client(provider_config, self.configuration.llm_api_key)
                if old_client is not None:
                    await old_client.aclose()

            self._current_config = provider_config

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Pass every non-connection provider setting through as a request parameter."""
        payload: dict[str, Any] = {"model": self.config["model"], "messages": messages}

        for key, value in self.config.items():
            if key not in _EXCLUDED_PAYLOAD_KEYS and value is not None:
                payload[key] = value

        if tools:
            payload["tools"] = tools
            tool_choice = (options or {}).get("tool_choice")
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice

        return payload

    async def send(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        options: dict[str, Any] | None = None,
    ) -> LLMReply:
        """Request one reply for the given history and tool set."""
        if not self.client:
            raise McpError(error=types.ErrorData(code=types.INTERNAL_ERROR, message="LLM client not initialized"))

        options = options or {}
        payload = self._build_payload(
            to_wire_messages(messages, options.get("system_prompt")),
            [tool_to_function(t) for t in tools] or None,
            options,
        )

        try:
            start_time = time.monotonic()
            response = await self.client.post("/chat/completions", json=payload)
            response.raise_for_status()
            result = response.json()
            logger.debug(
                "POST /chat/completions | Status: %s | Duration: %.2fms",
                response.status_code,
                (time.monotonic() - start_time) * 1000,
            )

            if not result.get("choices"):
                raise McpError(
                    error=types.ErrorData(code=types.PARSE_ERROR, message="No choices in API response")
                )

            raw_message = result["choices"][0]["message"]
            tool_calls = parse_tool_calls(raw_message.get("tool_calls") or [])
            message = ChatMessage(
                role="assistant",
                content=raw_message.get("content") or "",
                tool_calls=tool_calls or None,
            )
            return LLMReply(message=message, tool_calls=tool_calls, model=result.get("model", self.config["model"]))

        except McpError:
            raise
        except httpx.HTTPError as e:
            logger.error("HTTP error: %s", e)
            raise McpError(error=types.ErrorData(code=types.INTERNAL_ERROR, message=f"HTTP error: {e!s}")) from e
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Unexpected response format: %s", e)
            raise McpError(
                error=types.ErrorData(code=types.PARSE_ERROR, message=f"Unexpected response format: {e!s}")
            ) from e

    async def continue_with_results(
        self,
        messages: list[ChatMessage],
        tool_results: list[ToolResult],
        tools: list[ToolDefinition],
        system_prompt: str | None = None,
    ) -> LLMReply:
        """
        Ask for the follow-up reply once tool results are known.

        Results already present in `messages` are not repeated; any others
        are appended as tool-result messages first.
        """
        present = {block.tool_use_id for m in messages for block in m.tool_results()}
        missing = [build_tool_result_message(r) for r in tool_results if r.tool_call_id not in present]
        return await self.send([*messages, *missing], tools, {"system_prompt": system_prompt})

    async def close(self) -> None:
        """Close the HTTP client and unsubscribe from config changes."""
        self.configuration.unsubscribe_from_changes(self._on_config_change)
        for task in list(self._background_tasks):
            task.cancel()
        if self.client:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
