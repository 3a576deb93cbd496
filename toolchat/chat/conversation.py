"""
Conversation history helpers.

Builds the synthetic messages that carry tool results back to the model and
trims history before it is sent.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .models import (
    ChatMessage,
    ImageAttachment,
    ImageBlock,
    ImageSource,
    TextBlock,
    ToolResult,
    ToolResultBlock,
)

logger = logging.getLogger(__name__)


def serialize_tool_payload(result: ToolResult) -> str:
    """JSON text the model sees for a tool result."""
    payload: Any = result.data if result.success else {"error": result.error}
    return json.dumps(payload, default=str)


def build_tool_result_message(result: ToolResult) -> ChatMessage:
    """Wrap a ToolResult as a user message holding one tool_result block."""
    return ChatMessage(
        id=f"tool_result_{result.tool_call_id}",
        role="user",
        content=[
            ToolResultBlock(
                tool_use_id=result.tool_call_id,
                content=serialize_tool_payload(result),
                is_error=not result.success,
            )
        ],
    )


def build_user_message(text: str, image: ImageAttachment | None = None) -> ChatMessage:
    if image is None:
        return ChatMessage(role="user", content=text)
    return ChatMessage(
        role="user",
        content=[
            TextBlock(text=text),
            ImageBlock(source=ImageSource(media_type=image.media_type, data=image.base64)),
        ],
    )


def is_tool_result_message(message: ChatMessage) -> bool:
    return message.role == "user" and bool(message.tool_results())


def optimize_history(messages: list[ChatMessage], max_messages: int = 20) -> list[ChatMessage]:
    """
    Drop tool-result and system messages and keep a bounded window.

    The first remaining message is kept, followed by the most recent ones.
    A window of one keeps only the newest message. Only safe while the
    history holds no tool results, since the model must see each tool_use
    followed by its tool_result.
    """
    conversation = [
        m for m in messages if m.role != "system" and not is_tool_result_message(m)
    ]

    if len(conversation) > max_messages:
        if max_messages > 1:
            conversation = [conversation[0], *conversation[-(max_messages - 1) :]]
        else:
            conversation = conversation[-1:]

    logger.debug("Optimized history: %d -> %d messages", len(messages), len(conversation))
    return conversation
