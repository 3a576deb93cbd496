"""
Chat Logging Utilities

Shared logging helpers with feature control so the executor and the
orchestrator log tool activity with the same formatting.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

logger = logging.getLogger(__name__)

_module_features: dict[str, dict[str, bool]] = {}


def set_module_features(module: str, features: dict[str, bool]) -> None:
    """Store feature flags for a logging module (called from main)."""
    _module_features[module] = dict(features)


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a specific logging feature is enabled."""
    return _module_features.get(module, {}).get(feature, False)


def _truncate(value: Any, limit: int) -> str:
    text = str(value)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def log_llm_reply(reply: dict[str, Any], context: str, truncate_length: int = 500) -> None:
    """
    Log a language-model reply if the `chat.llm_replies` feature is on.

    Args:
        reply: dumped LLMReply (message, tool_calls, model)
        context: descriptive label for the log entry
        truncate_length: maximum characters of content to log
    """
    if not should_log_feature("chat", "llm_replies"):
        return

    message = reply.get("message", {})
    content = message.get("content", "")
    if not isinstance(content, str):
        content = " ".join(
            block.get("text", "") for block in content if block.get("type") == "text"
        )
    tool_calls = reply.get("tool_calls", [])

    log_parts = [f"LLM Reply ({context}):"]
    if content:
        log_parts.append(f"Content: {_truncate(content, truncate_length)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {len(tool_calls)}")
        for i, call in enumerate(tool_calls):
            log_parts.append(f"  [{i}] {call.get('name', 'unknown')}")
    log_parts.append(f"Model: {reply.get('model') or 'unknown'}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    if total_calls > 1:
        logger.info("→ Tool[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls)
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, execution_time: float) -> None:
    logger.info("← Tool[%s]: success in %.1fms", tool_name, execution_time)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_arguments(
    tool_name: str, arguments: dict[str, Any], context: str, truncate_length: int = 500
) -> None:
    """Log tool input if the `tools.tool_arguments` feature is on."""
    if not should_log_feature("tools", "tool_arguments"):
        return
    logger.info("→ Tool[%s]: arguments (%s): %s", tool_name, context, _truncate(arguments, truncate_length))


def log_tool_results(tool_name: str, results: Any, context: str, truncate_length: int = 200) -> None:
    """Log tool output if the `tools.tool_results` feature is on."""
    if not should_log_feature("tools", "tool_results"):
        return
    logger.info("← Tool[%s]: results (%s): %s", tool_name, context, _truncate(results, truncate_length))


def log_directional_flow(direction: str, component: str, message: str, *args: Any) -> None:
    """
    Log directional flow messages with consistent arrow formatting.

    Args:
        direction: Either "→" (outgoing) or "←" (incoming/completed)
        component: Component name (e.g., "LLM", "Executor", "Session")
        message: Message template with optional format placeholders
        *args: Arguments for message formatting
    """
    formatted_msg = message % args if args else message
    logger.info("%s %s: %s", direction, component, formatted_msg)


@asynccontextmanager
async def log_performance(operation_name: str):
    """Context manager to log how long an operation took."""
    start_time = time.monotonic()
    try:
        yield
    finally:
        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info("⏱️ %s completed in %.2fms", operation_name, elapsed_ms)
