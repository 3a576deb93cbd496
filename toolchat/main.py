"""
Main application entry point - WebSocket interface with graceful shutdown handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from toolchat.chat.chat_orchestrator import ConversationOrchestrator
from toolchat.chat.context_detector import ContextDetector
from toolchat.chat.logging_utils import set_module_features
from toolchat.chat.tool_executor import ToolExecutor
from toolchat.clients.llm_client import LLMClient
from toolchat.config import Configuration
from toolchat.providers.mcp_provider import McpToolProvider
from toolchat.providers.registry import ToolRegistry
from toolchat.websocket_server import run_websocket_server

logger = logging.getLogger(__name__)

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Logging module name -> logger hierarchy it controls
MODULE_LOGGER_MAP: dict[str, list[str]] = {
    "chat": ["toolchat.chat"],
    "tools": ["toolchat.chat.tool_executor", "toolchat.providers"],
    "llm_client": ["toolchat.clients", "httpx"],
    "websocket": ["toolchat.websocket_server", "uvicorn"],
}


def configure_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply levels per logger hierarchy and store feature flags.

    Children inherit from the parent loggers listed in MODULE_LOGGER_MAP.
    """
    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(LEVEL_MAP.get(global_level, logging.WARNING))

    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue

        level = LEVEL_MAP.get(module_config.get("level", global_level), logging.WARNING)
        for logger_name in MODULE_LOGGER_MAP.get(module_name, []):
            logging.getLogger(logger_name).setLevel(level)

        set_module_features(module_name, module_config.get("enable_features") or {})


def _on_logging_config_change(new_config: dict[str, Any]) -> None:
    try:
        logging_config = new_config.get("logging", {})
        if logging_config:
            configure_logging(logging_config)
            logger.info("🔄 Logging configuration updated in real-time")
    except Exception as e:
        logger.error("❌ Failed to update logging configuration: %s", e)


async def build_registry(config: Configuration) -> ToolRegistry:
    """Create the registry and connect every enabled MCP server as a provider."""
    registry = ToolRegistry(aliases=config.get_registry_config()["tool_aliases"])

    for name, server_config in config.get_mcp_servers_config().items():
        if not server_config.get("enabled", False):
            logger.info("Skipping disabled server: %s", name)
            continue
        try:
            provider = await McpToolProvider.connect_stdio(
                name,
                server_config,
                system_prompt=server_config.get("system_prompt"),
                description=server_config.get("description", ""),
            )
        except Exception as e:
            logger.error("Failed to connect MCP server '%s': %s", name, e)
            continue
        registry.register_provider(provider)

    return registry


def build_context_detector(config: Configuration) -> ContextDetector:
    detector = ContextDetector()
    for provider_id, route in config.get_routes_config().items():
        detector.register_provider(provider_id, route["match"], route.get("id_pattern"))
    return detector


logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


async def main() -> None:
    """Main entry point - WebSocket interface with graceful shutdown handling."""
    config = Configuration()

    configure_logging(config.get_logging_config())
    config.subscribe_to_changes(_on_logging_config_change)

    registry = await build_registry(config)
    executor = ToolExecutor.from_config(registry, config)
    llm_client = LLMClient(config)
    orchestrator = ConversationOrchestrator.from_config(
        config, registry, executor, llm_client, build_context_detector(config)
    )

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    try:
        await config.start_watching()

        server_task = asyncio.create_task(run_websocket_server(orchestrator, config))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, pending = await asyncio.wait([server_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED)

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if server_task in done and (exception := server_task.exception()) is not None:
            raise exception

    except Exception as e:
        logger.error("Application error: %s", e)
        raise
    finally:
        await config.stop_watching()
        logger.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()
