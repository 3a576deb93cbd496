"""Configuration management for the tool-calling chat engine."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Callable
from typing import Any, cast

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

RUNTIME_CONFIG_ENV = "TOOLCHAT_RUNTIME_CONFIG"

# Provider name -> environment variable holding its API key
PROVIDER_KEY_MAP = {
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


class Configuration:
    """Event-driven configuration manager with observer pattern.

    Defaults come from the packaged ``config.yaml``. An optional runtime
    override file (constructor argument or ``TOOLCHAT_RUNTIME_CONFIG``) is
    deep-merged on top and can be watched for changes.
    """

    def __init__(self, runtime_config_path: str | None = None) -> None:
        self.load_env()
        self._default_config = self._load_yaml_config(
            os.path.join(os.path.dirname(__file__), "config.yaml")
        )
        self._runtime_config_path = runtime_config_path or os.getenv(RUNTIME_CONFIG_ENV)
        self._runtime_config_mtime: float | None = None
        self._current_config: dict[str, Any] = {}

        self._config_change_callbacks: list[Callable[[dict[str, Any]], None]] = []
        self._watch_task: asyncio.Task[None] | None = None

        self._reload_config(force=True)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        with open(config_path) as file:
            config = yaml.safe_load(file) or {}
            if not isinstance(config, dict):
                raise ValueError(f"Configuration file {config_path} must contain a dictionary")
            return cast(dict[str, Any], config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(
                    cast(dict[str, Any], result[key]), cast(dict[str, Any], value)
                )
            else:
                result[key] = value

        return result

    def _runtime_mtime(self) -> float | None:
        if self._runtime_config_path and os.path.exists(self._runtime_config_path):
            return os.path.getmtime(self._runtime_config_path)
        return None

    def _reload_config(self, force: bool = False) -> bool:
        """Rebuild the merged configuration if the runtime file changed.

        Returns:
            True if config was actually reloaded, False if no changes.
        """
        current_mtime = self._runtime_mtime()
        if not force and current_mtime == self._runtime_config_mtime:
            return False

        old_config = self._current_config
        self._runtime_config_mtime = current_mtime

        merged = self._default_config
        if current_mtime is not None:
            try:
                override = self._load_yaml_config(cast(str, self._runtime_config_path))
                merged = self._deep_merge(self._default_config, override)
            except (yaml.YAMLError, OSError, ValueError) as e:
                logger.error("Ignoring unreadable runtime configuration: %s", e)

        self._current_config = merged

        if old_config and self._current_config != old_config:
            self._notify_config_change()
        return True

    def _notify_config_change(self) -> None:
        """Notify all registered observers of configuration changes."""
        for callback in list(self._config_change_callbacks):
            try:
                callback(self._current_config.copy())
            except Exception as e:
                logger.error("Error in config change callback: %s", e)

    def subscribe_to_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Subscribe to configuration change events.

        Args:
            callback: Function to call when config changes. Receives new
                config as argument.
        """
        if callback not in self._config_change_callbacks:
            self._config_change_callbacks.append(callback)

    def unsubscribe_from_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        if callback in self._config_change_callbacks:
            self._config_change_callbacks.remove(callback)

    async def start_watching(self, interval: float = 1.0) -> None:
        """Start the async file watching task for automatic config updates."""
        if self._watch_task is not None or not self._runtime_config_path:
            return

        self._watch_task = asyncio.create_task(self._watch_config_file(interval))
        logger.info("Started watching runtime configuration %s", self._runtime_config_path)

    async def stop_watching(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watch_task
            self._watch_task = None
            logger.info("Stopped watching runtime configuration file")

    async def _watch_config_file(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                if self._reload_config():
                    logger.info("Runtime configuration file changed - config reloaded")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error watching config file: %s", e)
                await asyncio.sleep(5)

    def reload_runtime_config(self) -> bool:
        """Manually reload runtime configuration.

        Returns:
            True if configuration was reloaded, False if no changes detected.
        """
        return self._reload_config()

    def get_config_dict(self) -> dict[str, Any]:
        return self._current_config

    # ------------------------------------------------------------------
    # Typed getters
    # ------------------------------------------------------------------

    @property
    def llm_api_key(self) -> str:
        """Get the API key for the active LLM provider.

        Raises:
            ValueError: If the API key is not found in environment variables.
        """
        active_provider = self._current_config.get("llm", {}).get("active", "openai")

        env_key = PROVIDER_KEY_MAP.get(active_provider)
        if not env_key:
            raise ValueError(f"Unknown provider '{active_provider}' - no API key mapping found")

        api_key = os.getenv(env_key)
        if not api_key:
            raise ValueError(
                f"API key '{env_key}' not found in environment variables "
                f"for provider '{active_provider}'"
            )
        return api_key

    def get_llm_config(self) -> dict[str, Any]:
        """Get active LLM provider configuration."""
        llm_config = self._current_config.get("llm", {})
        active_provider = llm_config.get("active", "openai")
        providers = llm_config.get("providers", {})

        if active_provider not in providers:
            raise ValueError(f"Active provider '{active_provider}' not found in providers config")

        return providers[active_provider]

    def get_connection_pool_config(self) -> dict[str, Any]:
        """Get HTTP connection pool settings for the LLM client."""
        conf = self._current_config.get("llm", {}).get("connection_pool", {})

        pool = {
            "max_connections": conf.get("max_connections", 50),
            "max_keepalive_connections": conf.get("max_keepalive_connections", 20),
            "keepalive_expiry_seconds": conf.get("keepalive_expiry_seconds", 300.0),
            "request_timeout_seconds": conf.get("request_timeout_seconds", 60.0),
        }
        if pool["max_connections"] < 1:
            raise ValueError("max_connections must be at least 1")
        if pool["max_keepalive_connections"] > pool["max_connections"]:
            raise ValueError("max_keepalive_connections must be <= max_connections")
        if pool["request_timeout_seconds"] <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        return pool

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration (level, format, per-module feature flags)."""
        return self._current_config.get("logging", {})

    def get_websocket_config(self) -> dict[str, Any]:
        """Get WebSocket server settings (host, port, default_strategy)."""
        return self._current_config.get("chat", {}).get("websocket", {})

    def get_chat_service_config(self) -> dict[str, Any]:
        return self._current_config.get("chat", {}).get("service", {})

    def get_max_tool_rounds(self) -> int:
        """Get the maximum number of background tool rounds (default: 8)."""
        max_rounds = self.get_chat_service_config().get("max_tool_rounds", 8)

        if not isinstance(max_rounds, int) or isinstance(max_rounds, bool) or max_rounds < 1:
            raise ValueError("max_tool_rounds must be a positive integer")

        return max_rounds

    def get_executor_config(self) -> dict[str, Any]:
        """Get tool executor configuration with validated defaults."""
        conf = self._current_config.get("chat", {}).get("executor", {})

        retention = conf.get("retention_seconds", 60)
        timeout = conf.get("tool_timeout_seconds", 60)
        truncate = conf.get("tool_arguments_truncate", 500)

        if retention < 0:
            raise ValueError("retention_seconds must not be negative")
        if timeout is not None and timeout <= 0:
            raise ValueError("tool_timeout_seconds must be positive or null")
        if truncate < 1:
            raise ValueError("tool_arguments_truncate must be at least 1")

        return {
            "retention_seconds": float(retention),
            "tool_timeout_seconds": float(timeout) if timeout is not None else None,
            "tool_arguments_truncate": int(truncate),
        }

    def get_session_config(self) -> dict[str, Any]:
        """Get session management configuration with validated defaults.

        Returns:
            default_provider, max_history_messages (int) and max_age_seconds
            (float).

        Raises:
            ValueError: a window below 1 or a non-positive max age
        """
        conf = self._current_config.get("chat", {}).get("sessions", {})

        max_history = conf.get("max_history_messages", 20)
        max_age = conf.get("max_age_seconds", 1800)

        if max_history < 1:
            raise ValueError("max_history_messages must be at least 1")
        if max_age <= 0:
            raise ValueError("max_age_seconds must be positive")

        return {
            "default_provider": conf.get("default_provider"),
            "max_history_messages": int(max_history),
            "max_age_seconds": float(max_age),
        }

    def get_routes_config(self) -> dict[str, dict[str, Any]]:
        """Provider id -> {match, id_pattern} used for route-based provider detection."""
        routes = self._current_config.get("chat", {}).get("routes") or {}
        for provider_id, route in routes.items():
            if not isinstance(route, dict) or not route.get("match"):
                raise ValueError(f"Route for provider '{provider_id}' needs a 'match' string")
        return routes

    def get_mcp_servers_config(self) -> dict[str, dict[str, Any]]:
        """MCP servers to expose as tool providers, keyed by provider id."""
        servers = self._current_config.get("mcp", {}).get("servers") or {}
        for name, server in servers.items():
            if not isinstance(server, dict) or not server.get("command"):
                raise ValueError(f"MCP server '{name}' needs a 'command'")
        return servers

    def get_registry_config(self) -> dict[str, Any]:
        """Get tool registry configuration.

        Returns:
            {"tool_aliases": {...}} with the extra alias -> tool name entries
            merged over the built-in alias table by ToolRegistry.

        Raises:
            ValueError: tool_aliases is present but not a mapping
        """
        conf = self._current_config.get("chat", {}).get("registry", {})
        aliases = conf.get("tool_aliases") or {}
        if not isinstance(aliases, dict):
            raise ValueError("tool_aliases must be a mapping of alias -> tool name")
        return {"tool_aliases": dict(aliases)}
