#!/usr/bin/env python3
"""
Tests for ToolRegistry name resolution and invocation.
"""

import asyncio

import pytest

from chat_fakes import provider, tool
from toolchat.errors import ProviderNotFoundError, ToolNotFoundError
from toolchat.providers.base import ToolProvider
from toolchat.providers.registry import ToolRegistry


def _canvas_registry() -> ToolRegistry:
    canvas = provider(
        "canvas",
        [
            tool("set_canvas_background", lambda i, c: {"color": i.get("color")}),
            tool("style_text", lambda i, c: "styled"),
        ],
    )
    files = provider("files", [tool("read_file", lambda i, c: "contents")])
    return ToolRegistry([canvas, files])


def test_namespaced_resolution():
    """A provider.tool name resolves against that provider only."""
    registry = _canvas_registry()

    resolved = registry.resolve("canvas.style_text")

    assert resolved.provider.id == "canvas"
    assert resolved.tool.name == "style_text"
    assert resolved.qualified_name == "canvas.style_text"
    assert not resolved.via_alias
    print("✅ Namespaced resolution test passed")


def test_namespaced_unknown_provider():
    registry = _canvas_registry()

    with pytest.raises(ProviderNotFoundError, match="Provider not found: paint"):
        registry.resolve("paint.style_text")


def test_namespaced_unknown_tool():
    registry = _canvas_registry()

    with pytest.raises(ToolNotFoundError, match="not found in provider canvas"):
        registry.resolve("canvas.read_file")


def test_bare_name_search_uses_registration_order():
    """When two providers expose the same name the first registered wins."""
    first = provider("first", [tool("ping", lambda i, c: "first")])
    second = provider("second", [tool("ping", lambda i, c: "second")])
    registry = ToolRegistry([first, second])

    assert registry.resolve("ping").provider.id == "first"
    print("✅ Registration order test passed")


def test_alias_resolution():
    """Unknown bare names fall back to the alias table."""
    registry = _canvas_registry()

    resolved = registry.resolve("set_background")

    assert resolved.tool.name == "set_canvas_background"
    assert resolved.provider.id == "canvas"
    assert resolved.via_alias
    print("✅ Alias resolution test passed")


def test_custom_aliases_extend_defaults():
    registry = ToolRegistry(
        [provider("files", [tool("read_file", lambda i, c: "x")])],
        aliases={"cat": "read_file"},
    )

    assert registry.resolve("cat").tool.name == "read_file"
    assert registry.aliases["set_bg"] == "set_canvas_background"


def test_unknown_tool_lists_available_tools():
    registry = _canvas_registry()

    with pytest.raises(ToolNotFoundError) as exc_info:
        registry.resolve("launch_rocket")

    message = str(exc_info.value)
    assert "Tool launch_rocket not found in any provider" in message
    for qualified in ("canvas.set_canvas_background", "canvas.style_text", "files.read_file"):
        assert qualified in message
    print("✅ Unknown tool message test passed")


def test_resolve_is_idempotent():
    """Resolving the same name twice gives the same tool, no hidden state."""
    registry = _canvas_registry()

    first = registry.resolve("change_background")
    second = registry.resolve("change_background")

    assert first == second
    assert first.tool is second.tool
    assert first.tool.handler is second.tool.handler


def test_resolution_follows_provider_changes():
    registry = _canvas_registry()
    assert registry.resolve("read_file").provider.id == "files"

    registry.deactivate("files")

    with pytest.raises(ToolNotFoundError):
        registry.resolve("read_file")


async def test_execute_tool_merges_provider_id_into_context():
    seen = {}

    async def handler(tool_input, context):
        seen.update(context)
        await asyncio.sleep(0)
        return {"echo": tool_input["value"]}

    registry = ToolRegistry([provider("echo", [tool("echo", handler)])])

    result = await registry.execute_tool("echo", {"value": 3}, {"user_id": "u1"})

    assert result.success
    assert result.data == {"echo": 3}
    assert seen == {"provider_id": "echo", "user_id": "u1"}
    print("✅ Context merge test passed")


async def test_execute_tool_sync_handler():
    registry = _canvas_registry()

    result = await registry.execute_tool("set_bg", {"color": "red"})

    assert result.success
    assert result.data == {"color": "red"}


async def test_execute_tool_propagates_handler_errors():
    def boom(tool_input, context):
        raise RuntimeError("handler exploded")

    registry = ToolRegistry([provider("p", [tool("boom", boom)])])

    with pytest.raises(RuntimeError, match="handler exploded"):
        await registry.execute_tool("boom", {})


def test_register_provider_replaces_existing():
    registry = _canvas_registry()
    registry.register_provider(provider("files", [tool("write_file", lambda i, c: None)]))

    assert [t.name for t in registry.get_provider_tools("files")] == ["write_file"]
    assert len(registry.get_active_providers()) == 2


async def test_cleanup_continues_after_provider_failure():
    class FailingProvider(ToolProvider):
        async def cleanup(self):
            raise RuntimeError("cleanup failed")

    cleaned = []

    class TrackingProvider(ToolProvider):
        async def cleanup(self):
            cleaned.append(self.id)

    registry = ToolRegistry([FailingProvider("bad", []), TrackingProvider("good", [])])

    await registry.cleanup()

    assert cleaned == ["good"]
    print("✅ Registry cleanup test passed")
