#!/usr/bin/env python3
"""
Tests for the WebSocket surface using FastAPI's TestClient.
"""

from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from chat_fakes import ScriptedLLM, call, provider, reply, tool
from toolchat.chat.chat_orchestrator import ConversationOrchestrator
from toolchat.chat.tool_executor import ToolExecutor
from toolchat.providers.registry import ToolRegistry
from toolchat.websocket_server import WebSocketServer


def _server(llm: ScriptedLLM) -> WebSocketServer:
    registry = ToolRegistry([provider("retouchr", [tool("ping", lambda i, c: {"pong": True})])])
    orchestrator = ConversationOrchestrator(
        registry, ToolExecutor(registry), llm, default_provider="retouchr"
    )
    configuration = MagicMock()
    configuration.get_websocket_config.return_value = {"default_strategy": "parallel"}
    return WebSocketServer(orchestrator, configuration)


def _create_session(ws) -> str:
    ws.send_json({"action": "create_session", "request_id": "r0", "payload": {"context": {"route": "/"}}})
    created = ws.receive_json()
    assert created["status"] == "completed"
    assert created["chunk"]["type"] == "session_created"
    assert created["chunk"]["provider"] == "retouchr"
    return created["chunk"]["session_id"]


def _receive_until(ws, chunk_type: str) -> list[dict]:
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["chunk"].get("type") == chunk_type or frame["status"] == "error":
            return frames


def test_health():
    server = _server(ScriptedLLM())

    response = TestClient(server.app).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "sessions": 0, "connections": 0}


def test_parallel_chat_streams_tool_events_then_response():
    server = _server(ScriptedLLM(reply("", call("t1", "ping")), reply("pong received")))

    with TestClient(server.app).websocket_connect("/ws/chat") as ws:
        session_id = _create_session(ws)
        ws.send_json(
            {"action": "chat", "request_id": "r1", "payload": {"session_id": session_id, "text": "ping please"}}
        )
        frames = _receive_until(ws, "response")

    assert frames[0]["status"] == "processing"
    assert frames[0]["chunk"]["metadata"]["strategy"] == "parallel"
    tool_events = [f["chunk"]["data"]["type"] for f in frames if f["chunk"].get("type") == "tool_event"]
    assert tool_events == ["tools_called", "tool_started", "tool_completed", "tools_completed"]
    final = frames[-1]
    assert final["request_id"] == "r1"
    assert final["status"] == "completed"
    assert final["chunk"]["data"] == "pong received"
    assert final["chunk"]["metadata"]["awaiting_tools"] is False
    print("✅ WebSocket parallel chat test passed")


def test_sequential_chat_sends_final_response():
    server = _server(ScriptedLLM(reply("On it", call("t1", "ping")), reply("All done")))

    with TestClient(server.app).websocket_connect("/ws/chat") as ws:
        session_id = _create_session(ws)
        ws.send_json(
            {
                "action": "chat",
                "request_id": "r2",
                "payload": {"session_id": session_id, "text": "ping", "strategy": "sequential"},
            }
        )
        frames = _receive_until(ws, "final_response")

    responses = [f for f in frames if f["chunk"].get("type") == "response"]
    assert responses[0]["chunk"]["data"] == "On it"
    final = frames[-1]
    assert final["chunk"]["type"] == "final_response"
    assert final["chunk"]["data"] == "All done"
    assert final["chunk"]["metadata"]["stop_reason"] == "completed"
    assert final["chunk"]["metadata"]["rounds"] == 1


def test_unknown_session_and_action_errors():
    server = _server(ScriptedLLM())

    with TestClient(server.app).websocket_connect("/ws/chat") as ws:
        ws.send_json({"action": "chat", "request_id": "r3", "payload": {"session_id": "nope", "text": "hi"}})
        missing = ws.receive_json()
        ws.send_json({"action": "dance", "request_id": "r4"})
        unknown = ws.receive_json()
        ws.send_json({"action": "chat", "request_id": "r5", "payload": {"text": "no session"}})
        invalid = ws.receive_json()

    assert missing["status"] == "error"
    assert missing["chunk"]["error"] == "Session not found: nope"
    assert unknown["status"] == "error"
    assert "Unknown action" in unknown["chunk"]["error"]
    assert invalid["status"] == "error"
    assert invalid["chunk"]["error"].startswith("Invalid message format")


def test_close_session_and_disconnect_cleanup():
    server = _server(ScriptedLLM())
    orchestrator = server.orchestrator

    with TestClient(server.app).websocket_connect("/ws/chat") as ws:
        closed_id = _create_session(ws)
        kept_id = _create_session(ws)
        ws.send_json({"action": "close_session", "request_id": "r6", "payload": {"session_id": closed_id}})
        closed = ws.receive_json()
        assert closed["chunk"] == {"type": "session_closed", "session_id": closed_id, "closed": True}
        assert orchestrator.get_session(kept_id) is not None

    assert orchestrator.get_session(kept_id) is None
    assert server.active_connections == []
