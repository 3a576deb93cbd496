"""
WebSocket Server

Thin communication layer between a frontend and the ConversationOrchestrator.
Creates sessions, relays chat messages, and streams tool progress and
final responses for the sessions a socket owns.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from toolchat.chat.models import (
    ExecutionStrategy,
    ImageAttachment,
    OrchestratorEvent,
    SendMessageResult,
    ToolEvent,
    ToolsCalledEvent,
)
from toolchat.errors import ProviderNotFoundError, SessionNotFoundError

if TYPE_CHECKING:
    from toolchat.chat.chat_orchestrator import ConversationOrchestrator
    from toolchat.config import Configuration

logger = logging.getLogger(__name__)


# Pydantic models for WebSocket message validation
class CreateSessionPayload(BaseModel):
    context: dict[str, Any] = Field(default_factory=dict)


class ChatPayload(BaseModel):
    session_id: str
    text: str
    strategy: ExecutionStrategy | None = None
    image: ImageAttachment | None = None


class CloseSessionPayload(BaseModel):
    session_id: str


class WebSocketResponse(BaseModel):
    """WebSocket response structure."""

    request_id: str
    status: str  # "processing", "chunk", "completed", "error"
    chunk: dict[str, Any] = Field(default_factory=dict)


class _Connection:
    """Per-socket state: owned sessions and the outbound frame queue."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.outbox: asyncio.Queue[WebSocketResponse] = asyncio.Queue()
        self.session_ids: set[str] = set()
        self.execution_sessions: dict[str, str] = {}
        self.request_ids: dict[str, str] = {}

    def send(self, response: WebSocketResponse) -> None:
        self.outbox.put_nowait(response)

    async def pump(self) -> None:
        while True:
            response = await self.outbox.get()
            await self.websocket.send_text(response.model_dump_json())


class WebSocketServer:
    """
    Pure WebSocket communication server.

    All conversation logic is delegated to the ConversationOrchestrator.
    """

    def __init__(self, orchestrator: ConversationOrchestrator, configuration: Configuration) -> None:
        self.orchestrator = orchestrator
        self.configuration = configuration
        self.active_connections: list[_Connection] = []
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="Toolchat WebSocket Server")

        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.websocket("/ws/chat")
        async def websocket_endpoint(websocket: WebSocket):  # type: ignore
            await self._handle_websocket_connection(websocket)

        @app.get("/health")
        async def health():  # type: ignore
            return {
                "status": "healthy",
                "sessions": len(self.orchestrator.get_active_sessions()),
                "connections": len(self.active_connections),
            }

        return app

    @property
    def default_strategy(self) -> ExecutionStrategy:
        return self.configuration.get_websocket_config().get("default_strategy", "parallel")

    async def _handle_websocket_connection(self, websocket: WebSocket) -> None:
        await websocket.accept()
        conn = _Connection(websocket)
        self.active_connections.append(conn)
        logger.info("WebSocket connection established. Total connections: %d", len(self.active_connections))

        unsubscribe_tools = self.orchestrator.on_tool_event(lambda event: self._relay_tool_event(conn, event))
        unsubscribe_final = self.orchestrator.on_final_response(lambda event: self._relay_final(conn, event))
        pump = asyncio.create_task(conn.pump())

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message_data = json.loads(data)
                except json.JSONDecodeError as e:
                    self._send_error(conn, "unknown", f"Invalid JSON: {e}")
                    continue
                await self._dispatch(conn, message_data)

        except WebSocketDisconnect:
            logger.info("WebSocket disconnected")
        finally:
            unsubscribe_tools()
            unsubscribe_final()
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
            for session_id in conn.session_ids:
                self.orchestrator.close_session(session_id)
            self.active_connections.remove(conn)
            logger.info("WebSocket connection closed. Total connections: %d", len(self.active_connections))

    async def _dispatch(self, conn: _Connection, message_data: dict[str, Any]) -> None:
        action = message_data.get("action")
        request_id = str(message_data.get("request_id", "unknown"))
        payload = message_data.get("payload", {})

        try:
            if action == "create_session":
                self._handle_create_session(conn, request_id, CreateSessionPayload.model_validate(payload))
            elif action == "chat":
                await self._handle_chat(conn, request_id, ChatPayload.model_validate(payload))
            elif action == "close_session":
                self._handle_close_session(conn, request_id, CloseSessionPayload.model_validate(payload))
            else:
                logger.warning("Unknown action: %s", action)
                self._send_error(
                    conn,
                    request_id,
                    "Unknown action. Expected 'create_session', 'chat' or 'close_session'",
                )
        except ValidationError as e:
            self._send_error(conn, request_id, f"Invalid message format: {e}")
        except (SessionNotFoundError, ProviderNotFoundError) as e:
            self._send_error(conn, request_id, str(e))

    def _handle_create_session(self, conn: _Connection, request_id: str, payload: CreateSessionPayload) -> None:
        session = self.orchestrator.create_session(payload.context)
        conn.session_ids.add(session.id)
        conn.send(
            WebSocketResponse(
                request_id=request_id,
                status="completed",
                chunk={"type": "session_created", "session_id": session.id, "provider": session.provider},
            )
        )

    async def _handle_chat(self, conn: _Connection, request_id: str, payload: ChatPayload) -> None:
        if payload.session_id not in conn.session_ids:
            raise SessionNotFoundError(payload.session_id)

        strategy = payload.strategy or self.default_strategy
        conn.request_ids[payload.session_id] = request_id
        logger.info("→ WebSocket: chat message for session %s (%s)", payload.session_id, strategy)

        conn.send(
            WebSocketResponse(
                request_id=request_id,
                status="processing",
                chunk={"metadata": {"user_message": payload.text, "strategy": strategy}},
            )
        )

        result: SendMessageResult = await self.orchestrator.send_message(
            payload.session_id, payload.text, strategy, payload.image
        )
        pending = result.background is not None and not result.background.done()

        conn.send(
            WebSocketResponse(
                request_id=request_id,
                status="chunk" if pending else "completed",
                chunk={
                    "type": "response",
                    "data": result.response.text(),
                    "metadata": {
                        "message_id": result.response.id,
                        "tool_execution": (
                            result.tool_execution.model_dump(mode="json") if result.tool_execution else None
                        ),
                        "awaiting_tools": pending,
                    },
                },
            )
        )

    def _handle_close_session(self, conn: _Connection, request_id: str, payload: CloseSessionPayload) -> None:
        conn.session_ids.discard(payload.session_id)
        closed = self.orchestrator.close_session(payload.session_id)
        conn.send(
            WebSocketResponse(
                request_id=request_id,
                status="completed",
                chunk={"type": "session_closed", "session_id": payload.session_id, "closed": closed},
            )
        )

    def _relay_tool_event(self, conn: _Connection, event: ToolEvent) -> None:
        if isinstance(event, ToolsCalledEvent) and event.session_id in conn.session_ids:
            if event.execution_id:
                conn.execution_sessions[event.execution_id] = event.session_id
        session_id = conn.execution_sessions.get(event.execution_id or "")
        if session_id is None:
            return

        conn.send(
            WebSocketResponse(
                request_id=conn.request_ids.get(session_id, "unknown"),
                status="processing",
                chunk={"type": "tool_event", "session_id": session_id, "data": event.model_dump(mode="json")},
            )
        )
        if event.type == "tools_completed":
            conn.execution_sessions.pop(event.execution_id or "", None)

    def _relay_final(self, conn: _Connection, event: OrchestratorEvent) -> None:
        if event.session_id not in conn.session_ids:
            return

        request_id = conn.request_ids.get(event.session_id, "unknown")
        if event.type == "final_response_error":
            self._send_error(conn, request_id, event.error)
            return

        conn.send(
            WebSocketResponse(
                request_id=request_id,
                status="completed",
                chunk={
                    "type": "final_response",
                    "session_id": event.session_id,
                    "data": event.final_response.text(),
                    "metadata": {
                        "rounds": event.rounds,
                        "stop_reason": event.stop_reason,
                        "tool_execution": (
                            event.tool_execution.model_dump(mode="json") if event.tool_execution else None
                        ),
                    },
                },
            )
        )

    def _send_error(self, conn: _Connection, request_id: str, error_message: str) -> None:
        conn.send(WebSocketResponse(request_id=request_id, status="error", chunk={"error": error_message}))

    async def start_server(self) -> None:
        """Serve until shutdown, then clean up the orchestrator."""
        websocket_config = self.configuration.get_websocket_config()
        host = websocket_config.get("host", "localhost")
        port = websocket_config.get("port", 8000)

        logger.info("Starting WebSocket server on %s:%s", host, port)
        server = uvicorn.Server(uvicorn.Config(self.app, host=host, port=port, log_level="info"))

        try:
            await server.serve()
        finally:
            logger.info("Shutting down WebSocket server and cleaning up resources...")
            try:
                await self.orchestrator.cleanup()
            except Exception as e:
                logger.error("Error during orchestrator cleanup: %s", e)


async def run_websocket_server(orchestrator: ConversationOrchestrator, configuration: Configuration) -> None:
    server = WebSocketServer(orchestrator, configuration)
    await server.start_server()
