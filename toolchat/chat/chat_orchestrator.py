"""
Conversation Orchestrator

Owns the session table and drives one exchange per user message:
1. Appends the user message to the session history
2. Asks the language model for a reply, offering the session provider's tools
3. Runs any requested tool calls through the ToolExecutor
4. Feeds the results back and repeats until the model stops asking for tools

Two strategies are supported:
- parallel: a single tool round, the follow-up reply is returned as final
- sequential: the first reply is returned at once and further tool rounds
  continue in a background task; the final reply arrives as a
  `final_response` event (and as the task's result)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from toolchat.errors import ProviderNotFoundError, SessionNotFoundError

from .conversation import build_tool_result_message, build_user_message, optimize_history
from .events import EventChannel
from .logging_utils import log_directional_flow, log_llm_reply, log_performance
from .models import (
    ChatMessage,
    ChatSession,
    ExecutionStrategy,
    FinalResponseErrorEvent,
    FinalResponseEvent,
    ImageAttachment,
    LLMReply,
    OrchestratorEvent,
    SendMessageResult,
    SessionContext,
    StopReason,
    ToolBatchResult,
    ToolCall,
    ToolEvent,
    ToolResult,
    utc_now,
)

if TYPE_CHECKING:
    from toolchat.clients.base import LanguageModelClient
    from toolchat.config import Configuration
    from toolchat.providers.base import ToolDefinition
    from toolchat.providers.registry import ToolRegistry

    from .context_detector import ContextDetector
    from .tool_executor import ToolExecutor

logger = logging.getLogger(__name__)

# Keys of the create_session() context that map onto typed SessionContext fields
_RESERVED_CONTEXT_KEYS = {"route", "user", "organization", "prompt_id", "promptId"}


def _entity_id(entity: Any) -> str:
    if entity is None:
        return "unknown"
    if isinstance(entity, dict):
        return str(entity.get("id") or "unknown")
    return str(getattr(entity, "id", None) or "unknown")


class ConversationOrchestrator:
    """
    Conversation orchestrator - coordinates model, tools and sessions.

    Sessions are process-local. Only this class mutates them.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        executor: ToolExecutor,
        llm_client: LanguageModelClient,
        context_detector: ContextDetector | None = None,
        max_tool_rounds: int = 8,
        default_provider: str | None = None,
        max_history_messages: int = 20,
        session_max_age: float = 30 * 60,
        llm_reply_truncate: int = 500,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.llm_client = llm_client
        self.context_detector = context_detector
        self.max_tool_rounds = max_tool_rounds
        self.default_provider = default_provider
        self.max_history_messages = max_history_messages
        self.session_max_age = session_max_age
        self.llm_reply_truncate = llm_reply_truncate

        self._sessions: dict[str, ChatSession] = {}
        self._background_tasks: set[asyncio.Task[FinalResponseEvent]] = set()

        self.tool_events: EventChannel[ToolEvent] = EventChannel("tool_event")
        self.final_events: EventChannel[OrchestratorEvent] = EventChannel("final_response")

        # Relay executor events to this orchestrator's listeners
        self._executor_unsubscribe = self.executor.subscribe(self.tool_events.emit)

    @classmethod
    def from_config(
        cls,
        configuration: Configuration,
        registry: ToolRegistry,
        executor: ToolExecutor,
        llm_client: LanguageModelClient,
        context_detector: ContextDetector | None = None,
    ) -> ConversationOrchestrator:
        session_conf = configuration.get_session_config()
        return cls(
            registry,
            executor,
            llm_client,
            context_detector=context_detector,
            max_tool_rounds=configuration.get_max_tool_rounds(),
            default_provider=session_conf.get("default_provider"),
            max_history_messages=session_conf["max_history_messages"],
            session_max_age=session_conf["max_age_seconds"],
            llm_reply_truncate=configuration.get_chat_service_config()
            .get("logging", {})
            .get("llm_reply", 500),
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_tool_event(self, callback: Callable[[ToolEvent], None]) -> Callable[[], None]:
        """Subscribe to tool execution events. Returns an unsubscribe function."""
        return self.tool_events.subscribe(callback)

    def on_final_response(
        self, callback: Callable[[OrchestratorEvent], None]
    ) -> Callable[[], None]:
        """Subscribe to final_response / final_response_error events."""
        return self.final_events.subscribe(callback)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(self, context: dict[str, Any] | None = None) -> ChatSession:
        """
        Create a session for the provider that governs the given route.

        Recognised keys: route, user, organization, prompt_id; any other key
        (canvas, selected objects, ...) is carried into the tool context.
        """
        context = dict(context or {})
        route = context.get("route", "")

        detected: dict[str, Any] = {}
        provider_id: str | None = None
        if self.context_detector is not None:
            detection = self.context_detector.detect_context(route)
            provider_id = detection.provider
            detected = {k: v for k, v in detection.context.items() if k != "route"}

        provider_id = provider_id or self.default_provider
        if provider_id is None:
            active = self.registry.get_active_providers()
            if not active:
                raise ProviderNotFoundError("<none registered>")
            provider_id = active[0].id
        provider = self.registry.get_provider(provider_id)

        extras = {k: v for k, v in context.items() if k not in _RESERVED_CONTEXT_KEYS}
        session_context = SessionContext.model_validate(
            {
                **extras,
                **detected,
                "current_route": route,
                "active_provider": provider_id,
                "available_providers": [provider_id],
                "user_id": _entity_id(context.get("user")),
                "organization_id": _entity_id(context.get("organization")),
                "user": context.get("user"),
                "organization": context.get("organization"),
                "prompt_id": context.get("prompt_id") or context.get("promptId") or "default",
            }
        )

        provider_extra = provider.extract_context(route, session_context.to_handler_context())
        if provider_extra:
            session_context = SessionContext.model_validate(
                {**session_context.to_handler_context(), **provider_extra}
            )

        # Missing fields may still arrive through update_session_context
        valid, errors = provider.validate_context(session_context.to_handler_context())
        if not valid:
            logger.warning("Incomplete context for provider %s: %s", provider_id, "; ".join(errors))

        session = ChatSession(provider=provider_id, context=session_context)

        system_prompt = provider.get_system_prompt(session_context.to_handler_context(), False)
        if system_prompt:
            session.messages.append(ChatMessage(role="system", content=system_prompt))

        self._sessions[session.id] = session
        logger.info("Created session %s for provider %s", session.id, provider_id)
        return session

    def get_session(self, session_id: str) -> ChatSession | None:
        """Get a live session by id.

        Returns:
            The session object itself (not a copy), or None if the id is
            unknown, closed or swept.
        """
        return self._sessions.get(session_id)

    def get_active_sessions(self) -> list[ChatSession]:
        """Snapshot of the open sessions in creation order."""
        return list(self._sessions.values())

    def update_session_context(self, session_id: str, context_update: dict[str, Any]) -> bool:
        """Merge new values (e.g. a changed canvas) into a session's context."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.context = SessionContext.model_validate(
            {**session.context.to_handler_context(), **context_update}
        )
        session.touch()
        return True

    def close_session(self, session_id: str) -> bool:
        """
        Remove a session. A background continuation still running for it
        completes and emits its final_response for the now-absent id.
        """
        closed = self._sessions.pop(session_id, None) is not None
        if closed:
            logger.info("Closed session %s", session_id)
        return closed

    def cleanup_sessions(self, max_age: float | None = None) -> int:
        """Drop sessions idle for longer than max_age seconds. Returns the count."""
        cutoff = utc_now() - timedelta(seconds=max_age if max_age is not None else self.session_max_age)
        stale = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info("Cleaned up %d idle sessions", len(stale))
        return len(stale)

    def get_available_tools(self, provider_id: str) -> list[ToolDefinition]:
        try:
            return self.registry.get_provider_tools(provider_id)
        except ProviderNotFoundError as e:
            logger.error("Error getting tools for provider %s: %s", provider_id, e)
            return []

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(
        self,
        session_id: str,
        message: str,
        strategy: ExecutionStrategy = "parallel",
        image: ImageAttachment | None = None,
    ) -> SendMessageResult:
        """
        Send a user message and return the model's reply.

        Errors on this path never escape: they become an assistant error
        message that is appended to the history and returned.

        Raises:
            SessionNotFoundError: unknown session id
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.is_processing:
            logger.warning("Session %s received a message while still processing", session_id)

        user_message = build_user_message(message, image)
        session.messages.append(user_message)
        session.touch()
        session.is_processing = True

        log_directional_flow("→", "Orchestrator", "processing %s message for session %s", strategy, session_id)
        try:
            tools = self.get_available_tools(session.provider)
            provider = self.registry.get_provider(session.provider)
            handler_context = session.context.to_handler_context()
            system_prompt = provider.get_system_prompt(handler_context, user_message.has_image())

            # The model must see every tool_use next to its tool_result, so
            # history is only trimmed while it holds no tool results
            if session.has_tool_results():
                history = list(session.messages)
            else:
                history = optimize_history(session.messages, self.max_history_messages)

            if strategy == "sequential":
                return await self._handle_sequential(session, tools, system_prompt, history)
            return await self._handle_parallel(session, tools, system_prompt, history)

        except Exception as e:
            logger.error("Error processing message for session %s: %s", session_id, e)
            error_message = ChatMessage(role="assistant", content=f"I encountered an error: {e}")
            session.messages.append(error_message)
            session.touch()
            return SendMessageResult(response=error_message)
        finally:
            session.is_processing = False
            log_directional_flow("←", "Orchestrator", "finished synchronous turn for session %s", session_id)

    async def _handle_parallel(
        self,
        session: ChatSession,
        tools: list[ToolDefinition],
        system_prompt: str | None,
        history: list[ChatMessage],
    ) -> SendMessageResult:
        reply = await self.llm_client.send(history, tools, {"system_prompt": system_prompt})
        self._log_reply(reply, "Initial LLM response")
        session.messages.append(reply.message)
        session.touch()

        if not reply.tool_calls:
            return SendMessageResult(response=reply.message)

        logger.info("Executing %d tools in parallel", len(reply.tool_calls))
        batch = await self.executor.execute_tools(
            reply.tool_calls,
            session.context.to_handler_context(),
            "parallel",
            session.id,
        )
        session.current_tool_execution = batch.execution
        self._append_tool_results(session, batch.results)

        provider = self.registry.get_provider(session.provider)
        follow_up = await self.llm_client.continue_with_results(
            list(session.messages),
            batch.results,
            tools,
            provider.get_system_prompt(session.context.to_handler_context(), False),
        )
        self._log_reply(follow_up, "Tool call follow-up response")
        session.messages.append(follow_up.message)
        session.touch()

        return SendMessageResult(response=follow_up.message, tool_execution=batch)

    async def _handle_sequential(
        self,
        session: ChatSession,
        tools: list[ToolDefinition],
        system_prompt: str | None,
        history: list[ChatMessage],
    ) -> SendMessageResult:
        logger.info("Starting sequential tool execution for session %s", session.id)
        reply = await self.llm_client.send(history, tools, {"system_prompt": system_prompt})
        self._log_reply(reply, "Initial LLM response")
        session.messages.append(reply.message)
        session.touch()

        initial_response = reply.message.model_copy()
        if not reply.tool_calls:
            return SendMessageResult(initial_response=initial_response, response=reply.message)

        task = asyncio.create_task(
            self._run_background(session, reply.message, reply.tool_calls, tools, system_prompt),
            name=f"sequential-tools-{session.id}",
        )
        self._background_tasks.add(task)
        task.add_done_callback(functools.partial(self._on_background_done, session.id))

        return SendMessageResult(
            initial_response=initial_response,
            response=reply.message,
            background=task,
        )

    async def _run_background(
        self,
        session: ChatSession,
        current_message: ChatMessage,
        current_tool_calls: list[ToolCall],
        tools: list[ToolDefinition],
        system_prompt: str | None,
    ) -> FinalResponseEvent:
        async with log_performance(f"Background tool rounds for session {session.id}"):
            event = await self._continue_sequential(
                session, current_message, current_tool_calls, tools, system_prompt
            )
        self.final_events.emit(event)
        return event

    async def _continue_sequential(
        self,
        session: ChatSession,
        current_message: ChatMessage,
        current_tool_calls: list[ToolCall],
        tools: list[ToolDefinition],
        system_prompt: str | None,
    ) -> FinalResponseEvent:
        """
        Keep executing tool rounds while the model requests tools.

        Stops when a reply has no tool calls, when max_tool_rounds rounds
        have run, or at the first error (which is appended to the history).
        Results of every round are concatenated into one flat list.
        """
        all_results: list[ToolResult] = []
        last_batch: ToolBatchResult | None = None
        rounds = 0
        stop_reason: StopReason = "completed"

        while current_tool_calls and rounds < self.max_tool_rounds:
            logger.info(
                "Sequential execution: processing %d tools (round %d/%d)",
                len(current_tool_calls),
                rounds + 1,
                self.max_tool_rounds,
            )
            try:
                batch = await self.executor.execute_tools(
                    current_tool_calls,
                    session.context.to_handler_context(),
                    "sequential",
                    session.id,
                )
                last_batch = batch
                session.current_tool_execution = batch.execution
                all_results.extend(batch.results)

                failed = [r.error for r in batch.results if not r.success]
                if failed:
                    logger.warning("%d tools failed in this batch: %s", len(failed), failed)

                self._append_tool_results(session, batch.results)

                follow_up = await self.llm_client.continue_with_results(
                    list(session.messages), batch.results, tools, system_prompt
                )
                self._log_reply(follow_up, f"Sequential follow-up (round {rounds + 1})")
                session.messages.append(follow_up.message)
                session.touch()

                current_message = follow_up.message
                current_tool_calls = follow_up.tool_calls
                rounds += 1

                if not current_tool_calls:
                    logger.info(
                        "Sequential execution complete after %d rounds with %d tools executed",
                        rounds,
                        len(all_results),
                    )
                    break
            except Exception as e:
                logger.error("Error in sequential execution round %d: %s", rounds + 1, e)
                error_message = ChatMessage(
                    role="assistant",
                    content=f"I encountered an error while executing tools: {e}",
                )
                session.messages.append(error_message)
                session.touch()
                current_message = error_message
                current_tool_calls = []
                stop_reason = "error"
                break

        if current_tool_calls and stop_reason == "completed":
            stop_reason = "round_limit"
            logger.warning(
                "Maximum tool rounds (%d) reached for session %s, stopping",
                self.max_tool_rounds,
                session.id,
            )

        tool_execution = None
        if last_batch is not None:
            tool_execution = ToolBatchResult(
                execution_id=last_batch.execution_id,
                results=all_results,
                execution=last_batch.execution,
            )

        return FinalResponseEvent(
            session_id=session.id,
            final_response=current_message,
            tool_execution=tool_execution,
            rounds=rounds,
            stop_reason=stop_reason,
        )

    def _on_background_done(self, session_id: str, task: asyncio.Task[FinalResponseEvent]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            logger.warning("Background tool execution for session %s was cancelled", session_id)
            return
        error = task.exception()
        if error is not None:
            logger.error("Background processing error for session %s: %s", session_id, error)
            self.final_events.emit(FinalResponseErrorEvent(session_id=session_id, error=str(error)))

    def _append_tool_results(self, session: ChatSession, results: list[ToolResult]) -> None:
        for result in results:
            session.messages.append(build_tool_result_message(result))
        session.touch()

    def _log_reply(self, reply: LLMReply, context: str) -> None:
        log_llm_reply(reply.model_dump(mode="json"), context, self.llm_reply_truncate)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    @property
    def pending_background_tasks(self) -> int:
        return len(self._background_tasks)

    async def wait_for_background(self) -> None:
        """Wait until every background continuation has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def cleanup(self) -> None:
        """Drain background work, run provider cleanup and close the model client."""
        logger.info("→ Orchestrator: starting cleanup")
        await self.wait_for_background()
        self._executor_unsubscribe()
        await self.registry.cleanup()

        close = getattr(self.llm_client, "close", None)
        if close is not None:
            try:
                await close()
                logger.info("LLM client closed successfully")
            except Exception as e:
                logger.warning("Error closing LLM client: %s", e)

        logger.info("← Orchestrator: cleanup completed")
