"""
Chat Engine Data Models

Data structures shared by the registry, the tool executor and the
conversation orchestrator: messages and content blocks, tool calls and
results, batch execution tracking, sessions and the event payloads emitted
while tools run. All strongly typed with Pydantic.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ---------- Type definitions ----------

Role = Literal["system", "user", "assistant"]
ExecutionStrategy = Literal["parallel", "sequential"]
ToolStatus = Literal["pending", "running", "completed", "failed"]
StopReason = Literal["completed", "round_limit", "error"]


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


# ==============================================================================
# CONTENT BLOCKS
# ==============================================================================


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageSource(BaseModel):
    type: Literal["base64"] = "base64"
    media_type: str = "image/jpeg"
    data: str


class ImageBlock(BaseModel):
    type: Literal["image"] = "image"
    source: ImageSource


class ToolUseBlock(BaseModel):
    """A tool invocation as it appears inside assistant content."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Tool outcome fed back to the model, keyed by the originating call id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]


# ==============================================================================
# TOOL CALLS AND RESULTS
# ==============================================================================


class ToolCall(BaseModel):
    """Tool call issued by the model. Immutable once issued."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    provider: str | None = None


class ToolResult(BaseModel):
    """Outcome of executing one tool call."""

    tool_call_id: str
    success: bool
    data: Any = None
    error: str | None = None
    execution_time: float = 0.0  # milliseconds


class ToolExecutionStatus(BaseModel):
    """Progress record for one tool inside a batch."""

    id: str
    name: str
    status: ToolStatus = "pending"
    start_time: datetime | None = None
    end_time: datetime | None = None
    result: ToolResult | None = None


class MultiToolExecution(BaseModel):
    """Tracking record for one batch handed to the executor."""

    id: str = Field(default_factory=new_id)
    total_tools: int
    completed_tools: int = 0
    current_tool: str | None = None
    start_time: datetime = Field(default_factory=utc_now)
    tools: list[ToolExecutionStatus] = Field(default_factory=list)

    def get_tool(self, tool_call_id: str) -> ToolExecutionStatus | None:
        return next((t for t in self.tools if t.id == tool_call_id), None)


class ToolBatchResult(BaseModel):
    """Return value of ToolExecutor.execute_tools."""

    execution_id: str
    results: list[ToolResult]
    execution: MultiToolExecution


# ==============================================================================
# MESSAGES AND SESSIONS
# ==============================================================================


class ChatMessage(BaseModel):
    """A single entry in a session's history."""

    id: str = Field(default_factory=new_id)
    role: Role
    content: str | list[ContentBlock] = ""
    timestamp: datetime = Field(default_factory=utc_now)
    tool_calls: list[ToolCall] | None = None
    provider: str | None = None

    def text(self) -> str:
        """Concatenated text content, ignoring non-text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_results(self) -> list[ToolResultBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def has_image(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(isinstance(b, ImageBlock) for b in self.content)


class SessionContext(BaseModel):
    """
    Application context attached to a session.

    Known fields are typed; anything else the host application passes in
    (canvas handles, selections, ...) is kept as an extra attribute and
    handed to tool handlers untouched.
    """

    model_config = ConfigDict(extra="allow", arbitrary_types_allowed=True)

    current_route: str = ""
    active_provider: str | None = None
    available_providers: list[str] = Field(default_factory=list)
    user_id: str = "unknown"
    organization_id: str = "unknown"
    user: Any = None
    organization: Any = None
    prompt_id: str = "default"

    def to_handler_context(self) -> dict[str, Any]:
        """Flatten into the plain dict tool handlers receive."""
        data = {name: getattr(self, name) for name in type(self).model_fields}
        data.update(self.model_extra or {})
        return data


class ChatSession(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    provider: str
    context: SessionContext
    messages: list[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_activity: datetime = Field(default_factory=utc_now)
    is_open: bool = False
    is_processing: bool = False
    current_tool_execution: MultiToolExecution | None = None

    def touch(self) -> None:
        self.last_activity = utc_now()

    def has_tool_results(self) -> bool:
        return any(m.role == "user" and m.tool_results() for m in self.messages)


class ImageAttachment(BaseModel):
    """Image sent along with a user message."""

    base64: str
    media_type: str = "image/jpeg"


# ==============================================================================
# LANGUAGE MODEL EXCHANGE
# ==============================================================================


class LLMReply(BaseModel):
    """What the language-model client hands back for one request."""

    message: ChatMessage
    tool_calls: list[ToolCall] = Field(default_factory=list)
    model: str | None = None


class SendMessageResult(BaseModel):
    """
    Outcome of ConversationOrchestrator.send_message.

    For the sequential strategy ``response`` is the model's first reply and
    ``background`` holds the task that continues tool rounds; its result is
    the same FinalResponseEvent delivered to final-response listeners.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    response: ChatMessage
    initial_response: ChatMessage | None = None
    tool_execution: ToolBatchResult | None = None
    background: asyncio.Task | None = Field(default=None, exclude=True)


# ==============================================================================
# EVENTS
# ==============================================================================


class ToolStartedEvent(BaseModel):
    type: Literal["tool_started"] = "tool_started"
    tool_call_id: str
    tool_name: str
    execution_id: str | None = None


class ToolCompletedEvent(BaseModel):
    type: Literal["tool_completed"] = "tool_completed"
    tool_call_id: str
    tool_name: str
    result: ToolResult
    execution_id: str | None = None


class ToolFailedEvent(BaseModel):
    type: Literal["tool_failed"] = "tool_failed"
    tool_call_id: str
    tool_name: str
    error: str
    execution_id: str | None = None


class ToolsCalledEvent(BaseModel):
    type: Literal["tools_called"] = "tools_called"
    tool_calls: list[ToolCall]
    session_id: str
    execution_id: str | None = None


class ToolsCompletedEvent(BaseModel):
    type: Literal["tools_completed"] = "tools_completed"
    results: list[ToolResult]
    session_id: str
    execution_id: str | None = None


ToolEvent = Annotated[
    ToolStartedEvent
    | ToolCompletedEvent
    | ToolFailedEvent
    | ToolsCalledEvent
    | ToolsCompletedEvent,
    Field(discriminator="type"),
]


class FinalResponseEvent(BaseModel):
    """Emitted once the background tool rounds of a sequential turn end."""

    type: Literal["final_response"] = "final_response"
    session_id: str
    final_response: ChatMessage
    tool_execution: ToolBatchResult | None = None
    rounds: int = 0
    stop_reason: StopReason = "completed"


class FinalResponseErrorEvent(BaseModel):
    type: Literal["final_response_error"] = "final_response_error"
    session_id: str
    error: str


OrchestratorEvent = FinalResponseEvent | FinalResponseErrorEvent
