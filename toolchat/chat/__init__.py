"""
Chat Engine Module

Session orchestration, tool batch execution and the shared data models.
"""

from .chat_orchestrator import ConversationOrchestrator
from .context_detector import ContextDetectionResult, ContextDetector
from .models import ChatMessage, ChatSession, SendMessageResult, ToolCall, ToolResult
from .tool_executor import ToolExecutor

__all__ = [
    "ChatMessage",
    "ChatSession",
    "ContextDetectionResult",
    "ContextDetector",
    "ConversationOrchestrator",
    "SendMessageResult",
    "ToolCall",
    "ToolExecutor",
    "ToolResult",
]
