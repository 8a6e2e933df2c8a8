"""Agent sessions: process backends and the session manager."""

from .backend import (
    AgentProcess,
    PermissionAsk,
    ProcessFactory,
    ProcessUpdate,
    TextDelta,
    ThinkingDelta,
    TodoUpdate,
    ToolCallUpdate,
    TurnResult,
)
from .claude_process import ClaudeCLIProcess, claude_process_factory, parse_stream_event
from .manager import (
    ALLOW_ALWAYS,
    ALLOW_ONCE,
    PERMISSION_OPTIONS,
    REJECT_ALWAYS,
    REJECT_ONCE,
    AgentSessionManager,
)
from .models import (
    AgentSession,
    PromptResult,
    SessionStatus,
    TodoItem,
    ToolCall,
    ToolCallStatus,
    map_tool_status,
)

__all__ = [
    "AgentProcess",
    "PermissionAsk",
    "ProcessFactory",
    "ProcessUpdate",
    "TextDelta",
    "ThinkingDelta",
    "TodoUpdate",
    "ToolCallUpdate",
    "TurnResult",
    "ClaudeCLIProcess",
    "claude_process_factory",
    "parse_stream_event",
    "ALLOW_ALWAYS",
    "ALLOW_ONCE",
    "PERMISSION_OPTIONS",
    "REJECT_ALWAYS",
    "REJECT_ONCE",
    "AgentSessionManager",
    "AgentSession",
    "PromptResult",
    "SessionStatus",
    "TodoItem",
    "ToolCall",
    "ToolCallStatus",
    "map_tool_status",
]
