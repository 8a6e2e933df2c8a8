"""Exception taxonomy and user-friendly error translation."""

from .exceptions import (
    WorkbenchError,
    InvalidInputError,
    NoWorkspaceSelectedError,
    UnknownAgentError,
    TaskNotFoundError,
    WorkspaceError,
    WorkspaceLimitReached,
    SessionError,
    SessionNotFoundError,
    SessionNotReadyError,
    AgentProcessError,
)
from .translator import ErrorTranslator, UserFriendlyError

__all__ = [
    "WorkbenchError",
    "InvalidInputError",
    "NoWorkspaceSelectedError",
    "UnknownAgentError",
    "TaskNotFoundError",
    "WorkspaceError",
    "WorkspaceLimitReached",
    "SessionError",
    "SessionNotFoundError",
    "SessionNotReadyError",
    "AgentProcessError",
    "ErrorTranslator",
    "UserFriendlyError",
]
