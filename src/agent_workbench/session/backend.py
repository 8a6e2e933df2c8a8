"""Agent process interface.

An agent process is one long-lived conversation with a coding agent. A
prompt yields a stream of updates that always ends with exactly one
TurnResult, unless the process was cancelled or closed mid-turn, in which
case the stream simply stops.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from ..core.config import AgentDefinition
from .models import TodoItem, ToolCall


@dataclass
class TextDelta:
    text: str


@dataclass
class ThinkingDelta:
    text: str


@dataclass
class ToolCallUpdate:
    tool_call: ToolCall


@dataclass
class TodoUpdate:
    items: List[TodoItem]


@dataclass
class PermissionAsk:
    """The agent wants to run a tool and is blocked until answered."""
    request_id: str
    tool_name: str
    tool_input: Dict[str, Any] = field(default_factory=dict)
    tool_use_id: Optional[str] = None


@dataclass
class TurnResult:
    content: str
    is_error: bool = False
    session_token: Optional[str] = None
    written_files: List[str] = field(default_factory=list)


ProcessUpdate = Union[TextDelta, ThinkingDelta, ToolCallUpdate, TodoUpdate, PermissionAsk, TurnResult]


class AgentProcess(ABC):
    """Abstract base class for agent process backends."""

    @abstractmethod
    async def start(
        self,
        working_directory: Path,
        resume_token: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Launch the agent in ``working_directory``.

        ``env`` is layered over the inherited environment.

        Raises:
            AgentProcessError: The agent could not be started
        """
        pass

    @abstractmethod
    def prompt(self, content: str) -> AsyncIterator[ProcessUpdate]:
        """Send one user message and stream the agent's updates for that turn."""
        pass

    @abstractmethod
    async def respond_permission(
        self,
        request_id: str,
        allow: bool,
        tool_input: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> None:
        """Answer a PermissionAsk. A no-op when the process is gone."""
        pass

    @abstractmethod
    async def cancel(self) -> None:
        """Abort the in-flight turn."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass


ProcessFactory = Callable[[AgentDefinition], AgentProcess]
