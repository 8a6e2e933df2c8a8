"""Session, tool call and todo models."""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionStatus(str, Enum):
    """starting -> ready <-> busy, then stopped or error (both terminal)."""
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    STOPPED = "stopped"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({SessionStatus.STOPPED, SessionStatus.ERROR})


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class AgentSession:
    """One agent process bound to one working directory."""
    id: str
    agent_id: str
    working_directory: str
    project_path: Optional[str] = None
    status: SessionStatus = SessionStatus.STARTING
    started_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    session_token: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES

    def touch(self) -> None:
        self.last_activity_at = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["started_at"] = self.started_at.isoformat()
        data["last_activity_at"] = self.last_activity_at.isoformat()
        return data


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


_TOOL_STATUS_MAP = {
    "completed": ToolCallStatus.SUCCESS,
    "failed": ToolCallStatus.ERROR,
    "in_progress": ToolCallStatus.RUNNING,
}


def map_tool_status(raw_status: Optional[str]) -> ToolCallStatus:
    """Protocol tool status onto ours; unknown values are still pending."""
    return _TOOL_STATUS_MAP.get(raw_status or "", ToolCallStatus.PENDING)


@dataclass
class ToolCall:
    """A tool invocation as reported by the agent, updated in place."""
    id: str
    name: str
    kind: str
    status: ToolCallStatus = ToolCallStatus.PENDING
    title: Optional[str] = None
    raw_input: Dict[str, Any] = field(default_factory=dict)
    locations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class TodoItem:
    content: str
    status: str = "pending"
    active_form: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TodoItem":
        return cls(
            content=data.get("content", ""),
            status=data.get("status", "pending"),
            active_form=data.get("activeForm") or data.get("active_form"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PromptResult:
    """What a finished (or cancelled) prompt produced."""
    message_id: str
    content: str = ""
    cancelled: bool = False
    written_files: List[str] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
