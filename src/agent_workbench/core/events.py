"""Lifecycle, streaming and error events, and the broadcaster that fans them out."""

import asyncio
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class TaskPhase(str, Enum):
    """Checkpoints of a task run, in order; WARNING can occur at any point."""
    CREATING_WORKTREE = "creating_worktree"
    INSTALLING_DEPS = "installing_deps"
    IMPLEMENTING = "implementing"
    COMMITTING = "committing"
    CREATING_PR = "creating_pr"
    DONE = "done"
    WARNING = "warning"


class PhaseEvent(BaseModel):
    """A task run reached a checkpoint."""

    model_config = ConfigDict(use_enum_values=True)

    type: Literal["phase"] = "phase"
    task_id: str
    agent_id: str
    task_title: str
    phase: TaskPhase
    message: Optional[str] = None


class ChunkEvent(BaseModel):
    """Streaming output so far for an in-flight prompt."""
    type: Literal["chunk"] = "chunk"
    session_id: str
    agent_id: str
    content: str = ""
    thinking: str = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None
    todo_items: Optional[List[Dict[str, Any]]] = None


class CompletionEvent(BaseModel):
    """Final content of a prompt, or the end of a task-level run."""
    type: Literal["complete"] = "complete"
    id: str
    agent_id: str
    role: str = "assistant"
    content: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PermissionRequestEvent(BaseModel):
    """A tool call is waiting for an operator decision."""
    type: Literal["permission_request"] = "permission_request"
    request_id: str
    agent_id: str
    tool_call: Dict[str, Any]
    options: List[Dict[str, Any]] = Field(default_factory=list)
    scopes: List[Dict[str, Any]] = Field(default_factory=list)


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    agent_id: Optional[str] = None
    error: str


class CancelledEvent(BaseModel):
    type: Literal["cancelled"] = "cancelled"
    agent_id: str


class DiagnosisCleanupEvent(BaseModel):
    """A fixed bug still has its diagnosis document on disk."""
    type: Literal["diagnosis_cleanup"] = "diagnosis_cleanup"
    task_id: str
    file_path: str


class TaskChangedEvent(BaseModel):
    type: Literal["task_changed"] = "task_changed"
    action: str
    task: Dict[str, Any]


Event = Union[
    PhaseEvent,
    ChunkEvent,
    CompletionEvent,
    PermissionRequestEvent,
    ErrorEvent,
    CancelledEvent,
    DiagnosisCleanupEvent,
    TaskChangedEvent,
]

EventSink = Callable[[Event], Awaitable[None]]


class EventBroadcaster:
    """Fire-and-forget fan-out of events to registered async sinks.

    Delivery is at-most-once per sink: a sink that raises is logged and
    skipped for that event without affecting the others.
    """

    def __init__(self):
        self._sinks: List[EventSink] = []

    def add_sink(self, sink: EventSink) -> Callable[[], None]:
        """Register a sink; returns a function that unregisters it."""
        self._sinks.append(sink)

        def remove() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return remove

    def subscribe(self, maxsize: int = 0) -> "asyncio.Queue[Event]":
        """Queue that receives every event published from now on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        async def enqueue(event: Event) -> None:
            await queue.put(event)

        self.add_sink(enqueue)
        return queue

    async def publish(self, event: Event) -> None:
        for sink in list(self._sinks):
            try:
                await sink(event)
            except Exception:
                logger.exception(f"Event sink failed for {event.type} event")
