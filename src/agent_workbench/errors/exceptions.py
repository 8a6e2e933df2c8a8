"""Exception hierarchy for the workbench.

User-input errors are rejected before any state is touched. The workspace
limit is its own type so callers can offer eviction instead of failing.
"""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..workspace.worktree_allocator import Workspace


class WorkbenchError(Exception):
    """Base class for all workbench errors."""


class InvalidInputError(WorkbenchError):
    """Caller supplied something unusable; nothing was mutated."""


class NoWorkspaceSelectedError(InvalidInputError):
    """No working directory is available to bind a session to."""

    def __init__(self, message: str = "No workspace directory selected"):
        super().__init__(message)


class UnknownAgentError(InvalidInputError):
    """Agent id does not resolve to a registered identity."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")


class TaskNotFoundError(InvalidInputError):
    """Task id does not resolve to a stored task."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class WorkspaceError(WorkbenchError):
    """Git failure while creating or removing a workspace."""


class WorkspaceLimitReached(WorkbenchError):
    """Live workspace count already equals the configured ceiling."""

    def __init__(
        self,
        repo_path: str,
        limit: int,
        candidates: Optional[List["Workspace"]] = None,
    ):
        self.repo_path = repo_path
        self.limit = limit
        self.candidates = candidates or []
        super().__init__(
            f"Workspace limit reached for {repo_path} ({limit} active)"
        )


class SessionError(WorkbenchError):
    """Base class for agent session failures."""


class SessionNotFoundError(SessionError):
    """No session with the given id or agent."""


class SessionNotReadyError(SessionError):
    """Session cannot accept a prompt in its current status."""


class AgentProcessError(SessionError):
    """The agent process crashed or spoke an unexpected protocol."""
