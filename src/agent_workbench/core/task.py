"""Task model and the research review records attached to it."""

from datetime import UTC, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskKind(str, Enum):
    """What sort of work a task represents."""
    FEATURE = "feature"
    BUG = "bug"
    CHORE = "chore"
    SPIKE = "spike"


class TaskState(str, Enum):
    """Board column a task sits in."""
    NEW = "new"
    IN_PROGRESS = "in_progress"
    ACTIVE = "active"
    BLOCKED = "blocked"
    DONE = "done"


class CloseReason(str, Enum):
    """Why a task left the board."""
    FIXED = "fixed"
    COMPLETED = "completed"
    WONT_FIX = "wont_fix"
    DUPLICATE = "duplicate"


class PRState(str, Enum):
    """Pull request state as last observed."""
    OPEN = "open"
    DRAFT = "draft"
    MERGED = "merged"
    CLOSED = "closed"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Task(BaseModel):
    """A unit of work an agent researches and implements.

    Created outside the engine; execution only writes the workspace, branch,
    pull-request and agent fields, plus state/close_reason on completion.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str
    title: str
    description: str = ""
    kind: TaskKind = TaskKind.FEATURE
    state: TaskState = TaskState.NEW
    close_reason: Optional[CloseReason] = None
    project_path: Optional[str] = None

    # Research
    research_content: Optional[str] = None
    research_agent_id: Optional[str] = None

    # Implementation
    implement_agent_id: Optional[str] = None
    workspace_path: Optional[str] = None
    branch_name: Optional[str] = None
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    pr_state: Optional[PRState] = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_bug(self) -> bool:
        return self.kind == TaskKind.BUG.value

    def mark_done(self) -> None:
        """Move to done; bugs close as fixed."""
        self.state = TaskState.DONE.value
        if self.is_bug:
            self.close_reason = CloseReason.FIXED.value
        self.touch()

    def bind_workspace(self, path: str, branch: str) -> None:
        self.workspace_path = path
        self.branch_name = branch
        self.touch()

    def release_workspace(self) -> None:
        self.workspace_path = None
        self.branch_name = None
        self.touch()

    def record_pull_request(self, url: Optional[str], number: Optional[int], draft: bool) -> None:
        self.pr_url = url
        self.pr_number = number
        self.pr_state = PRState.DRAFT.value if draft else PRState.OPEN.value
        self.touch()

    def touch(self) -> None:
        self.updated_at = _utcnow()


class CommentAnchor(BaseModel):
    """Where in the research document a review comment points."""
    block_type: str = "paragraph"
    preview: str = ""


class ResearchComment(BaseModel):
    """One reviewer comment on a research document."""
    body: str
    anchor: CommentAnchor = Field(default_factory=CommentAnchor)


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ResearchReview(BaseModel):
    """A revision request against a research snapshot."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    task_id: str
    comments: List[ResearchComment] = Field(default_factory=list)
    research_snapshot: str = ""
    status: ReviewStatus = ReviewStatus.PENDING
    revised_content: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
