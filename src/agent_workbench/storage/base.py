"""Persistence contract consumed by the engine.

The engine never assumes a schema; anything that can store tasks, settings,
grants, session resumption points and research reviews can back it.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..core.config import ExecutionSettings
from ..core.task import ResearchReview, Task
from ..permissions.models import PermissionGrant


class Persistence(ABC):
    """Narrow CRUD interface over durable state."""

    # Tasks

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    def list_tasks(self, project_path: Optional[str] = None) -> List[Task]:
        pass

    @abstractmethod
    def create_task(self, task: Task) -> Task:
        pass

    @abstractmethod
    def update_task(self, task: Task) -> Task:
        """Persist the full task record, replacing the stored one."""
        pass

    @abstractmethod
    def delete_task(self, task_id: str) -> bool:
        pass

    # Settings

    @abstractmethod
    def get_settings(self) -> Optional[ExecutionSettings]:
        """Stored execution settings, or None when never saved."""
        pass

    @abstractmethod
    def save_settings(self, settings: ExecutionSettings) -> None:
        pass

    # Permission grants

    @abstractmethod
    def get_permission_grants(self, project_path: str) -> List[PermissionGrant]:
        pass

    @abstractmethod
    def save_permission_grant(self, grant: PermissionGrant) -> PermissionGrant:
        pass

    @abstractmethod
    def delete_permission_grant(self, grant_id: str) -> bool:
        pass

    # Session resumption

    @abstractmethod
    def record_session_token(self, agent_id: str, token: str) -> None:
        pass

    @abstractmethod
    def latest_session_token(self, agent_id: str) -> Optional[str]:
        pass

    # Research reviews

    @abstractmethod
    def save_research_review(self, review: ResearchReview) -> ResearchReview:
        pass

    @abstractmethod
    def get_research_review(self, review_id: str) -> Optional[ResearchReview]:
        pass
