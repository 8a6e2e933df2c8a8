"""JSON-file implementation of the persistence contract.

One document holds every collection. Each operation is a locked
read-modify-write so several workbench processes can share the file.
"""

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..core.config import ExecutionSettings
from ..core.task import ResearchReview, Task
from ..permissions.models import PermissionGrant
from .base import Persistence

logger = logging.getLogger(__name__)

_EMPTY_STATE = {
    "tasks": {},
    "settings": None,
    "grants": {},
    "session_tokens": {},
    "reviews": {},
}


class JsonFileStore(Persistence):
    """Persistence backed by a single JSON document on disk."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _get_lock_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + ".lock")

    @contextmanager
    def _lock(self):
        """File-based lock around a read-modify-write.

        Uses fcntl.flock for cross-process synchronization.
        """
        lock_file = open(self._get_lock_path(), "w")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            lock_file.close()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return json.loads(json.dumps(_EMPTY_STATE))
        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"State file {self.path} is corrupt, starting empty: {e}")
            return json.loads(json.dumps(_EMPTY_STATE))
        for key, default in _EMPTY_STATE.items():
            data.setdefault(key, json.loads(json.dumps(default)))
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        """Write via temp file + rename so readers never see a partial file."""
        tmp_file = self.path.with_suffix(f"{self.path.suffix}.tmp.{os.getpid()}")
        try:
            tmp_file.write_text(json.dumps(data, indent=2, default=str))
            tmp_file.rename(self.path)
        finally:
            if tmp_file.exists():
                tmp_file.unlink()

    @contextmanager
    def _transaction(self):
        with self._lock():
            data = self._read()
            yield data
            self._write(data)

    def _snapshot(self) -> Dict[str, Any]:
        with self._lock():
            return self._read()

    @staticmethod
    def _dump(model: BaseModel) -> Dict[str, Any]:
        return model.model_dump(mode="json")

    # Tasks

    def get_task(self, task_id: str) -> Optional[Task]:
        raw = self._snapshot()["tasks"].get(task_id)
        return Task(**raw) if raw else None

    def list_tasks(self, project_path: Optional[str] = None) -> List[Task]:
        tasks = [Task(**raw) for raw in self._snapshot()["tasks"].values()]
        if project_path is not None:
            tasks = [t for t in tasks if t.project_path == project_path]
        return sorted(tasks, key=lambda t: t.created_at)

    def create_task(self, task: Task) -> Task:
        with self._transaction() as data:
            if task.id in data["tasks"]:
                raise ValueError(f"Task {task.id} already exists")
            data["tasks"][task.id] = self._dump(task)
        return task

    def update_task(self, task: Task) -> Task:
        task.touch()
        with self._transaction() as data:
            data["tasks"][task.id] = self._dump(task)
        return task

    def delete_task(self, task_id: str) -> bool:
        with self._transaction() as data:
            return data["tasks"].pop(task_id, None) is not None

    # Settings

    def get_settings(self) -> Optional[ExecutionSettings]:
        raw = self._snapshot()["settings"]
        return ExecutionSettings(**raw) if raw else None

    def save_settings(self, settings: ExecutionSettings) -> None:
        with self._transaction() as data:
            data["settings"] = self._dump(settings)

    # Permission grants

    def get_permission_grants(self, project_path: str) -> List[PermissionGrant]:
        grants = [
            PermissionGrant(**raw)
            for raw in self._snapshot()["grants"].values()
            if raw.get("project_path") == project_path
        ]
        return sorted(grants, key=lambda g: g.created_at)

    def save_permission_grant(self, grant: PermissionGrant) -> PermissionGrant:
        with self._transaction() as data:
            data["grants"][grant.id] = self._dump(grant)
        return grant

    def delete_permission_grant(self, grant_id: str) -> bool:
        with self._transaction() as data:
            return data["grants"].pop(grant_id, None) is not None

    # Session resumption

    def record_session_token(self, agent_id: str, token: str) -> None:
        with self._transaction() as data:
            data["session_tokens"][agent_id] = {
                "token": token,
                "recorded_at": datetime.now(UTC).isoformat(),
            }

    def latest_session_token(self, agent_id: str) -> Optional[str]:
        entry = self._snapshot()["session_tokens"].get(agent_id)
        return entry["token"] if entry else None

    # Research reviews

    def save_research_review(self, review: ResearchReview) -> ResearchReview:
        with self._transaction() as data:
            data["reviews"][review.id] = self._dump(review)
        return review

    def get_research_review(self, review_id: str) -> Optional[ResearchReview]:
        raw = self._snapshot()["reviews"].get(review_id)
        return ResearchReview(**raw) if raw else None
