"""Tests for JsonFileStore persistence."""

import json

import pytest

from agent_workbench.core.config import ExecutionSettings
from agent_workbench.core.task import ResearchComment, ResearchReview, Task
from agent_workbench.storage import JsonFileStore


class TestTasks:
    def test_create_and_get(self, store):
        """Tasks round-trip through the JSON document."""
        store.create_task(Task(id="t1", title="Fix login", kind="bug", project_path="/p"))

        task = store.get_task("t1")

        assert task.title == "Fix login"
        assert task.kind == "bug"
        assert task.state == "new"

    def test_duplicate_id_rejected(self, store):
        """Creating a task twice raises ValueError."""
        store.create_task(Task(id="t1", title="One"))

        with pytest.raises(ValueError, match="already exists"):
            store.create_task(Task(id="t1", title="Two"))

    def test_list_filters_by_project(self, store):
        """list_tasks can be narrowed to one project."""
        store.create_task(Task(id="a", title="A", project_path="/p1"))
        store.create_task(Task(id="b", title="B", project_path="/p2"))

        assert [t.id for t in store.list_tasks("/p1")] == ["a"]
        assert {t.id for t in store.list_tasks()} == {"a", "b"}

    def test_update_touches(self, store):
        """update_task bumps updated_at."""
        task = store.create_task(Task(id="t1", title="One"))
        before = task.updated_at

        task.branch_name = "feature/t1-one"
        store.update_task(task)

        stored = store.get_task("t1")
        assert stored.branch_name == "feature/t1-one"
        assert stored.updated_at >= before

    def test_delete(self, store):
        """delete_task reports whether anything was removed."""
        store.create_task(Task(id="t1", title="One"))

        assert store.delete_task("t1") is True
        assert store.delete_task("t1") is False
        assert store.get_task("t1") is None


class TestSettingsAndTokens:
    def test_settings_absent_until_saved(self, store):
        """get_settings returns None until settings are saved."""
        assert store.get_settings() is None

        store.save_settings(ExecutionSettings(max_concurrent_workspaces=2, draft_prs=True))

        settings = store.get_settings()
        assert settings.max_concurrent_workspaces == 2
        assert settings.draft_prs is True

    def test_latest_session_token(self, store):
        """The most recent token per agent wins."""
        store.record_session_token("engineer", "tok-1")
        store.record_session_token("engineer", "tok-2")

        assert store.latest_session_token("engineer") == "tok-2"
        assert store.latest_session_token("researcher") is None


class TestReviews:
    def test_review_round_trip(self, store):
        """Reviews keep comments and status."""
        review = ResearchReview(
            id="r1",
            task_id="t1",
            comments=[ResearchComment(body="Expand section 2")],
            research_snapshot="# Doc",
        )
        store.save_research_review(review)

        review.status = "complete"
        store.save_research_review(review)

        stored = store.get_research_review("r1")
        assert stored.status == "complete"
        assert stored.comments[0].body == "Expand section 2"


class TestFileHandling:
    def test_corrupt_file_starts_empty(self, tmp_path):
        """A corrupt document is treated as empty state."""
        path = tmp_path / "state.json"
        path.write_text("{not json")

        store = JsonFileStore(path)

        assert store.list_tasks() == []

    def test_document_is_valid_json(self, tmp_path):
        """Writes leave a complete JSON document and no temp files."""
        path = tmp_path / "nested" / "state.json"
        store = JsonFileStore(path)
        store.create_task(Task(id="t1", title="One"))

        data = json.loads(path.read_text())

        assert "t1" in data["tasks"]
        assert not list(path.parent.glob("*.tmp.*"))
