"""Tests for WorkspaceAllocator against real git repositories."""

import asyncio
import os
import subprocess
import time
from pathlib import Path

import pytest

from agent_workbench.errors import WorkspaceError, WorkspaceLimitReached
from agent_workbench.workspace import WorkspaceAllocator, branch_name_for
from agent_workbench.workspace.worktree_allocator import parse_worktree_porcelain
from tests.unit.fakes import requires_git


def _age(path: Path, seconds_ago: float) -> None:
    """Backdate a worktree directory and its top-level entries."""
    stamp = time.time() - seconds_ago
    for entry in [path, *path.iterdir()]:
        if entry.name != ".git":
            os.utime(entry, (stamp, stamp))


def _branches(repo: Path):
    out = subprocess.run(
        ["git", "branch", "--format=%(refname:short)"],
        cwd=repo, capture_output=True, text=True, check=True,
    ).stdout
    return set(out.split())


class TestBranchNames:
    def test_prefix_by_kind(self):
        """Bugs, chores and features get distinct prefixes."""
        assert branch_name_for("t1", "Fix the login!", "bug") == "bugfix/t1-fix-the-login"
        assert branch_name_for("t2", "Bump deps", "chore") == "chore/t2-bump-deps"
        assert branch_name_for("t3", "Dark mode", "feature") == "feature/t3-dark-mode"
        assert branch_name_for("t4", "Spike it", "spike") == "feature/t4-spike-it"

    def test_empty_slug(self):
        """Titles without usable characters still produce a branch."""
        assert branch_name_for("t1", "!!!") == "feature/t1"


class TestPorcelainParsing:
    def test_parse_entries(self):
        """Each blank-line separated block becomes one entry."""
        output = (
            "worktree /repo\nHEAD abc\nbranch refs/heads/main\n\n"
            "worktree /repo/.agent-worktrees/t1\nHEAD def\nbranch refs/heads/feature/t1-x\n\n"
            "worktree /repo/.agent-worktrees/t2\nHEAD 123\ndetached\n"
        )

        entries = parse_worktree_porcelain(output)

        assert [e["worktree"] for e in entries] == [
            "/repo", "/repo/.agent-worktrees/t1", "/repo/.agent-worktrees/t2",
        ]
        assert entries[1]["branch"] == "refs/heads/feature/t1-x"
        assert "detached" in entries[2]


@requires_git
class TestCreateWorkspace:
    @pytest.mark.asyncio
    async def test_creates_worktree_on_task_branch(self, git_repo):
        """The worktree lives under the worktree root on its own branch."""
        allocator = WorkspaceAllocator(max_concurrent=2)

        workspace = await allocator.create_workspace(git_repo, "Fix login bug", "t1", "bug")

        assert Path(workspace.path) == git_repo.resolve() / ".agent-worktrees" / "t1"
        assert workspace.branch == "bugfix/t1-fix-login-bug"
        assert (Path(workspace.path) / "README.md").exists()
        assert ".agent-worktrees/" in (git_repo / ".gitignore").read_text()

    @pytest.mark.asyncio
    async def test_same_task_reuses_workspace(self, git_repo):
        """A second request for the same task returns the live workspace."""
        allocator = WorkspaceAllocator(max_concurrent=1)

        first = await allocator.create_workspace(git_repo, "Task", "t1")
        second = await allocator.create_workspace(git_repo, "Task", "t1")

        assert first.path == second.path
        assert len(await allocator.list_workspaces(git_repo)) == 1

    @pytest.mark.asyncio
    async def test_limit_reports_lru_candidates(self, git_repo):
        """At the ceiling, creation fails with eviction candidates."""
        allocator = WorkspaceAllocator(max_concurrent=1)
        await allocator.create_workspace(git_repo, "First", "t1")

        with pytest.raises(WorkspaceLimitReached) as exc_info:
            await allocator.create_workspace(git_repo, "Second", "t2")

        assert exc_info.value.limit == 1
        assert [w.task_id for w in exc_info.value.candidates] == ["t1"]
        assert not (git_repo / ".agent-worktrees" / "t2").exists()

    @pytest.mark.asyncio
    async def test_concurrent_creation_respects_ceiling(self, git_repo):
        """Parallel requests never push the live count past the ceiling."""
        allocator = WorkspaceAllocator(max_concurrent=2)

        results = await asyncio.gather(
            *(allocator.create_workspace(git_repo, f"Task {i}", f"t{i}") for i in range(4)),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, WorkspaceLimitReached)]
        assert len(created) == 2
        assert len(refused) == 2
        assert len(await allocator.list_workspaces(git_repo)) == 2

    @pytest.mark.asyncio
    async def test_existing_branch_is_checked_out(self, git_repo):
        """Recreating a workspace reuses the task branch and its commits."""
        allocator = WorkspaceAllocator()
        workspace = await allocator.create_workspace(git_repo, "Task", "t1")
        (Path(workspace.path) / "feature.txt").write_text("work\n")
        assert await allocator.commit_changes(Path(workspace.path), "feat: work") is True
        await allocator.remove_workspace(git_repo, Path(workspace.path))

        again = await allocator.create_workspace(git_repo, "Task", "t1")

        assert again.branch == workspace.branch
        assert (Path(again.path) / "feature.txt").exists()

    @pytest.mark.asyncio
    async def test_not_a_repository(self, tmp_path):
        """Plain directories are rejected."""
        allocator = WorkspaceAllocator()

        with pytest.raises(WorkspaceError):
            await allocator.create_workspace(tmp_path, "Task", "t1")

    @pytest.mark.asyncio
    async def test_invalid_task_id(self, git_repo):
        """Task ids cannot traverse paths."""
        allocator = WorkspaceAllocator()

        with pytest.raises(ValueError):
            await allocator.create_workspace(git_repo, "Task", "../escape")


@requires_git
class TestListingAndEviction:
    @pytest.mark.asyncio
    async def test_lru_order(self, git_repo):
        """Least recently modified workspaces come first."""
        allocator = WorkspaceAllocator(max_concurrent=5)
        for task_id in ("t1", "t2", "t3"):
            await allocator.create_workspace(git_repo, task_id, task_id)
        root = allocator.worktree_root(git_repo)
        _age(root / "t2", 3000)
        _age(root / "t1", 2000)

        lru = await allocator.get_lru_workspaces(git_repo, 2)

        assert [w.task_id for w in lru] == ["t2", "t1"]

    @pytest.mark.asyncio
    async def test_lru_zero_count(self, git_repo):
        """Asking for no candidates returns none."""
        assert await WorkspaceAllocator().get_lru_workspaces(git_repo, 0) == []

    @pytest.mark.asyncio
    async def test_remove_with_branch(self, git_repo):
        """Removal can also delete the task branch."""
        allocator = WorkspaceAllocator()
        workspace = await allocator.create_workspace(git_repo, "Task", "t1")

        await allocator.remove_workspace(
            git_repo, Path(workspace.path), branch=workspace.branch, delete_branch=True,
        )

        assert not Path(workspace.path).exists()
        assert workspace.branch not in _branches(git_repo)
        assert await allocator.list_workspaces(git_repo) == []

    @pytest.mark.asyncio
    async def test_remove_missing_is_noop(self, git_repo):
        """Removing an already-deleted workspace does not raise."""
        allocator = WorkspaceAllocator()

        await allocator.remove_workspace(git_repo, git_repo / ".agent-worktrees" / "gone")

    @pytest.mark.asyncio
    async def test_cleanup_workspaces_frees_slots(self, git_repo):
        """Evicting candidates makes room under the ceiling."""
        allocator = WorkspaceAllocator(max_concurrent=1)
        await allocator.create_workspace(git_repo, "First", "t1")
        with pytest.raises(WorkspaceLimitReached) as exc_info:
            await allocator.create_workspace(git_repo, "Second", "t2")

        removed = await allocator.cleanup_workspaces(git_repo, exc_info.value.candidates)
        workspace = await allocator.create_workspace(git_repo, "Second", "t2")

        assert removed == 1
        assert workspace.task_id == "t2"

    @pytest.mark.asyncio
    async def test_cleanup_orphans(self, git_repo):
        """Workspaces without an active task are removed."""
        allocator = WorkspaceAllocator()
        await allocator.create_workspace(git_repo, "Keep", "t1")
        await allocator.create_workspace(git_repo, "Drop", "t2")

        removed = await allocator.cleanup_orphans(git_repo, ["t1"])

        assert removed == ["t2"]
        assert [w.task_id for w in await allocator.list_workspaces(git_repo)] == ["t1"]


@requires_git
class TestCommitAndPublish:
    @pytest.mark.asyncio
    async def test_nothing_to_commit(self, git_repo):
        """A clean worktree commits nothing."""
        allocator = WorkspaceAllocator()
        workspace = await allocator.create_workspace(git_repo, "Task", "t1")

        assert await allocator.commit_changes(Path(workspace.path), "feat: nothing") is False
        assert await allocator.has_commits_ahead(Path(workspace.path)) is False

    @pytest.mark.asyncio
    async def test_commit_and_diff(self, git_repo):
        """Committed work shows up ahead of main and in the diff."""
        allocator = WorkspaceAllocator()
        workspace = await allocator.create_workspace(git_repo, "Task", "t1")
        path = Path(workspace.path)
        (path / "app.py").write_text("print('hi')\n")

        assert await allocator.has_uncommitted_changes(path) is True
        assert await allocator.commit_changes(path, "feat: app") is True
        assert await allocator.has_uncommitted_changes(path) is False
        assert await allocator.has_commits_ahead(path) is True
        assert "app.py" in await allocator.get_diff_summary(path)
        assert "+print('hi')" in await allocator.get_diff(path)

    @pytest.mark.asyncio
    async def test_default_branch_fallback(self, git_repo):
        """Without an origin, the local main branch is the base."""
        assert await WorkspaceAllocator().default_branch(git_repo) == "main"
        assert await WorkspaceAllocator(default_base_branch="develop").default_branch(git_repo) == "develop"

    @pytest.mark.asyncio
    async def test_push_without_origin(self, git_repo):
        """Publishing reports a missing remote instead of raising."""
        allocator = WorkspaceAllocator()
        workspace = await allocator.create_workspace(git_repo, "Task", "t1")

        result = await allocator.push_and_create_pr(Path(workspace.path), "Task", "body")

        assert result.success is False
        assert "origin" in result.error
