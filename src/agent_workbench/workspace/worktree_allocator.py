"""Git worktree allocator for isolated task workspaces.

Every implementation task gets its own worktree under
``<repo>/<worktree_dir>/<task_id>`` on a dedicated branch, so agents never
touch the operator's checkout. git itself is the registry: a workspace is
live when ``git worktree list`` reports it under the worktree root. The
number of live workspaces per repository is capped; at the cap, creation
fails with the least recently modified workspaces as eviction candidates.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from ..core.config import DEFAULT_MAX_CONCURRENT, WorkbenchConfig
from ..core.task import TaskKind
from ..errors import WorkspaceError, WorkspaceLimitReached
from ..utils.subprocess_utils import SubprocessError, run_git_command
from ..utils.validators import slugify, validate_branch_name, validate_identifier
from .dependencies import DependencyInstaller
from .pr_providers import (
    GitHubAPIProvider,
    GitHubCLIProvider,
    PRResult,
    PullRequestProvider,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKTREE_DIR = ".agent-worktrees"
DIFF_SUMMARY_UNAVAILABLE = "(unable to generate diff summary)"

_BRANCH_PREFIXES = {
    TaskKind.BUG.value: "bugfix",
    TaskKind.CHORE.value: "chore",
}


@dataclass
class Workspace:
    """A live worktree bound to one task."""
    path: str
    branch: str
    task_id: str
    created_at: datetime
    last_modified: datetime
    # Set only on the value returned by the create call that added the worktree
    created: bool = field(default=False, compare=False)


def _timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=UTC)


def last_modified_time(path: Path) -> float:
    """Newest mtime among the directory and its top-level entries, ignoring .git."""
    newest = path.stat().st_mtime
    try:
        entries = list(path.iterdir())
    except OSError:
        return newest
    for entry in entries:
        if entry.name == ".git":
            continue
        try:
            newest = max(newest, entry.stat().st_mtime)
        except OSError:
            continue
    return newest


def branch_name_for(task_id: str, title: str, kind: str = TaskKind.FEATURE.value) -> str:
    """
    Deterministic branch name for a task.

    Args:
        task_id: Task identifier
        title: Task title, slugified into the branch name
        kind: Task kind; bugs get 'bugfix/', chores 'chore/', everything else 'feature/'

    Returns:
        Branch name like ``bugfix/<task_id>-<slug>``
    """
    kind_value = kind.value if isinstance(kind, TaskKind) else kind
    prefix = _BRANCH_PREFIXES.get(kind_value, "feature")
    slug = slugify(title)
    name = f"{prefix}/{task_id}-{slug}" if slug else f"{prefix}/{task_id}"
    return validate_branch_name(name)


def parse_worktree_porcelain(output: str) -> List[Dict[str, str]]:
    """Parse ``git worktree list --porcelain`` into one dict per worktree."""
    entries: List[Dict[str, str]] = []
    current: Dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
                current = {}
            continue
        key, _, value = line.partition(" ")
        if key == "worktree" and current:
            entries.append(current)
            current = {}
        current[key] = value
    if current:
        entries.append(current)
    return entries


class WorkspaceAllocator:
    """Creates, lists, evicts and publishes task worktrees."""

    def __init__(
        self,
        worktree_dir: str = DEFAULT_WORKTREE_DIR,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        installer: Optional[DependencyInstaller] = None,
        pr_providers: Optional[Sequence[PullRequestProvider]] = None,
        default_base_branch: Optional[str] = None,
    ):
        self.worktree_dir = worktree_dir
        self.max_concurrent = max(1, max_concurrent)
        self.installer = installer or DependencyInstaller()
        self.pr_providers: List[PullRequestProvider] = list(pr_providers or [])
        self.default_base_branch = default_base_branch
        self._repo_locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: WorkbenchConfig) -> "WorkspaceAllocator":
        """Build an allocator with providers chosen by ``pull_requests.provider``."""
        labels = config.pull_requests.labels
        providers: List[PullRequestProvider] = []
        choice = config.pull_requests.provider
        if choice in ("auto", "gh"):
            providers.append(GitHubCLIProvider(labels=labels))
        if choice in ("auto", "api") and config.github.token:
            providers.append(
                GitHubAPIProvider(config.github.token, api_url=config.github.api_url, labels=labels)
            )

        return cls(
            worktree_dir=config.workspace.worktree_dir,
            max_concurrent=config.workspace.max_concurrent,
            installer=DependencyInstaller(timeout=config.workspace.install_timeout),
            pr_providers=providers,
            default_base_branch=config.workspace.default_base_branch,
        )

    def set_max_concurrent(self, limit: int) -> None:
        self.max_concurrent = max(1, limit)

    def worktree_root(self, repo_path: Path) -> Path:
        return Path(repo_path).resolve() / self.worktree_dir

    def _lock_for(self, repo_path: Path) -> asyncio.Lock:
        key = str(Path(repo_path).resolve())
        lock = self._repo_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._repo_locks[key] = lock
        return lock

    # Creation

    async def create_workspace(
        self,
        repo_path: Path,
        task_title: str,
        task_id: str,
        task_kind: str = TaskKind.FEATURE.value,
        base_branch: Optional[str] = None,
    ) -> Workspace:
        """
        Create (or reuse) the worktree for a task.

        The count-then-create sequence is serialized per repository, so
        concurrent callers can never push the live count past the ceiling.

        Args:
            repo_path: Main repository checkout
            task_title: Used for the branch slug
            task_id: Names the worktree directory
            task_kind: Selects the branch prefix
            base_branch: Branch to start from; falls back to HEAD when it doesn't resolve

        Returns:
            The workspace, already registered with git; ``created`` is set
            when this call added it rather than reusing a live one

        Raises:
            WorkspaceLimitReached: Live count equals the ceiling; carries LRU candidates
            WorkspaceError: A git command failed; nothing is left behind
        """
        validate_identifier(task_id, "task_id")
        repo_path = Path(repo_path).resolve()
        await self._ensure_git_repo(repo_path)

        async with self._lock_for(repo_path):
            live = await self.list_workspaces(repo_path)
            for workspace in live:
                if workspace.task_id == task_id:
                    logger.info(f"Reusing existing worktree for task {task_id}: {workspace.path}")
                    return workspace

            if len(live) >= self.max_concurrent:
                candidates = self._sort_lru(live)
                logger.warning(
                    f"Workspace limit reached for {repo_path}: "
                    f"{len(live)}/{self.max_concurrent} live"
                )
                raise WorkspaceLimitReached(str(repo_path), self.max_concurrent, candidates)

            self.ensure_gitignore(repo_path)
            return await self._add_worktree(repo_path, task_title, task_id, task_kind, base_branch)

    async def _add_worktree(
        self,
        repo_path: Path,
        task_title: str,
        task_id: str,
        task_kind: str,
        base_branch: Optional[str],
    ) -> Workspace:
        branch = branch_name_for(task_id, task_title, task_kind)
        worktree_path = self.worktree_root(repo_path) / task_id
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        branch_existed = await self._branch_exists(repo_path, branch)
        try:
            if branch_existed:
                await run_git_command(
                    ["worktree", "add", str(worktree_path), branch],
                    cwd=repo_path,
                    timeout=60,
                )
            else:
                base = await self._resolve_base(repo_path, base_branch or self.default_base_branch)
                await run_git_command(
                    ["worktree", "add", "-b", branch, str(worktree_path), base],
                    cwd=repo_path,
                    timeout=60,
                )
        except (SubprocessError, asyncio.TimeoutError) as e:
            await self._discard_partial(repo_path, worktree_path, branch, delete_branch=not branch_existed)
            raise WorkspaceError(f"Failed to create worktree for task {task_id}: {e}") from e

        logger.info(f"Created worktree at {worktree_path} on branch {branch}")
        now = datetime.now(UTC)
        return Workspace(
            path=str(worktree_path),
            branch=branch,
            task_id=task_id,
            created_at=now,
            last_modified=now,
            created=True,
        )

    async def _discard_partial(
        self,
        repo_path: Path,
        worktree_path: Path,
        branch: str,
        delete_branch: bool,
    ) -> None:
        if worktree_path.exists():
            shutil.rmtree(worktree_path, ignore_errors=True)
        await run_git_command(["worktree", "prune"], cwd=repo_path, check=False)
        if delete_branch and await self._branch_exists(repo_path, branch):
            await run_git_command(["branch", "-D", branch], cwd=repo_path, check=False)

    async def _ensure_git_repo(self, repo_path: Path) -> None:
        if not repo_path.is_dir():
            raise WorkspaceError(f"Repository path does not exist: {repo_path}")
        result = await run_git_command(
            ["rev-parse", "--is-inside-work-tree"], cwd=repo_path, check=False, timeout=10,
        )
        if not result.ok:
            raise WorkspaceError(f"{repo_path} is not a git repository")

    async def _branch_exists(self, repo_path: Path, branch: str) -> bool:
        result = await run_git_command(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            cwd=repo_path,
            check=False,
            timeout=10,
        )
        return result.ok

    async def _resolve_base(self, repo_path: Path, base_branch: Optional[str]) -> str:
        """Requested base when it resolves to a commit, otherwise HEAD."""
        if base_branch:
            result = await run_git_command(
                ["rev-parse", "--verify", "--quiet", f"{base_branch}^{{commit}}"],
                cwd=repo_path,
                check=False,
                timeout=10,
            )
            if result.ok:
                return base_branch
            logger.warning(f"Base branch '{base_branch}' not found in {repo_path}, using HEAD")
        return "HEAD"

    def ensure_gitignore(self, repo_path: Path) -> None:
        """Make sure the worktree directory is ignored by the main checkout."""
        gitignore = Path(repo_path) / ".gitignore"
        entry = f"{self.worktree_dir}/"
        accepted = {self.worktree_dir, entry, f"/{self.worktree_dir}", f"/{entry}"}

        existing = gitignore.read_text() if gitignore.exists() else ""
        if any(line.strip() in accepted for line in existing.splitlines()):
            return

        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with open(gitignore, "a") as f:
            f.write(f"{prefix}{entry}\n")
        logger.debug(f"Added {entry} to {gitignore}")

    # Listing and eviction

    async def list_workspaces(self, repo_path: Path) -> List[Workspace]:
        """Live workspaces: registered with git, under the worktree root, present on disk."""
        repo_path = Path(repo_path).resolve()
        root = self.worktree_root(repo_path)
        result = await run_git_command(
            ["worktree", "list", "--porcelain"], cwd=repo_path, check=False, timeout=10,
        )
        if not result.ok:
            logger.warning(f"git worktree list failed in {repo_path}: {result.stderr.strip()}")
            return []

        workspaces = []
        for entry in parse_worktree_porcelain(result.stdout):
            raw_path = entry.get("worktree")
            if not raw_path:
                continue
            path = Path(raw_path).resolve()
            if path.parent != root or not path.is_dir():
                continue
            branch = entry.get("branch", "")
            stat = path.stat()
            workspaces.append(Workspace(
                path=str(path),
                branch=branch.removeprefix("refs/heads/"),
                task_id=path.name,
                created_at=_timestamp(stat.st_ctime),
                last_modified=_timestamp(last_modified_time(path)),
            ))
        return workspaces

    async def get_lru_workspaces(self, repo_path: Path, count: int) -> List[Workspace]:
        """Up to ``count`` live workspaces, least recently modified first."""
        if count <= 0:
            return []
        return self._sort_lru(await self.list_workspaces(repo_path))[:count]

    def _sort_lru(self, workspaces: Iterable[Workspace]) -> List[Workspace]:
        return sorted(workspaces, key=lambda w: (w.last_modified, w.path))

    async def remove_workspace(
        self,
        repo_path: Path,
        workspace_path: Path,
        branch: Optional[str] = None,
        delete_branch: bool = False,
    ) -> None:
        """Remove one worktree. Removing something already gone is a no-op."""
        repo_path = Path(repo_path).resolve()
        workspace_path = Path(workspace_path)

        if workspace_path.exists():
            try:
                await run_git_command(
                    ["worktree", "remove", "--force", str(workspace_path)],
                    cwd=repo_path,
                    timeout=60,
                )
            except (SubprocessError, asyncio.TimeoutError) as e:
                logger.warning(f"git worktree remove failed for {workspace_path}, deleting directly: {e}")
                shutil.rmtree(workspace_path, ignore_errors=True)
                await run_git_command(["worktree", "prune"], cwd=repo_path, check=False)
        else:
            await run_git_command(["worktree", "prune"], cwd=repo_path, check=False)

        if delete_branch and branch:
            await run_git_command(["branch", "-D", branch], cwd=repo_path, check=False)

        logger.info(f"Removed worktree: {workspace_path}")

    async def cleanup_workspaces(
        self,
        repo_path: Path,
        workspaces: Iterable[Workspace],
        delete_branches: bool = False,
    ) -> int:
        """Remove the given workspaces; returns how many were processed."""
        removed = 0
        async with self._lock_for(repo_path):
            for workspace in workspaces:
                await self.remove_workspace(
                    repo_path,
                    Path(workspace.path),
                    branch=workspace.branch,
                    delete_branch=delete_branches,
                )
                removed += 1
        return removed

    async def cleanup_orphans(self, repo_path: Path, active_task_ids: Iterable[str]) -> List[str]:
        """
        Remove worktree directories whose task is no longer active.

        Args:
            repo_path: Main repository checkout
            active_task_ids: Task ids whose workspaces must survive

        Returns:
            Task ids of the removed directories
        """
        repo_path = Path(repo_path).resolve()
        root = self.worktree_root(repo_path)
        if not root.is_dir():
            return []

        active = set(active_task_ids)
        removed: List[str] = []
        async with self._lock_for(repo_path):
            for child in sorted(root.iterdir()):
                if not child.is_dir() or child.name in active:
                    continue
                logger.info(f"Removing orphaned worktree: {child}")
                await self.remove_workspace(repo_path, child)
                removed.append(child.name)
            await run_git_command(["worktree", "prune"], cwd=repo_path, check=False)
        return removed

    # Dependencies

    def needs_dependency_install(self, workspace_path: Path) -> bool:
        return self.installer.needs_install(Path(workspace_path))

    async def install_dependencies(self, workspace_path: Path) -> List[str]:
        """Install missing dependencies; returns warnings instead of raising."""
        return await self.installer.install(Path(workspace_path))

    def dependency_environment(self, workspace_path: Path) -> Dict[str, str]:
        return self.installer.environment(Path(workspace_path))

    # Commit, diff and publish

    async def has_uncommitted_changes(self, workspace_path: Path) -> bool:
        result = await run_git_command(
            ["status", "--porcelain"], cwd=workspace_path, check=False, timeout=10,
        )
        if not result.ok:
            # If we can't determine, assume there might be changes
            return True
        return bool(result.stdout.strip())

    async def commit_changes(self, workspace_path: Path, message: str) -> bool:
        """
        Stage everything and commit.

        Returns:
            False when there was nothing to commit, True when a commit was created

        Raises:
            SubprocessError: git add or git commit failed
        """
        status = await run_git_command(["status", "--porcelain"], cwd=workspace_path, timeout=10)
        if not status.stdout.strip():
            logger.debug(f"Nothing to commit in {workspace_path}")
            return False

        await run_git_command(["add", "-A"], cwd=workspace_path)
        await run_git_command(["commit", "-m", message], cwd=workspace_path, timeout=60)
        logger.info(f"Committed changes in {workspace_path}")
        return True

    async def default_branch(self, workspace_path: Path) -> str:
        """Default branch ref to compare against: origin's HEAD, then main/master."""
        if self.default_base_branch:
            return self.default_base_branch

        result = await run_git_command(
            ["symbolic-ref", "refs/remotes/origin/HEAD"], cwd=workspace_path, check=False, timeout=10,
        )
        if result.ok and result.stdout.strip():
            return result.stdout.strip().removeprefix("refs/remotes/")

        for candidate in ("origin/main", "origin/master", "main", "master"):
            probe = await run_git_command(
                ["rev-parse", "--verify", "--quiet", candidate], cwd=workspace_path, check=False, timeout=10,
            )
            if probe.ok:
                return candidate
        return "main"

    async def has_commits_ahead(self, workspace_path: Path) -> bool:
        """Whether HEAD has commits that the default branch does not."""
        base = await self.default_branch(workspace_path)
        result = await run_git_command(
            ["rev-list", "--count", f"{base}..HEAD"], cwd=workspace_path, check=False, timeout=10,
        )
        if not result.ok:
            return False
        try:
            return int(result.stdout.strip()) > 0
        except ValueError:
            return False

    async def _current_branch(self, workspace_path: Path) -> str:
        result = await run_git_command(["rev-parse", "--abbrev-ref", "HEAD"], cwd=workspace_path, timeout=10)
        return result.stdout.strip()

    async def _select_provider(self, remote_url: str) -> Optional[PullRequestProvider]:
        for provider in self.pr_providers:
            if provider.matches_remote(remote_url) and await provider.is_available():
                return provider
        return None

    async def push_and_create_pr(
        self,
        workspace_path: Path,
        title: str,
        body: str,
        draft: bool = False,
        base_branch: Optional[str] = None,
    ) -> PRResult:
        """
        Push the workspace branch and open a pull request.

        Never raises: every failure is reported through ``PRResult.error``.
        """
        workspace_path = Path(workspace_path)
        try:
            branch = await self._current_branch(workspace_path)
            remote = await run_git_command(
                ["remote", "get-url", "origin"], cwd=workspace_path, check=False, timeout=10,
            )
            if not remote.ok:
                return PRResult(success=False, error="No origin remote configured")
            remote_url = remote.stdout.strip()

            provider = await self._select_provider(remote_url)
            if provider is None:
                return PRResult(
                    success=False,
                    error=f"No pull request provider available for {remote_url}",
                )

            await run_git_command(
                ["push", "--set-upstream", "origin", branch], cwd=workspace_path, timeout=120,
            )

            base = base_branch or await self.default_branch(workspace_path)
            base = base.removeprefix("origin/")
            logger.info(f"Opening pull request {branch} -> {base} via {provider.name}")
            return await provider.create_pull_request(
                workspace_path, remote_url, branch, base, title, body, draft,
            )
        except SubprocessError as e:
            return PRResult(success=False, error=f"{e.cmd} failed: {e.stderr.strip()}")
        except (asyncio.TimeoutError, OSError) as e:
            return PRResult(success=False, error=f"Push failed: {e!r}")

    async def _diff_base(self, workspace_path: Path) -> str:
        base = await self.default_branch(workspace_path)
        merge_base = await run_git_command(
            ["merge-base", "HEAD", base], cwd=workspace_path, check=False, timeout=10,
        )
        if merge_base.ok and merge_base.stdout.strip():
            return merge_base.stdout.strip()
        return "HEAD~1"

    async def get_diff_summary(self, workspace_path: Path) -> str:
        """``git diff --stat`` against the merge-base with the default branch."""
        try:
            base = await self._diff_base(workspace_path)
            result = await run_git_command(["diff", "--stat", base], cwd=workspace_path, timeout=30)
            return result.stdout.strip()
        except (SubprocessError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Diff summary failed for {workspace_path}: {e}")
            return DIFF_SUMMARY_UNAVAILABLE

    async def get_diff(self, workspace_path: Path) -> str:
        """Full diff against the merge-base; empty string on failure."""
        try:
            base = await self._diff_base(workspace_path)
            result = await run_git_command(["diff", base], cwd=workspace_path, timeout=30)
            return result.stdout
        except (SubprocessError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Diff failed for {workspace_path}: {e}")
            return ""
