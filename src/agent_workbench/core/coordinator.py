"""End-to-end task runs: research, implementation and research revision.

An implementation run walks through fixed checkpoints, each published as
a phase event: creating_worktree -> installing_deps -> implementing ->
committing -> creating_pr -> done, with warning phases in between for
automation steps that failed without stopping the run.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

from ..errors import (
    AgentProcessError,
    InvalidInputError,
    SessionError,
    TaskNotFoundError,
    WorkspaceLimitReached,
)
from ..session.manager import AgentSessionManager
from ..storage.base import Persistence
from ..utils.rich_logging import get_context_logger
from ..utils.subprocess_utils import SubprocessError
from ..workspace.pr_providers import PRResult
from ..workspace.worktree_allocator import Workspace, WorkspaceAllocator
from .config import ExecutionSettings, WorkbenchConfig
from .events import (
    CompletionEvent,
    DiagnosisCleanupEvent,
    ErrorEvent,
    EventBroadcaster,
    PhaseEvent,
    TaskChangedEvent,
    TaskPhase,
)
from .prompts import (
    build_commit_message,
    build_follow_up_prompt,
    build_implementation_prompt,
    build_pr_body,
    build_research_prompt,
    build_revision_prompt,
    research_file_path,
)
from .registry import Registry
from .task import ResearchComment, ResearchReview, ReviewStatus, Task, TaskKind, TaskState

logger = logging.getLogger(__name__)

# Filesystems with coarse timestamps can report an mtime slightly before the run began
MTIME_TOLERANCE_SECONDS = 1.0


@dataclass
class EvictionRequired:
    """The workspace ceiling was hit; the caller must pick workspaces to evict."""
    task_id: str
    agent_id: str
    repo_path: str
    limit: int
    candidates: List[Workspace] = field(default_factory=list)


@dataclass
class ImplementationOutcome:
    task: Task
    workspace: Optional[Workspace] = None
    content: str = ""
    committed: bool = False
    pull_request: Optional[PRResult] = None
    warnings: List[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class ResearchOutcome:
    task: Task
    file_path: Path
    written: bool
    follow_up_sent: bool = False
    content: str = ""
    cancelled: bool = False


class TaskExecutionCoordinator:
    """Binds sessions to workspaces and drives task runs to completion."""

    def __init__(
        self,
        registry: Registry,
        persistence: Persistence,
        allocator: WorkspaceAllocator,
        sessions: AgentSessionManager,
        broadcaster: EventBroadcaster,
        config: Optional[WorkbenchConfig] = None,
    ):
        self.registry = registry
        self.persistence = persistence
        self.allocator = allocator
        self.sessions = sessions
        self.broadcaster = broadcaster
        self.config = config or WorkbenchConfig()

    # Helpers

    def effective_settings(self) -> ExecutionSettings:
        """Persisted execution settings, or the configured defaults when none were saved."""
        return self.persistence.get_settings() or self.config.default_execution_settings()

    def require_task(self, task_id: str) -> Task:
        task = self.persistence.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _project_path(self, task: Task) -> Path:
        if task.project_path:
            return Path(task.project_path)
        return self.registry.require_current_directory()

    async def _phase(
        self,
        task: Task,
        agent_id: str,
        phase: TaskPhase,
        message: Optional[str] = None,
        ctx=None,
    ) -> None:
        if ctx is not None:
            ctx.phase_change(phase.value)
            if message and phase == TaskPhase.WARNING:
                ctx.warning(message)
        await self.broadcaster.publish(PhaseEvent(
            task_id=task.id,
            agent_id=agent_id,
            task_title=task.title,
            phase=phase,
            message=message,
        ))

    async def _task_changed(self, task: Task, action: str = "updated") -> None:
        await self.broadcaster.publish(TaskChangedEvent(action=action, task=task.model_dump(mode="json")))

    # Tasks

    async def create_task(
        self,
        title: str,
        description: str = "",
        kind: str = TaskKind.FEATURE.value,
        project_path: Optional[Union[str, Path]] = None,
    ) -> Task:
        project = project_path or self.registry.current_directory
        task = Task(
            id=uuid.uuid4().hex[:12],
            title=title,
            description=description,
            kind=kind,
            project_path=str(Path(project).resolve()) if project else None,
        )
        self.persistence.create_task(task)
        await self._task_changed(task, "created")
        return task

    def hydrate_research(self, task: Task) -> Task:
        """
        Load research content from the task's research file.

        A missing file clears stale stored research so the task shows as
        needing research again.
        """
        project = task.project_path or self.registry.current_directory
        if not project:
            return task
        path = research_file_path(task, project)
        try:
            if path.exists():
                return task.model_copy(update={"research_content": path.read_text(encoding="utf-8")})
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Research file unreadable for task {task.id}: {e}")
        if task.research_content:
            return task.model_copy(update={"research_content": None, "research_agent_id": None})
        return task

    def get_task(self, task_id: str) -> Task:
        return self.hydrate_research(self.require_task(task_id))

    def list_tasks(self, project_path: Optional[str] = None) -> List[Task]:
        return [self.hydrate_research(t) for t in self.persistence.list_tasks(project_path)]

    async def update_task_state(self, task_id: str, state: str) -> Task:
        """
        Change a task's state and announce it.

        Moving a bug to done emits a diagnosis cleanup notice when its
        diagnosis document still exists.
        """
        task = self.require_task(task_id)
        state = TaskState(state).value
        if state == TaskState.DONE.value:
            task.mark_done()
        else:
            task.state = state
        self.persistence.update_task(task)

        if state == TaskState.DONE.value and task.is_bug:
            project = task.project_path or self.registry.current_directory
            if project:
                diagnosis = research_file_path(task, project)
                if diagnosis.exists():
                    await self.broadcaster.publish(
                        DiagnosisCleanupEvent(task_id=task.id, file_path=str(diagnosis))
                    )

        await self._task_changed(task)
        return task

    def delete_diagnosis_file(self, file_path: Union[str, Path]) -> bool:
        path = Path(file_path)
        try:
            if path.exists():
                path.unlink()
                logger.info(f"Deleted diagnosis file: {path}")
                return True
        except OSError as e:
            logger.error(f"Failed to delete diagnosis file {path}: {e}")
        return False

    # Workspaces

    async def evict_workspaces(
        self,
        project: Path,
        workspaces: Sequence[Workspace],
        delete_branches: bool = False,
    ) -> int:
        """Remove workspaces and unbind them from their tasks."""
        removed = await self.allocator.cleanup_workspaces(project, workspaces, delete_branches=delete_branches)
        for workspace in workspaces:
            task = self.persistence.get_task(workspace.task_id)
            if task is not None and task.workspace_path:
                task.release_workspace()
                self.persistence.update_task(task)
        return removed

    # Implementation

    async def run_implementation(
        self,
        task_id: str,
        agent_id: str,
        evict: Optional[Sequence[Workspace]] = None,
    ) -> Union[ImplementationOutcome, EvictionRequired]:
        """
        Implement a task in an isolated workspace and land the result.

        Args:
            task_id: Task to implement
            agent_id: Agent that does the work
            evict: Workspaces the operator agreed to remove before allocating

        Returns:
            ImplementationOutcome, or EvictionRequired when the workspace
            ceiling is reached and no eviction was supplied

        Raises:
            TaskNotFoundError, UnknownAgentError, NoWorkspaceSelectedError: Bad input
            WorkspaceError: The workspace could not be created
            AgentProcessError: The session failed to start or crashed mid-run
        """
        task = self.require_task(task_id)
        self.registry.require_agent(agent_id)
        project = self._project_path(task)
        settings = self.effective_settings()
        self.allocator.set_max_concurrent(settings.max_concurrent_workspaces)

        ctx = get_context_logger(__name__, agent_id)
        ctx.task_started(task.id, task.title)
        started = time.monotonic()
        original = task.model_copy(deep=True)
        warnings: List[str] = []

        async def warn(message: str) -> None:
            warnings.append(message)
            await self._phase(task, agent_id, TaskPhase.WARNING, message, ctx)

        workspace: Optional[Workspace] = None
        working_directory = project
        process_env: Optional[Dict[str, str]] = None

        if settings.isolation_enabled:
            await self._phase(task, agent_id, TaskPhase.CREATING_WORKTREE, ctx=ctx)
            if evict:
                await self.evict_workspaces(project, evict)
                task = self.require_task(task.id)
                original = task.model_copy(deep=True)
            try:
                workspace = await self.allocator.create_workspace(
                    project,
                    task.title,
                    task.id,
                    task.kind,
                    base_branch=settings.default_base_branch,
                )
            except WorkspaceLimitReached as e:
                ctx.warning(f"Workspace limit reached ({e.limit}); eviction choice needed")
                ctx.clear_context()
                return EvictionRequired(
                    task_id=task.id,
                    agent_id=agent_id,
                    repo_path=e.repo_path,
                    limit=e.limit,
                    candidates=e.candidates,
                )

            working_directory = Path(workspace.path)
            task.bind_workspace(workspace.path, workspace.branch)

            if settings.auto_install_deps and self.allocator.needs_dependency_install(working_directory):
                await self._phase(task, agent_id, TaskPhase.INSTALLING_DEPS, ctx=ctx)
                for message in await self.allocator.install_dependencies(working_directory):
                    await warn(message)
            process_env = self.allocator.dependency_environment(working_directory)

        task.implement_agent_id = agent_id
        self.persistence.update_task(task)

        try:
            await self.sessions.start_session(
                agent_id, working_directory, project_path=project, env=process_env,
            )
        except AgentProcessError as e:
            ctx.task_failed(str(e))
            self.persistence.update_task(original)
            if workspace is not None and workspace.created:
                await self.allocator.remove_workspace(
                    project, Path(workspace.path), branch=workspace.branch, delete_branch=True,
                )
            raise

        await self._phase(task, agent_id, TaskPhase.IMPLEMENTING, ctx=ctx)
        try:
            result = await self.sessions.send_message(agent_id, build_implementation_prompt(task))
        except (AgentProcessError, SessionError) as e:
            ctx.task_failed(str(e))
            raise

        if result.cancelled:
            ctx.warning("Implementation cancelled")
            ctx.clear_context()
            return ImplementationOutcome(
                task=task, workspace=workspace, content=result.content,
                warnings=warnings, cancelled=True,
            )

        committed = False
        pull_request: Optional[PRResult] = None
        if workspace is not None:
            await self._phase(task, agent_id, TaskPhase.COMMITTING, ctx=ctx)
            try:
                committed = await self.allocator.commit_changes(working_directory, build_commit_message(task))
            except (SubprocessError, asyncio.TimeoutError) as e:
                await warn(f"Auto-commit failed: {e}")

            if committed or await self.allocator.has_commits_ahead(working_directory):
                await self._phase(task, agent_id, TaskPhase.CREATING_PR, ctx=ctx)
                summary = await self.allocator.get_diff_summary(working_directory)
                pull_request = await self.allocator.push_and_create_pr(
                    working_directory,
                    title=task.title,
                    body=build_pr_body(task, summary),
                    draft=settings.draft_prs,
                    base_branch=settings.default_base_branch,
                )
                if pull_request.success:
                    task.record_pull_request(pull_request.url, pull_request.pr_number, settings.draft_prs)
                    self.persistence.update_task(task)
                else:
                    await warn(f"Pull request not created: {pull_request.error}")

        task = await self.update_task_state(task.id, TaskState.DONE.value)

        await self.sessions.flush_events(agent_id)
        await self._phase(task, agent_id, TaskPhase.DONE, ctx=ctx)
        await self.broadcaster.publish(CompletionEvent(id=task.id, agent_id=agent_id, content=""))
        ctx.task_completed(time.monotonic() - started)

        return ImplementationOutcome(
            task=task,
            workspace=workspace,
            content=result.content,
            committed=committed,
            pull_request=pull_request,
            warnings=warnings,
        )

    # Research

    def _artifact_written(
        self,
        expected: Path,
        started_at: float,
        written_files: Iterable[str],
        base_dir: Path,
    ) -> bool:
        if not expected.exists():
            return False
        target = expected.resolve()
        for reported in written_files:
            path = Path(reported)
            if not path.is_absolute():
                path = base_dir / path
            if path.resolve() == target:
                return True
        try:
            return expected.stat().st_mtime >= started_at - MTIME_TOLERANCE_SECONDS
        except OSError:
            return False

    async def run_research(
        self,
        task_id: str,
        agent_id: str,
        output_dir: Optional[Union[str, Path]] = None,
    ) -> ResearchOutcome:
        """
        Have an agent research a task (or diagnose a bug) into a Markdown file.

        When the file was not written during the run, exactly one follow-up
        prompt asks for it; the second completion is accepted either way.
        """
        task = self.require_task(task_id)
        self.registry.require_agent(agent_id)
        project = self._project_path(task)
        expected = research_file_path(task, project, output_dir)

        ctx = get_context_logger(__name__, agent_id)
        ctx.task_started(task.id, task.title)
        ctx.phase_change("researching")

        task.research_agent_id = agent_id
        self.persistence.update_task(task)

        await self.sessions.start_session(agent_id, project, project_path=project)
        started_at = time.time()

        result = await self.sessions.send_message(agent_id, build_research_prompt(task, expected))
        if result.cancelled:
            ctx.clear_context()
            return ResearchOutcome(task=task, file_path=expected, written=False, cancelled=True)

        written = self._artifact_written(expected, started_at, result.written_files, project)
        follow_up_sent = False
        content = result.content
        if written:
            ctx.info(f"Agent wrote file: {expected}")
        else:
            ctx.progress("Agent did not write the research file, sending follow-up prompt")
            follow_up_sent = True
            follow_up = await self.sessions.send_message(agent_id, build_follow_up_prompt(expected))
            if follow_up.cancelled:
                ctx.clear_context()
                return ResearchOutcome(
                    task=task, file_path=expected, written=False,
                    follow_up_sent=True, cancelled=True,
                )
            content = follow_up.content or content
            written = self._artifact_written(expected, started_at, follow_up.written_files, project)

        if written:
            task = self.hydrate_research(task)
            self.persistence.update_task(task)
        else:
            ctx.warning(f"Research file still missing after follow-up: {expected}")

        await self.sessions.flush_events(agent_id)
        await self.broadcaster.publish(CompletionEvent(id=task.id, agent_id=agent_id, content=""))
        ctx.clear_context()
        return ResearchOutcome(
            task=task,
            file_path=expected,
            written=written,
            follow_up_sent=follow_up_sent,
            content=content,
        )

    async def submit_research_review(
        self,
        task_id: str,
        comments: Sequence[ResearchComment],
        research_snapshot: str,
    ) -> ResearchReview:
        """
        Ask the research agent to revise its document against reviewer comments.

        Raises:
            InvalidInputError: The task has no research agent
            AgentProcessError: The revision prompt failed; the review returns to pending
        """
        task = self.require_task(task_id)
        if not task.research_agent_id:
            raise InvalidInputError("No research agent assigned to task")
        agent_id = task.research_agent_id

        review = ResearchReview(
            id=uuid.uuid4().hex,
            task_id=task.id,
            comments=list(comments),
            research_snapshot=research_snapshot,
        )
        self.persistence.save_research_review(review)

        project = task.project_path or self.registry.current_directory
        expected = research_file_path(task, project) if project else None
        prompt = build_revision_prompt(task, research_snapshot, review.comments, expected)

        review.status = ReviewStatus.IN_PROGRESS.value
        self.persistence.save_research_review(review)

        try:
            result = await self.sessions.send_message(agent_id, prompt, working_directory=project)
        except (AgentProcessError, SessionError) as e:
            logger.error(f"Research review for task {task.id} failed: {e}")
            review.status = ReviewStatus.PENDING.value
            self.persistence.save_research_review(review)
            await self.broadcaster.publish(ErrorEvent(agent_id=agent_id, error=str(e)))
            raise

        if result.cancelled:
            review.status = ReviewStatus.PENDING.value
            self.persistence.save_research_review(review)
            return review

        review.status = ReviewStatus.COMPLETE.value
        review.revised_content = result.content
        self.persistence.save_research_review(review)

        await self.sessions.flush_events(agent_id)
        await self.broadcaster.publish(
            CompletionEvent(id=task.id, agent_id=agent_id, content=result.content)
        )
        return review
