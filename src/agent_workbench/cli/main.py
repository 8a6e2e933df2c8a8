"""Main CLI for the agent workbench."""

import asyncio
import functools
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import click
import yaml
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from ..core.config import (
    DEFAULT_AGENTS_PATH,
    DEFAULT_CONFIG_PATH,
    WorkbenchConfig,
    load_agents,
    load_config,
)
from ..core.coordinator import EvictionRequired, TaskExecutionCoordinator
from ..core.events import (
    ChunkEvent,
    DiagnosisCleanupEvent,
    ErrorEvent,
    Event,
    EventBroadcaster,
    PermissionRequestEvent,
    PhaseEvent,
)
from ..core.registry import Registry
from ..core.task import CommentAnchor, ResearchComment, TaskKind
from ..errors import ErrorTranslator, WorkbenchError
from ..permissions import GrantStore, ScopeType, ToolKind
from ..session import (
    ALLOW_ALWAYS,
    ALLOW_ONCE,
    REJECT_ALWAYS,
    REJECT_ONCE,
    AgentSessionManager,
    claude_process_factory,
)
from ..storage import JsonFileStore
from ..utils.rich_logging import setup_rich_logging
from ..utils.subprocess_utils import SubprocessError
from ..workspace import WorkspaceAllocator

console = Console()
translator = ErrorTranslator()

_PHASE_LABELS = {
    "creating_worktree": "Creating worktree…",
    "installing_deps": "Installing dependencies…",
    "implementing": "Implementing…",
    "committing": "Committing changes…",
    "creating_pr": "Creating pull request…",
    "done": "Done",
}

_ANSWERS = {
    "y": ALLOW_ONCE,
    "a": ALLOW_ALWAYS,
    "n": REJECT_ONCE,
    "r": REJECT_ALWAYS,
}


@dataclass
class Runtime:
    """Everything a command needs, wired once per invocation."""
    config: WorkbenchConfig
    project: Path
    registry: Registry
    store: JsonFileStore
    grants: GrantStore
    broadcaster: EventBroadcaster
    allocator: WorkspaceAllocator
    sessions: AgentSessionManager
    coordinator: TaskExecutionCoordinator


def build_runtime(config: WorkbenchConfig, project: Path, agents_path: Optional[Path] = None) -> Runtime:
    storage_path = config.storage_path
    if not storage_path.is_absolute():
        storage_path = project / storage_path

    agents = []
    agents_file = agents_path or project / DEFAULT_AGENTS_PATH
    if agents_file.exists():
        agents = load_agents(agents_file)

    registry = Registry(agents=agents, current_directory=project)
    store = JsonFileStore(storage_path)
    grants = GrantStore(store)
    broadcaster = EventBroadcaster()
    allocator = WorkspaceAllocator.from_config(config)
    sessions = AgentSessionManager(
        registry=registry,
        persistence=store,
        grant_store=grants,
        broadcaster=broadcaster,
        process_factory=claude_process_factory(config.session),
    )
    coordinator = TaskExecutionCoordinator(
        registry=registry,
        persistence=store,
        allocator=allocator,
        sessions=sessions,
        broadcaster=broadcaster,
        config=config,
    )
    return Runtime(config, project, registry, store, grants, broadcaster, allocator, sessions, coordinator)


def _runtime(ctx) -> Runtime:
    if "runtime" not in ctx.obj:
        ctx.obj["runtime"] = build_runtime(ctx.obj["config"], ctx.obj["project"], ctx.obj.get("agents_path"))
    return ctx.obj["runtime"]


def handle_errors(func):
    """Show workbench errors as friendly messages and exit non-zero."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (WorkbenchError, SubprocessError, FileNotFoundError, ValueError) as e:
            console.print(translator.format_for_cli(translator.translate(e)))
            raise SystemExit(1)

    return wrapper


class ConsoleEventSink:
    """Renders events on the console and asks the operator for permissions."""

    def __init__(self, runtime: Runtime, auto_approve: bool = False):
        self.runtime = runtime
        self.auto_approve = auto_approve
        self._printed: Dict[str, int] = {}
        self.diagnosis_files: List[str] = []

    async def __call__(self, event: Event) -> None:
        if isinstance(event, PhaseEvent):
            if event.phase == "warning":
                console.print(f"[yellow]⚠ {event.message}[/]")
            else:
                console.print(f"[bold cyan]▶ {_PHASE_LABELS.get(event.phase, event.phase)}[/]")
        elif isinstance(event, ChunkEvent):
            seen = self._printed.get(event.session_id, 0)
            if len(event.content) > seen:
                console.print(event.content[seen:], end="", markup=False, highlight=False)
                self._printed[event.session_id] = len(event.content)
        elif isinstance(event, PermissionRequestEvent):
            await self._ask_permission(event)
        elif isinstance(event, ErrorEvent):
            console.print(f"[red]Agent error: {event.error}[/]")
        elif isinstance(event, DiagnosisCleanupEvent):
            self.diagnosis_files.append(event.file_path)

    async def _ask_permission(self, event: PermissionRequestEvent) -> None:
        tool = event.tool_call
        if self.auto_approve:
            answer = ALLOW_ONCE
        else:
            raw_input = tool.get("raw_input")
            command = raw_input.get("command", "") if isinstance(raw_input, dict) else ""
            target = ", ".join(tool.get("locations") or []) or command
            console.print(f"\n[bold yellow]{event.agent_id} wants to use {tool['name']}[/] {target}")
            choice = await asyncio.to_thread(
                click.prompt,
                "Allow? [y]es once, [a]lways, [n]o, [r]eject always",
                type=click.Choice(list(_ANSWERS)),
                default="y",
            )
            answer = _ANSWERS[choice]

        scope = None
        if answer in (ALLOW_ALWAYS, REJECT_ALWAYS) and len(event.scopes) > 1:
            for i, option in enumerate(event.scopes, 1):
                console.print(f"  {i}. {option['label']}")
            index = await asyncio.to_thread(
                click.prompt, "Remember for", type=click.IntRange(1, len(event.scopes)), default=1,
            )
            scope = event.scopes[index - 1]

        self.runtime.sessions.respond_to_permission(event.agent_id, event.request_id, answer, scope)


@click.group()
@click.option("--project", "-p", default=".", help="Project (git repository) directory")
@click.option("--config", "-c", "config_path", default=None, help="Path to workbench.yaml")
@click.option("--agents", "agents_path", default=None, help="Path to agents.yaml")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx, project, config_path, agents_path, log_level):
    """Agent Workbench - run coding agents on tasks in isolated git worktrees."""
    ctx.ensure_object(dict)
    project = Path(project).resolve()
    config = load_config(Path(config_path) if config_path else project / DEFAULT_CONFIG_PATH)
    setup_rich_logging(log_level=log_level or config.log.level, log_dir=config.log.log_dir)

    ctx.obj["project"] = Path(config.project).resolve() if config.project else project
    ctx.obj["config"] = config
    ctx.obj["agents_path"] = Path(agents_path) if agents_path else None


# Config and agents

@cli.group("config")
def config_group():
    """Inspect configuration."""


@config_group.command("show")
@click.pass_context
def config_show(ctx):
    """Print the effective configuration."""
    config: WorkbenchConfig = ctx.obj["config"]
    data = config.model_dump(mode="json")
    if data.get("github", {}).get("token"):
        data["github"]["token"] = "***"
    console.print(yaml.safe_dump(data, sort_keys=False), markup=False, highlight=False)


@cli.group()
def agents():
    """Manage agent identities."""


@agents.command("list")
@click.pass_context
@handle_errors
def agents_list(ctx):
    """List agents from agents.yaml."""
    runtime = _runtime(ctx)
    agent_defs = runtime.registry.list_agents()
    if not agent_defs:
        console.print(f"[yellow]No agents defined in {DEFAULT_AGENTS_PATH}[/]")
        return

    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Model")
    table.add_column("Description")
    for agent in agent_defs:
        table.add_row(agent.id, agent.name, agent.model or "-", agent.description)
    console.print(table)


# Tasks

@cli.group()
def tasks():
    """Manage tasks."""


@tasks.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include done tasks")
@click.pass_context
@handle_errors
def tasks_list(ctx, show_all):
    """List tasks for the project."""
    runtime = _runtime(ctx)
    task_list = runtime.coordinator.list_tasks(str(runtime.project))
    if not show_all:
        task_list = [t for t in task_list if t.state != "done"]

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("State")
    table.add_column("Title")
    table.add_column("Research")
    table.add_column("Branch")
    table.add_column("PR")
    for task in task_list:
        table.add_row(
            task.id,
            task.kind,
            task.state,
            task.title,
            "✓" if task.research_content else "",
            task.branch_name or "",
            task.pr_url or "",
        )
    console.print(table)


@tasks.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option(
    "--kind", "-k",
    type=click.Choice([k.value for k in TaskKind]),
    default=TaskKind.FEATURE.value,
)
@click.pass_context
@handle_errors
def tasks_add(ctx, title, description, kind):
    """Create a task."""
    runtime = _runtime(ctx)
    task = asyncio.run(runtime.coordinator.create_task(title, description, kind, runtime.project))
    console.print(f"[green]✓ Created {task.kind} task {task.id}[/]: {task.title}")


@tasks.command("show")
@click.argument("task_id")
@click.pass_context
@handle_errors
def tasks_show(ctx, task_id):
    """Show a task and its research."""
    runtime = _runtime(ctx)
    task = runtime.coordinator.get_task(task_id)

    console.print(f"[bold]{task.title}[/] [dim]({task.id})[/]")
    console.print(f"Kind: {task.kind}   State: {task.state}"
                  + (f"   Closed: {task.close_reason}" if task.close_reason else ""))
    if task.branch_name:
        console.print(f"Branch: {task.branch_name}")
    if task.workspace_path:
        console.print(f"Worktree: {task.workspace_path}")
    if task.pr_url:
        console.print(f"PR: {task.pr_url} ({task.pr_state})")
    if task.description:
        console.print(f"\n{task.description}")
    if task.research_content:
        console.print()
        console.print(Markdown(task.research_content))


@tasks.command("done")
@click.argument("task_id")
@click.option("--yes", "-y", is_flag=True, help="Delete the diagnosis file without asking")
@click.pass_context
@handle_errors
def tasks_done(ctx, task_id, yes):
    """Mark a task done."""
    runtime = _runtime(ctx)
    sink = ConsoleEventSink(runtime)
    runtime.broadcaster.add_sink(sink)
    task = asyncio.run(runtime.coordinator.update_task_state(task_id, "done"))
    console.print(f"[green]✓ {task.title} is done[/]")

    for file_path in sink.diagnosis_files:
        if yes or click.confirm(f"Delete diagnosis file {file_path}?", default=False):
            runtime.coordinator.delete_diagnosis_file(file_path)
            console.print(f"[dim]Deleted {file_path}[/]")


# Runs

async def _run_with_sessions(runtime: Runtime, coro):
    try:
        return await coro
    finally:
        await runtime.sessions.stop_all()


@cli.command()
@click.argument("task_id")
@click.argument("agent_id")
@click.option("--output-dir", default=None, help="Directory for research documents")
@click.option("--yes", "-y", is_flag=True, help="Approve every tool call")
@click.pass_context
@handle_errors
def research(ctx, task_id, agent_id, output_dir, yes):
    """Have an agent research (or diagnose) a task."""
    runtime = _runtime(ctx)
    runtime.broadcaster.add_sink(ConsoleEventSink(runtime, auto_approve=yes))

    outcome = asyncio.run(_run_with_sessions(
        runtime, runtime.coordinator.run_research(task_id, agent_id, output_dir),
    ))
    console.print()
    if outcome.cancelled:
        console.print("[yellow]Research cancelled[/]")
    elif outcome.written:
        console.print(f"[green]✓ Research written to {outcome.file_path}[/]")
    else:
        console.print(f"[yellow]⚠ Agent finished without writing {outcome.file_path}[/]")


@cli.command()
@click.argument("task_id")
@click.option("--comment", "-m", "comments", multiple=True, required=True, help="Reviewer comment")
@click.pass_context
@handle_errors
def review(ctx, task_id, comments):
    """Ask the research agent to revise its document."""
    runtime = _runtime(ctx)
    runtime.broadcaster.add_sink(ConsoleEventSink(runtime))
    task = runtime.coordinator.get_task(task_id)
    snapshot = task.research_content or ""
    review_comments = [
        ResearchComment(body=body, anchor=CommentAnchor(block_type="document", preview=snapshot[:40]))
        for body in comments
    ]

    result = asyncio.run(_run_with_sessions(
        runtime, runtime.coordinator.submit_research_review(task_id, review_comments, snapshot),
    ))
    console.print()
    console.print(f"[green]✓ Review {result.id[:8]} {result.status}[/]")


@cli.command()
@click.argument("task_id")
@click.argument("agent_id")
@click.option("--yes", "-y", is_flag=True, help="Approve every tool call and evict without asking")
@click.pass_context
@handle_errors
def implement(ctx, task_id, agent_id, yes):
    """Implement a task in its own worktree and open a PR."""
    runtime = _runtime(ctx)
    runtime.broadcaster.add_sink(ConsoleEventSink(runtime, auto_approve=yes))

    async def run():
        outcome = await runtime.coordinator.run_implementation(task_id, agent_id)
        if isinstance(outcome, EvictionRequired):
            _print_workspaces(outcome.candidates, f"Worktree limit ({outcome.limit}) reached")
            oldest = outcome.candidates[0] if outcome.candidates else None
            if oldest is None:
                return outcome
            confirmed = yes or await asyncio.to_thread(
                click.confirm, f"Evict the least recently used worktree ({oldest.task_id})?", default=False,
            )
            if not confirmed:
                return outcome
            outcome = await runtime.coordinator.run_implementation(task_id, agent_id, evict=[oldest])
        return outcome

    outcome = asyncio.run(_run_with_sessions(runtime, run()))
    console.print()
    if isinstance(outcome, EvictionRequired):
        console.print("[yellow]Not started: no worktree was evicted[/]")
        raise SystemExit(1)
    if outcome.cancelled:
        console.print("[yellow]Implementation cancelled[/]")
        return
    console.print(f"[green]✓ {outcome.task.title} is {outcome.task.state}[/]")
    if outcome.pull_request and outcome.pull_request.success:
        console.print(f"PR: {outcome.pull_request.url}")
    for warning in outcome.warnings:
        console.print(f"[yellow]⚠ {warning}[/]")


# Worktrees

def _print_workspaces(workspaces, title: str = "Worktrees") -> None:
    table = Table(title=title)
    table.add_column("Task", style="cyan")
    table.add_column("Branch")
    table.add_column("Last modified")
    table.add_column("Path", style="dim")
    for workspace in workspaces:
        table.add_row(
            workspace.task_id,
            workspace.branch,
            workspace.last_modified.strftime("%Y-%m-%d %H:%M"),
            workspace.path,
        )
    console.print(table)


@cli.group()
def worktrees():
    """Manage task worktrees."""


@worktrees.command("list")
@click.pass_context
@handle_errors
def worktrees_list(ctx):
    """List live worktrees."""
    runtime = _runtime(ctx)
    workspaces = asyncio.run(runtime.allocator.list_workspaces(runtime.project))
    _print_workspaces(workspaces, f"Worktrees ({len(workspaces)}/{runtime.allocator.max_concurrent})")


@worktrees.command("create")
@click.argument("task_id")
@click.option("--base", default=None, help="Base branch")
@click.pass_context
@handle_errors
def worktrees_create(ctx, task_id, base):
    """Create the worktree for a task."""
    runtime = _runtime(ctx)
    task = runtime.coordinator.require_task(task_id)
    settings = runtime.coordinator.effective_settings()
    runtime.allocator.set_max_concurrent(settings.max_concurrent_workspaces)

    workspace = asyncio.run(runtime.allocator.create_workspace(
        runtime.project, task.title, task.id, task.kind,
        base_branch=base or settings.default_base_branch,
    ))
    task.bind_workspace(workspace.path, workspace.branch)
    runtime.store.update_task(task)
    console.print(f"[green]✓ {workspace.path}[/] on [cyan]{workspace.branch}[/]")


@worktrees.command("remove")
@click.argument("task_id")
@click.option("--delete-branch", is_flag=True, help="Also delete the task branch")
@click.pass_context
@handle_errors
def worktrees_remove(ctx, task_id, delete_branch):
    """Remove a task's worktree."""
    runtime = _runtime(ctx)

    async def remove():
        for workspace in await runtime.allocator.list_workspaces(runtime.project):
            if workspace.task_id == task_id:
                await runtime.coordinator.evict_workspaces(
                    runtime.project, [workspace], delete_branches=delete_branch,
                )
                return workspace
        return None

    workspace = asyncio.run(remove())
    if workspace is None:
        console.print(f"[yellow]No worktree for task {task_id}[/]")
        return
    console.print(f"[green]✓ Removed {workspace.path}[/]")


@worktrees.command("lru")
@click.option("--count", "-n", default=3, help="How many to show")
@click.pass_context
@handle_errors
def worktrees_lru(ctx, count):
    """Show the least recently used worktrees."""
    runtime = _runtime(ctx)
    workspaces = asyncio.run(runtime.allocator.get_lru_workspaces(runtime.project, count))
    _print_workspaces(workspaces, "Least recently used")


@worktrees.command("cleanup-orphans")
@click.pass_context
@handle_errors
def worktrees_cleanup_orphans(ctx):
    """Remove worktrees whose task is done or gone."""
    runtime = _runtime(ctx)
    active = [t.id for t in runtime.store.list_tasks() if t.state != "done"]
    removed = asyncio.run(runtime.allocator.cleanup_orphans(runtime.project, active))
    if not removed:
        console.print("[green]No orphaned worktrees[/]")
        return
    for task_id in removed:
        console.print(f"[dim]Removed {task_id}[/]")
    console.print(f"[green]✓ Removed {len(removed)} orphaned worktree(s)[/]")


@cli.command()
@click.argument("task_id")
@click.option("--stat", is_flag=True, help="Only show the summary")
@click.pass_context
@handle_errors
def diff(ctx, task_id, stat):
    """Show a task worktree's changes against its base."""
    runtime = _runtime(ctx)
    task = runtime.coordinator.require_task(task_id)
    if not task.workspace_path or not Path(task.workspace_path).exists():
        console.print(f"[yellow]Task {task_id} has no worktree[/]")
        raise SystemExit(1)

    if stat:
        output = asyncio.run(runtime.allocator.get_diff_summary(Path(task.workspace_path)))
    else:
        output = asyncio.run(runtime.allocator.get_diff(Path(task.workspace_path)))
    console.print(output or "[dim](no changes)[/]", markup=not output, highlight=False)


# Permission grants

@cli.group()
def grants():
    """Manage remembered tool permissions."""


@grants.command("list")
@click.pass_context
@handle_errors
def grants_list(ctx):
    """List grants for the project."""
    runtime = _runtime(ctx)
    table = Table(title="Permission grants")
    table.add_column("ID", style="cyan")
    table.add_column("Tool")
    table.add_column("Scope")
    table.add_column("Value")
    table.add_column("Decision")
    for grant in runtime.grants.list_grants(str(runtime.project)):
        table.add_row(
            grant.id[:12],
            grant.tool_kind,
            grant.scope_type,
            grant.scope_value or "-",
            "[green]allow[/]" if grant.granted else "[red]reject[/]",
        )
    console.print(table)


@grants.command("add")
@click.argument("tool_kind", type=click.Choice([k.value for k in ToolKind]))
@click.argument("scope_type", type=click.Choice([s.value for s in ScopeType]))
@click.argument("scope_value", default="")
@click.option("--reject", is_flag=True, help="Store a reject rule instead of allow")
@click.pass_context
@handle_errors
def grants_add(ctx, tool_kind, scope_type, scope_value, reject):
    """Remember a permission decision."""
    runtime = _runtime(ctx)
    grant = runtime.grants.add_grant(
        str(runtime.project), tool_kind, scope_type, scope_value, granted=not reject,
    )
    console.print(f"[green]✓ Grant {grant.id[:12]} stored[/]")


@grants.command("remove")
@click.argument("grant_id")
@click.pass_context
@handle_errors
def grants_remove(ctx, grant_id):
    """Delete a grant (prefix of its id is enough)."""
    runtime = _runtime(ctx)
    matches = [g for g in runtime.grants.list_grants(str(runtime.project)) if g.id.startswith(grant_id)]
    if len(matches) != 1:
        console.print(f"[red]{'No' if not matches else 'Ambiguous'} grant matching {grant_id}[/]")
        raise SystemExit(1)
    runtime.grants.delete_grant(matches[0].id)
    console.print(f"[green]✓ Removed grant {matches[0].id[:12]}[/]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
