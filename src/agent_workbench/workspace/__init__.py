"""Isolated git worktrees for task execution."""

from .dependencies import DependencyInstaller
from .pr_providers import (
    GitHubAPIProvider,
    GitHubCLIProvider,
    PRResult,
    PullRequestProvider,
    parse_github_repo,
    pr_number_from_url,
)
from .worktree_allocator import (
    Workspace,
    WorkspaceAllocator,
    branch_name_for,
    last_modified_time,
)

__all__ = [
    "DependencyInstaller",
    "GitHubAPIProvider",
    "GitHubCLIProvider",
    "PRResult",
    "PullRequestProvider",
    "parse_github_repo",
    "pr_number_from_url",
    "Workspace",
    "WorkspaceAllocator",
    "branch_name_for",
    "last_modified_time",
]
