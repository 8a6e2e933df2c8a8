"""Translate technical errors to user-friendly messages."""

import re
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Exception
    title: str
    explanation: str
    actions: List[str]
    documentation: Optional[str] = None
    show_technical: bool = False


class ErrorTranslator:
    """Translate technical errors to user-friendly messages."""

    ERROR_PATTERNS = {
        r"WorkspaceLimitReached": {
            "title": "Too many active worktrees",
            "explanation": "Every worktree slot for this repository is in use. Free one before starting another implementation run.",
            "actions": [
                "See the oldest worktrees: workbench worktrees lru",
                "Remove one: workbench worktrees remove <task-id>",
                "Or raise workspace.max_concurrent in workbench.yaml",
            ],
        },

        r"NoWorkspaceSelected|No workspace directory": {
            "title": "No project directory",
            "explanation": "The agent needs a project directory to work in.",
            "actions": [
                "Pass --project <path> or run the command from inside the repository",
            ],
        },

        r"not a git repository": {
            "title": "Not a git repository",
            "explanation": "Worktree isolation requires the project to be a git repository.",
            "actions": [
                "Run 'git init' in the project directory",
                "Or disable isolation: set workspace.enabled: false",
            ],
        },

        r"gh auth login|not logged in|gh.*authentication": {
            "title": "GitHub CLI not authenticated",
            "explanation": "Pull requests are created with the gh CLI, which has no valid login.",
            "actions": [
                "Run: gh auth login",
                "Or set github.token in workbench.yaml to use the GitHub API instead",
            ],
        },

        r"GitHub.*401|Bad credentials": {
            "title": "GitHub authentication failed",
            "explanation": "Your GitHub personal access token is invalid or lacks required permissions.",
            "actions": [
                "Generate new token: https://github.com/settings/tokens (needs 'repo' scope)",
                "Check token hasn't expired",
            ],
        },

        r"No such file or directory: '?claude'?|claude.*not found": {
            "title": "Agent CLI not installed",
            "explanation": "The claude executable could not be found on PATH.",
            "actions": [
                "Install the Claude CLI",
                "Or point session.executable at the binary in workbench.yaml",
            ],
        },

        r"UnknownAgent|Agent .* not found": {
            "title": "Unknown agent",
            "explanation": "No agent with that id is defined.",
            "actions": [
                "List agents: workbench agents list",
                "Check config/agents.yaml",
            ],
        },

        r"TaskNotFound": {
            "title": "Unknown task",
            "explanation": "No task with that id exists.",
            "actions": [
                "List tasks: workbench tasks list --all",
            ],
        },

        r"config.*not.*found|no such file.*config": {
            "title": "Configuration missing",
            "explanation": "Required configuration files were not found.",
            "actions": [
                "Create workbench.yaml and config/agents.yaml in the project",
            ],
        },
    }

    def translate(self, error: Exception) -> UserFriendlyError:
        """Convert exception to user-friendly format."""
        full_error = f"{type(error).__name__}: {error}"

        for pattern, translation in self.ERROR_PATTERNS.items():
            if re.search(pattern, full_error, re.IGNORECASE):
                return UserFriendlyError(
                    original_error=error,
                    title=translation["title"],
                    explanation=translation["explanation"],
                    actions=translation["actions"],
                    documentation=translation.get("documentation"),
                )

        return UserFriendlyError(
            original_error=error,
            title="Unexpected error",
            explanation=str(error),
            actions=["Re-run with --log-level DEBUG and check the log output"],
            show_technical=True,
        )

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        """Format error for rich console display."""
        output = f"[bold red]{friendly_error.title}[/]\n\n"
        output += f"{friendly_error.explanation}\n\n"

        output += "[bold]How to fix:[/]\n"
        for i, action in enumerate(friendly_error.actions, 1):
            output += f"  {i}. {action}\n"

        if friendly_error.documentation:
            output += f"\n[dim]Learn more: {friendly_error.documentation}[/]"

        if friendly_error.show_technical:
            output += f"\n\n[dim]Technical details:[/]\n[dim]{friendly_error.original_error}[/]"

        return output
