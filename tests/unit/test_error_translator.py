"""Tests for ErrorTranslator — verifies user-friendly error messages."""

import pytest

from agent_workbench.errors import (
    NoWorkspaceSelectedError,
    TaskNotFoundError,
    UnknownAgentError,
    WorkspaceLimitReached,
)
from agent_workbench.errors.translator import ErrorTranslator, UserFriendlyError
from agent_workbench.utils.subprocess_utils import SubprocessError


@pytest.fixture
def translator():
    return ErrorTranslator()


class TestWorkbenchErrorTranslation:
    def test_workspace_limit(self, translator):
        """The limit error points at the LRU listing."""
        result = translator.translate(WorkspaceLimitReached("/repo", 3))

        assert isinstance(result, UserFriendlyError)
        assert result.title == "Too many active worktrees"
        assert any("worktrees lru" in action for action in result.actions)

    def test_no_workspace(self, translator):
        """Missing project directory gets its own message."""
        result = translator.translate(NoWorkspaceSelectedError())

        assert result.title == "No project directory"

    def test_unknown_agent(self, translator):
        """Unknown agents suggest listing agents."""
        result = translator.translate(UnknownAgentError("ghost"))

        assert result.title == "Unknown agent"
        assert "workbench agents list" in result.actions[0]

    def test_unknown_task(self, translator):
        """Unknown tasks suggest listing tasks."""
        result = translator.translate(TaskNotFoundError("abc123"))

        assert result.title == "Unknown task"


class TestGitErrorTranslation:
    def test_not_a_git_repo(self, translator):
        """git's 'not a git repository' is recognised inside SubprocessError."""
        error = SubprocessError(
            "git worktree add", 128, "fatal: not a git repository (or any of the parent directories): .git",
        )

        result = translator.translate(error)

        assert result.title == "Not a git repository"

    def test_gh_not_logged_in(self, translator):
        """gh auth failures recommend gh auth login."""
        error = SubprocessError("gh pr create", 4, "To get started with GitHub CLI, please run:  gh auth login")

        result = translator.translate(error)

        assert result.title == "GitHub CLI not authenticated"

    def test_bad_credentials(self, translator):
        """API 401s are authentication failures."""
        result = translator.translate(Exception("GitHub returned 401 Bad credentials"))

        assert result.title == "GitHub authentication failed"

    def test_missing_claude(self, translator):
        """A missing agent binary is a setup problem."""
        error = FileNotFoundError(2, "No such file or directory", "claude")

        result = translator.translate(error)

        assert result.title == "Agent CLI not installed"


class TestFallback:
    def test_unknown_error_shows_technical_details(self, translator):
        """Unmatched errors keep their message and show technical details."""
        result = translator.translate(RuntimeError("something odd"))

        assert result.title == "Unexpected error"
        assert result.explanation == "something odd"
        assert result.show_technical is True

    def test_format_for_cli(self, translator):
        """CLI formatting numbers the actions and appends details when asked."""
        output = translator.format_for_cli(translator.translate(RuntimeError("boom")))

        assert "[bold red]Unexpected error[/]" in output
        assert "How to fix:" in output
        assert "  1. Re-run with --log-level DEBUG" in output
        assert "boom" in output.split("Technical details:")[1]

    def test_format_without_technical(self, translator):
        """Known errors hide the raw exception."""
        output = translator.format_for_cli(translator.translate(UnknownAgentError("ghost")))

        assert "Technical details" not in output
