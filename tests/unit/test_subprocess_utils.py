"""Tests for subprocess_utils."""

import asyncio
import sys

import pytest

from agent_workbench.utils.subprocess_utils import (
    SubprocessError,
    check_command_exists,
    run_command,
    run_git_command,
)
from tests.unit.fakes import requires_git


def test_subprocess_error_includes_context():
    """SubprocessError keeps the command, exit code and output."""
    error = SubprocessError(cmd="git status", returncode=1, stderr="error message", stdout="output")

    assert error.cmd == "git status"
    assert error.returncode == 1
    assert error.stdout == "output"
    assert "exit code 1" in str(error)
    assert "error message" in str(error)


@pytest.mark.asyncio
async def test_run_command_success():
    """Output is captured and decoded."""
    result = await run_command([sys.executable, "-c", "print('hello')"])

    assert result.ok
    assert result.stdout.strip() == "hello"


@pytest.mark.asyncio
async def test_run_command_failure_raises():
    """A non-zero exit raises when check is on."""
    with pytest.raises(SubprocessError) as exc_info:
        await run_command([sys.executable, "-c", "import sys; sys.exit(3)"])

    assert exc_info.value.returncode == 3


@pytest.mark.asyncio
async def test_run_command_failure_no_check():
    """check=False returns the failed result instead."""
    result = await run_command([sys.executable, "-c", "import sys; sys.exit(2)"], check=False)

    assert not result.ok
    assert result.returncode == 2


@pytest.mark.asyncio
async def test_run_command_timeout():
    """Commands past their timeout are killed."""
    with pytest.raises(asyncio.TimeoutError):
        await run_command([sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.2)


@pytest.mark.asyncio
async def test_run_command_cwd(tmp_path):
    """The working directory is honoured."""
    result = await run_command([sys.executable, "-c", "import os; print(os.getcwd())"], cwd=tmp_path)

    assert result.stdout.strip() == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_missing_executable(tmp_path):
    """Missing binaries surface as FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        await run_command([str(tmp_path / "nope")])


@requires_git
@pytest.mark.asyncio
async def test_run_git_command_outside_repo(tmp_path):
    """git errors carry git's stderr."""
    with pytest.raises(SubprocessError) as exc_info:
        await run_git_command(["status"], cwd=tmp_path)

    assert "not a git repository" in exc_info.value.stderr.lower()


def test_check_command_exists():
    """PATH lookup for executables."""
    assert check_command_exists("sh") is True
    assert check_command_exists("definitely-not-a-real-command-xyz") is False
