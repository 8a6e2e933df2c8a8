"""Async subprocess helpers shared by git, gh and package-manager calls."""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Exception raised when a subprocess command fails."""

    def __init__(self, cmd: str, returncode: int, stderr: str, stdout: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(
            f"Command failed with exit code {returncode}: {cmd}\nstderr: {stderr}"
        )


@dataclass
class CommandResult:
    """Outcome of a finished subprocess."""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    cmd: List[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    check: bool = True,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run a command without blocking the event loop.

    Args:
        cmd: Command and arguments
        cwd: Working directory
        check: Raise SubprocessError on non-zero exit
        timeout: Timeout in seconds (child is killed when exceeded)
        env: Environment for the child process

    Returns:
        CommandResult with decoded stdout/stderr

    Raises:
        SubprocessError: If check=True and the command fails
        asyncio.TimeoutError: If timeout exceeded
        FileNotFoundError: If the executable does not exist
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd is not None else None,
        env=env,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise

    result = CommandResult(
        args=list(cmd),
        returncode=process.returncode,
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
    )

    if check and result.returncode != 0:
        raise SubprocessError(
            cmd=" ".join(cmd),
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
        )

    return result


async def run_git_command(
    args: List[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    check: bool = True,
    timeout: float = 30,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run a git command with standardized error handling.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (git repo)
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds (default: 30)
        env: Environment for the child process

    Returns:
        CommandResult with stdout, stderr, returncode

    Raises:
        SubprocessError: If check=True and command fails
        asyncio.TimeoutError: If timeout exceeded
    """
    try:
        return await run_command(
            ["git"] + args,
            cwd=cwd,
            check=check,
            timeout=timeout,
            env=env,
        )
    except SubprocessError:
        logger.debug(f"Git command failed in {cwd}: {' '.join(args)}")
        raise


def check_command_exists(command: str) -> bool:
    """Check if a command exists in PATH."""
    return shutil.which(command) is not None
