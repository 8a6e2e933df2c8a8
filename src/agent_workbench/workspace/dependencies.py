"""Dependency installation for freshly created worktrees.

A new worktree is a bare checkout: lockfile-pinned node packages and the
project's own Python package are missing until installed. Detection is a
heuristic (manifest present, installed artifacts absent). Failures are
reported back as warnings; the agent may simply hit import errors later.
The Python venv reaches the agent through the environment from
``environment``, so the agent must be started after the install.
"""

import asyncio
import logging
import os
import sys
import tomllib
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..utils.subprocess_utils import SubprocessError, run_command

logger = logging.getLogger(__name__)

DEFAULT_INSTALL_TIMEOUT = 300

# First match wins; pnpm and yarn repos sometimes carry a stray package-lock.json
NODE_LOCKFILES: Tuple[Tuple[str, List[str]], ...] = (
    ("pnpm-lock.yaml", ["pnpm", "install", "--frozen-lockfile"]),
    ("yarn.lock", ["yarn", "install", "--frozen-lockfile"]),
    ("package-lock.json", ["npm", "ci"]),
)


class DependencyInstaller:
    """Detects and installs node and Python dependencies in a worktree."""

    VENV_DIR = ".venv"

    def __init__(self, timeout: int = DEFAULT_INSTALL_TIMEOUT):
        self.timeout = timeout

    def needs_install(self, path: Path) -> bool:
        """True when a manifest is present but its installed artifacts are not."""
        path = Path(path)
        if self._node_install_command(path) and not (path / "node_modules").exists():
            return True
        if self._is_python_project(path) and not self._venv_is_valid(path / self.VENV_DIR):
            return True
        return False

    async def install(self, path: Path) -> List[str]:
        """
        Install whatever dependencies the worktree is missing.

        Args:
            path: Worktree root

        Returns:
            Warning messages; empty when everything installed cleanly.
        """
        path = Path(path)
        warnings: List[str] = []

        node_cmd = self._node_install_command(path)
        if node_cmd and not (path / "node_modules").exists():
            warning = await self._run_step(node_cmd, path, "node dependency install")
            if warning:
                warnings.append(warning)

        if self._is_python_project(path) and not self._venv_is_valid(path / self.VENV_DIR):
            warnings.extend(await self._setup_venv(path))

        return warnings

    def environment(self, path: Path) -> Dict[str, str]:
        """Variables that put the worktree venv first for child processes; empty without one."""
        venv_path = Path(path) / self.VENV_DIR
        if not self._venv_is_valid(venv_path):
            return {}
        return {
            "VIRTUAL_ENV": str(venv_path),
            "PATH": f"{venv_path / 'bin'}{os.pathsep}{os.environ.get('PATH', '')}",
        }

    def _node_install_command(self, path: Path) -> Optional[List[str]]:
        for lockfile, cmd in NODE_LOCKFILES:
            if (path / lockfile).exists():
                return cmd
        return None

    def _is_python_project(self, path: Path) -> bool:
        """Detect installable Python projects (not bare requirements.txt)."""
        if (path / "setup.py").exists():
            return True

        pyproject = path / "pyproject.toml"
        if pyproject.exists():
            try:
                with open(pyproject, "rb") as f:
                    return "build-system" in tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError):
                return False

        return False

    def _venv_is_valid(self, venv_path: Path) -> bool:
        return (venv_path / "bin" / "python").exists()

    async def _setup_venv(self, path: Path) -> List[str]:
        venv_path = path / self.VENV_DIR
        warning = await self._run_step(
            [sys.executable, "-m", "venv", str(venv_path)], path, "virtualenv creation",
        )
        if warning:
            return [warning]

        # Keep the venv out of auto-commits even when the project doesn't ignore it
        (venv_path / ".gitignore").write_text("*\n")

        pip = str(venv_path / "bin" / "pip")
        cmd = [pip, "install", "-e", "."]
        if (path / "requirements.txt").exists():
            cmd.extend(["-r", "requirements.txt"])
        warning = await self._run_step(cmd, path, "editable install")
        return [warning] if warning else []

    async def _run_step(self, cmd: List[str], cwd: Path, label: str) -> Optional[str]:
        """Run one install command; return a warning string on failure."""
        logger.info(f"Running {label} in {cwd}: {' '.join(cmd)}")
        try:
            await run_command(cmd, cwd=cwd, check=True, timeout=self.timeout)
            return None
        except SubprocessError as e:
            message = f"{label} failed (exit {e.returncode}): {e.stderr.strip()[:500]}"
        except asyncio.TimeoutError:
            message = f"{label} timed out after {self.timeout}s"
        except FileNotFoundError:
            message = f"{label} skipped: {cmd[0]} is not installed"
        logger.warning(message)
        return message
