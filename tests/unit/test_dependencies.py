"""Tests for DependencyInstaller detection and install steps."""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, patch

import pytest

from agent_workbench.utils.subprocess_utils import CommandResult, SubprocessError
from agent_workbench.workspace import DependencyInstaller


def _ok(cmd=None):
    return CommandResult(args=cmd or [], returncode=0, stdout="", stderr="")


class TestNeedsInstall:
    def test_plain_repo(self, tmp_path):
        """No manifests, nothing to install."""
        assert DependencyInstaller().needs_install(tmp_path) is False

    def test_lockfile_without_node_modules(self, tmp_path):
        """A lockfile without node_modules needs an install."""
        (tmp_path / "package-lock.json").write_text("{}")
        assert DependencyInstaller().needs_install(tmp_path) is True

        (tmp_path / "node_modules").mkdir()
        assert DependencyInstaller().needs_install(tmp_path) is False

    def test_requirements_txt_alone_is_not_a_project(self, tmp_path):
        """Bare requirements.txt does not trigger a venv."""
        (tmp_path / "requirements.txt").write_text("requests\n")
        assert DependencyInstaller().needs_install(tmp_path) is False

    def test_pyproject_needs_build_system(self, tmp_path):
        """Only pyproject.toml files with [build-system] are installable."""
        pyproject = tmp_path / "pyproject.toml"
        pyproject.write_text("[tool.black]\nline-length = 100\n")
        assert DependencyInstaller().needs_install(tmp_path) is False

        pyproject.write_text('[build-system]\nrequires = ["setuptools"]\n')
        assert DependencyInstaller().needs_install(tmp_path) is True

    def test_existing_venv(self, tmp_path):
        """A venv with a python binary counts as installed."""
        (tmp_path / "setup.py").write_text("")
        (tmp_path / ".venv" / "bin").mkdir(parents=True)
        (tmp_path / ".venv" / "bin" / "python").write_text("")

        assert DependencyInstaller().needs_install(tmp_path) is False


class TestEnvironment:
    def test_no_venv(self, tmp_path):
        """Without a venv the agent keeps the inherited environment."""
        assert DependencyInstaller().environment(tmp_path) == {}

    def test_venv_activates_for_children(self, tmp_path, monkeypatch):
        """A worktree venv is exported and its bin directory leads PATH."""
        monkeypatch.setenv("PATH", "/usr/bin")
        venv_bin = tmp_path / ".venv" / "bin"
        venv_bin.mkdir(parents=True)
        (venv_bin / "python").write_text("")

        env = DependencyInstaller().environment(tmp_path)

        assert env["VIRTUAL_ENV"] == str(tmp_path / ".venv")
        assert env["PATH"].split(os.pathsep) == [str(venv_bin), "/usr/bin"]


class TestInstall:
    @pytest.mark.asyncio
    async def test_lockfile_selects_package_manager(self, tmp_path):
        """pnpm wins over a stray package-lock.json."""
        (tmp_path / "pnpm-lock.yaml").write_text("")
        (tmp_path / "package-lock.json").write_text("{}")

        with patch(
            "agent_workbench.workspace.dependencies.run_command",
            new=AsyncMock(return_value=_ok()),
        ) as mock_run:
            warnings = await DependencyInstaller().install(tmp_path)

        assert warnings == []
        assert mock_run.call_args.args[0] == ["pnpm", "install", "--frozen-lockfile"]

    @pytest.mark.asyncio
    async def test_python_project_gets_venv(self, tmp_path):
        """Python projects get a venv and an editable install."""
        (tmp_path / "setup.py").write_text("")
        (tmp_path / "requirements.txt").write_text("")

        with patch(
            "agent_workbench.workspace.dependencies.run_command",
            new=AsyncMock(return_value=_ok()),
        ) as mock_run:
            (tmp_path / ".venv").mkdir()
            warnings = await DependencyInstaller().install(tmp_path)

        assert warnings == []
        venv_cmd, pip_cmd = [c.args[0] for c in mock_run.call_args_list]
        assert venv_cmd[:3] == [sys.executable, "-m", "venv"]
        assert pip_cmd[1:] == ["install", "-e", ".", "-r", "requirements.txt"]
        assert (tmp_path / ".venv" / ".gitignore").read_text() == "*\n"

    @pytest.mark.asyncio
    async def test_failure_becomes_warning(self, tmp_path):
        """A failing install is reported, not raised."""
        (tmp_path / "yarn.lock").write_text("")
        error = SubprocessError("yarn install", 1, "network down")

        with patch(
            "agent_workbench.workspace.dependencies.run_command",
            new=AsyncMock(side_effect=error),
        ):
            warnings = await DependencyInstaller().install(tmp_path)

        assert len(warnings) == 1
        assert "network down" in warnings[0]

    @pytest.mark.asyncio
    async def test_missing_tool_and_timeout(self, tmp_path):
        """Missing executables and timeouts are warnings too."""
        (tmp_path / "package-lock.json").write_text("{}")
        installer = DependencyInstaller(timeout=5)

        with patch(
            "agent_workbench.workspace.dependencies.run_command",
            new=AsyncMock(side_effect=FileNotFoundError("npm")),
        ):
            assert "not installed" in (await installer.install(tmp_path))[0]

        with patch(
            "agent_workbench.workspace.dependencies.run_command",
            new=AsyncMock(side_effect=asyncio.TimeoutError()),
        ):
            assert "timed out after 5s" in (await installer.install(tmp_path))[0]
