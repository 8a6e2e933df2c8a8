"""Pull request providers.

A provider claims a remote by URL and opens a PR for an already pushed
branch. Providers never raise: every failure comes back as a PRResult.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from github import GithubException

from ..integrations.github.client import GitHubClient
from ..utils.subprocess_utils import check_command_exists, run_command

logger = logging.getLogger(__name__)

_GITHUB_REMOTE = re.compile(
    r"github\.com[:/](?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?/?$"
)


@dataclass
class PRResult:
    """Outcome of push-and-open-PR."""
    success: bool
    url: Optional[str] = None
    pr_number: Optional[int] = None
    error: Optional[str] = None


def parse_github_repo(remote_url: str) -> Optional[str]:
    """'owner/repo' from an https or ssh GitHub remote URL."""
    match = _GITHUB_REMOTE.search(remote_url.strip())
    if not match:
        return None
    return f"{match.group('owner')}/{match.group('repo')}"


def pr_number_from_url(url: str) -> Optional[int]:
    """PR number is the last path segment of the PR URL."""
    last = url.rstrip("/").rsplit("/", 1)[-1]
    return int(last) if last.isdigit() else None


class PullRequestProvider(ABC):
    """Opens pull requests on one hosting service."""

    name: str = "provider"

    @abstractmethod
    def matches_remote(self, remote_url: str) -> bool:
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the provider can be used right now (tools installed, authenticated)."""
        pass

    @abstractmethod
    async def create_pull_request(
        self,
        cwd: Path,
        remote_url: str,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> PRResult:
        pass


class GitHubCLIProvider(PullRequestProvider):
    """Creates PRs with the gh CLI using its stored login."""

    name = "gh"

    def __init__(self, labels: Optional[List[str]] = None):
        self.labels = labels or []

    def matches_remote(self, remote_url: str) -> bool:
        return parse_github_repo(remote_url) is not None

    async def is_available(self) -> bool:
        if not check_command_exists("gh"):
            return False
        try:
            result = await run_command(["gh", "auth", "status"], check=False, timeout=15)
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug(f"gh auth status failed: {e}")
            return False
        return result.ok

    async def create_pull_request(self, cwd, remote_url, head, base, title, body, draft=False):
        cmd = [
            "gh", "pr", "create",
            "--title", title,
            "--body", body,
            "--head", head,
            "--base", base,
        ]
        owner_repo = parse_github_repo(remote_url)
        if owner_repo:
            cmd.extend(["--repo", owner_repo])
        if draft:
            cmd.append("--draft")
        for label in self.labels:
            cmd.extend(["--label", label])

        try:
            result = await run_command(cmd, cwd=cwd, check=False, timeout=60)
        except (asyncio.TimeoutError, OSError) as e:
            return PRResult(success=False, error=f"gh pr create failed: {e}")

        if not result.ok:
            stderr = result.stderr.strip()
            # gh prints the existing PR URL when one is already open for the branch
            existing = re.search(r"https://\S+/pull/\d+", stderr)
            if "already exists" in stderr and existing:
                url = existing.group(0)
                return PRResult(success=True, url=url, pr_number=pr_number_from_url(url))
            return PRResult(success=False, error=stderr or f"gh exited {result.returncode}")

        lines = [line for line in result.stdout.strip().splitlines() if line.strip()]
        url = lines[-1].strip() if lines else None
        return PRResult(
            success=True,
            url=url,
            pr_number=pr_number_from_url(url) if url else None,
        )


class GitHubAPIProvider(PullRequestProvider):
    """Creates PRs through the GitHub REST API with a token."""

    name = "api"

    def __init__(
        self,
        token: str,
        api_url: Optional[str] = None,
        labels: Optional[List[str]] = None,
    ):
        self.token = token
        self.api_url = api_url
        self.labels = labels or []

    def matches_remote(self, remote_url: str) -> bool:
        return parse_github_repo(remote_url) is not None

    async def is_available(self) -> bool:
        return bool(self.token)

    def _create_sync(self, owner_repo, head, base, title, body, draft) -> PRResult:
        client = GitHubClient(self.token, owner_repo, api_url=self.api_url)
        try:
            pr = client.create_pull_request(
                title=title,
                body=body,
                head_branch=head,
                base_branch=base,
                draft=draft,
            )
        except GithubException as e:
            existing = client.get_pr_by_branch(head) if e.status == 422 else None
            if existing is None:
                raise
            return PRResult(success=True, url=existing.html_url, pr_number=existing.number)

        # The PR exists from here on
        try:
            client.add_labels(pr, self.labels)
        except GithubException as e:
            logger.warning(f"Created PR #{pr.number} but could not apply labels {self.labels}: {e.status} {e.data}")
        return PRResult(success=True, url=pr.html_url, pr_number=pr.number)

    async def create_pull_request(self, cwd, remote_url, head, base, title, body, draft=False):
        owner_repo = parse_github_repo(remote_url)
        if not owner_repo:
            return PRResult(success=False, error=f"Not a GitHub remote: {remote_url}")
        try:
            return await asyncio.to_thread(
                self._create_sync, owner_repo, head, base, title, body, draft,
            )
        except GithubException as e:
            return PRResult(success=False, error=f"GitHub API error {e.status}: {e.data}")
        except OSError as e:
            return PRResult(success=False, error=f"GitHub API unreachable: {e}")
