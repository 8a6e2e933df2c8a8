"""Thin PyGithub wrapper for opening and finding task pull requests."""

from typing import List, Optional

from github import Github
from github.PullRequest import PullRequest
from github.Repository import Repository


class GitHubClient:
    """Pull request operations on one ``owner/repo``.

    The repository is fetched on first use so constructing a client never
    touches the network.
    """

    def __init__(self, token: str, owner_repo: str, api_url: Optional[str] = None):
        self.owner_repo = owner_repo
        self.owner, _, self.name = owner_repo.partition("/")
        kwargs = {"base_url": api_url} if api_url else {}
        self.gh = Github(token, **kwargs)
        self._repo: Optional[Repository] = None

    @property
    def repo(self) -> Repository:
        if self._repo is None:
            self._repo = self.gh.get_repo(self.owner_repo)
        return self._repo

    def create_pull_request(
        self,
        title: str,
        body: str,
        head_branch: str,
        base_branch: str,
        draft: bool = False,
    ) -> PullRequest:
        return self.repo.create_pull(title=title, body=body, head=head_branch, base=base_branch, draft=draft)

    def add_labels(self, pr: PullRequest, labels: List[str]) -> None:
        if labels:
            pr.add_to_labels(*labels)

    def get_pr_by_branch(self, branch_name: str) -> Optional[PullRequest]:
        """Open PR whose head is ``branch_name`` in this repository, if any."""
        return next(iter(self.repo.get_pulls(state="open", head=f"{self.owner}:{branch_name}")), None)
