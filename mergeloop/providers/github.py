"""GitHub Issues provider using PyGithub."""

import asyncio
import os
from collections.abc import Callable, Mapping
from typing import TypeVar

import structlog
from github import Github, GithubException  # type: ignore[import-not-found]
from github.Issue import Issue as GHIssue  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from mergeloop.enums import IssueSource
from mergeloop.exceptions import CredentialError, ProviderError
from mergeloop.models.domain import FilterConfig, Issue
from mergeloop.providers.base import IssueProvider, ProviderActions

log = structlog.get_logger(__name__)

T = TypeVar("T")

GITHUB_TOKEN_ENV = "GITHUB_TOKEN"


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a blocking PyGithub call in a worker thread."""
    return await asyncio.to_thread(func)


class GitHubProvider(IssueProvider, ProviderActions):
    """Issues from a GitHub repository.

    The repository (``owner/name``) comes from the source's
    ``FilterConfig.repository`` when polling, and from the ``repositories``
    mapping (local repo path to ``owner/name``) for write-back actions.
    """

    def __init__(
        self,
        token: str | None = None,
        repositories: Mapping[str, str] | None = None,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
    ):
        """Initialize GitHub provider.

        Args:
            token: Personal access token. Defaults to ``$GITHUB_TOKEN`` at call time.
            repositories: Local repository path to ``owner/name``
            base_url: API base URL (GitHub Enterprise supported)
            timeout: Per-request timeout in seconds
        """
        self._token = token.strip() if token else None
        self.repositories = dict(repositories or {})
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def token(self) -> str | None:
        return self._token or os.environ.get(GITHUB_TOKEN_ENV) or None

    def name(self) -> str:
        return "GitHub Issues"

    def source(self) -> IssueSource:
        return IssueSource.GITHUB

    def is_configured(self, repo_path: str) -> bool:
        return bool(self.token) and bool(self.repositories.get(repo_path))

    def generate_branch_name(self, issue: Issue) -> str:
        return f"issue-{issue.id}"

    def get_pr_link_text(self, issue: Issue) -> str:
        return f"Fixes #{issue.id}"

    async def fetch_issues(self, repo_path: str, filter: FilterConfig) -> list[Issue]:
        """Fetch open issues (pull requests excluded), optionally by label."""
        repository = filter.repository or self.repositories.get(repo_path, "")
        repo = self._repo(repository)
        wanted = filter.label.lower()

        def _fetch() -> list[GHIssue]:
            return [gh_issue for gh_issue in repo.get_issues(state="open") if gh_issue.pull_request is None]

        try:
            gh_issues = await _run_sync(_fetch)
        except GithubException as e:
            raise self._translate(e, "fetch issues") from e

        issues = []
        for gh_issue in gh_issues:
            labels = [label.name for label in gh_issue.labels]
            if wanted and wanted not in (name.lower() for name in labels):
                continue
            issues.append(self._convert_issue(gh_issue, labels))

        log.debug("github_issues_fetched", repository=repository, label=filter.label, count=len(issues))
        return issues

    async def remove_label(self, repo_path: str, issue_id: str, label: str) -> None:
        number = self._issue_number(issue_id)
        repo = self._repo(self.repositories.get(repo_path, ""))

        def _remove() -> None:
            repo.get_issue(number).remove_from_labels(label)

        try:
            await _run_sync(_remove)
        except GithubException as e:
            raise self._translate(e, f"remove label '{label}' from #{number}") from e
        log.info("github_label_removed", issue=number, label=label)

    async def comment(self, repo_path: str, issue_id: str, body: str) -> None:
        number = self._issue_number(issue_id)
        repo = self._repo(self.repositories.get(repo_path, ""))

        def _comment() -> None:
            repo.get_issue(number).create_comment(body)

        try:
            await _run_sync(_comment)
        except GithubException as e:
            raise self._translate(e, f"comment on #{number}") from e
        log.info("github_comment_added", issue=number)

    def _repo(self, repository: str) -> GHRepository:
        token = self.token
        if not token:
            raise CredentialError(f"{GITHUB_TOKEN_ENV} environment variable not set", provider=self.name())
        if not repository:
            raise CredentialError("GitHub repository not configured for this repository", provider=self.name())

        # get_repo(lazy=True) performs no request; calls on it do
        client = Github(token, base_url=self.base_url, timeout=int(self.timeout))
        return client.get_repo(repository, lazy=True)

    def _issue_number(self, issue_id: str) -> int:
        try:
            return int(issue_id)
        except ValueError:
            raise ProviderError(f"invalid GitHub issue number: {issue_id!r}", provider=self.name()) from None

    def _translate(self, error: GithubException, operation: str) -> ProviderError:
        message = f"failed to {operation}: {error.status} {error.data}"
        log.error("github_request_failed", operation=operation, status=error.status)
        if error.status == 401:
            return CredentialError(message, provider=self.name())
        return ProviderError(message, provider=self.name())

    @staticmethod
    def _convert_issue(gh_issue: GHIssue, labels: list[str]) -> Issue:
        return Issue(
            id=str(gh_issue.number),
            title=gh_issue.title,
            body=gh_issue.body or "",
            url=gh_issue.html_url,
            source=IssueSource.GITHUB,
            labels=labels,
        )
