"""
Worktree and pull request operations via the ``git`` and ``gh`` CLIs.

All commands run through ``run_command`` (no shell), bounded by a timeout.
Pull requests are addressed by URL or head branch, both of which ``gh``
accepts. Query methods raise ``ExternalServiceError`` when ``gh`` fails;
mutating methods raise ``GitOperationError``.
"""

import json
from pathlib import Path
from typing import Any

import structlog

from mergeloop.enums import CIStatus, PRState, ReviewDecision
from mergeloop.exceptions import ExternalServiceError, GitOperationError, MergeCheckAmbiguousError
from mergeloop.models.domain import PRComment
from mergeloop.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

FAILING_CHECK_STATES = {"FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE"}
PENDING_CHECK_STATES = {"PENDING", "QUEUED", "IN_PROGRESS", "WAITING", "REQUESTED", "EXPECTED"}

MERGE_METHOD_FLAGS = {"squash": "--squash", "merge": "--merge", "rebase": "--rebase"}


class GitService:
    """Thin async wrapper around git and the GitHub CLI.

    Args:
        query_timeout: Seconds allowed for read-only ``gh`` queries
        command_timeout: Seconds allowed for pushes, worktree and merge commands
    """

    def __init__(self, query_timeout: float = 30.0, command_timeout: float = 300.0) -> None:
        self.query_timeout = query_timeout
        self.command_timeout = command_timeout

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    async def create_worktree(
        self,
        repo_path: str,
        branch: str,
        worktree_root: str | None = None,
        base_branch: str = "main",
    ) -> Path:
        """Create a worktree for ``branch`` and return its path.

        The branch is created from ``base_branch`` unless it already exists,
        in which case the existing branch is checked out. An existing
        worktree at the target path is reused.
        """
        root = Path(worktree_root) if worktree_root else Path(repo_path) / ".worktrees"
        path = root / branch
        if path.exists():
            log.info("worktree_reused", path=str(path), branch=branch)
            return path

        root.mkdir(parents=True, exist_ok=True)
        stdout, stderr, code = await self._git(
            repo_path, "worktree", "add", "-b", branch, str(path), base_branch, check=False
        )
        if code != 0 and "already exists" in stderr:
            stdout, stderr, code = await self._git(repo_path, "worktree", "add", str(path), branch, check=False)
        if code != 0:
            raise GitOperationError(f"git worktree add failed for {branch}: {stderr.strip() or stdout.strip()}")

        log.info("worktree_created", path=str(path), branch=branch)
        return path

    async def remove_worktree(self, repo_path: str, worktree_path: str) -> None:
        if not Path(worktree_path).exists():
            return
        _, stderr, code = await self._git(repo_path, "worktree", "remove", "--force", worktree_path, check=False)
        if code != 0:
            raise GitOperationError(f"git worktree remove failed for {worktree_path}: {stderr.strip()}")
        log.info("worktree_removed", path=worktree_path)

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    async def push_branch(self, workdir: str, branch: str) -> None:
        _, stderr, code = await self._git(workdir, "push", "-u", "origin", branch, check=False)
        if code != 0:
            raise GitOperationError(f"git push failed for {branch}: {stderr.strip()}")
        log.info("branch_pushed", branch=branch)

    async def create_pull_request(self, workdir: str, branch: str, title: str, body: str, base: str = "main") -> str:
        """Open a pull request for an already pushed ``branch``, returning its URL.

        If a pull request for the branch already exists its URL is returned,
        so re-running after an interrupted step does not open a duplicate.
        """
        stdout, stderr, code = await self._gh(
            workdir,
            "pr", "create", "--head", branch, "--base", base, "--title", title, "--body", body,
            timeout=self.command_timeout,
        )  # fmt: skip
        if code != 0:
            if "already exists" in stderr:
                view = await self._pr_view(workdir, branch, "url")
                return view.get("url", "")
            raise GitOperationError(f"gh pr create failed for {branch}: {stderr.strip()}")

        url = stdout.strip().splitlines()[-1] if stdout.strip() else ""
        log.info("pull_request_created", branch=branch, url=url)
        return url

    async def get_review_decision(self, workdir: str, pr: str) -> ReviewDecision:
        view = await self._pr_view(workdir, pr, "reviewDecision")
        decision = (view.get("reviewDecision") or "").upper()
        if decision == "APPROVED":
            return ReviewDecision.APPROVED
        if decision == "CHANGES_REQUESTED":
            return ReviewDecision.CHANGES_REQUESTED
        return ReviewDecision.NONE

    async def get_ci_status(self, workdir: str, pr: str) -> CIStatus:
        """Aggregate the pull request's check states.

        ``gh pr checks`` exits non-zero while checks are pending or failing,
        so the exit code is ignored and only the JSON output is read.

        Raises:
            MergeCheckAmbiguousError: If the output is empty or not a JSON list
        """
        stdout, stderr, code = await self._gh(workdir, "pr", "checks", pr, "--json", "state,name")
        return parse_ci_status(stdout, stderr=stderr, exit_code=code)

    async def get_pr_comments(self, workdir: str, pr: str) -> list[PRComment]:
        """Conversation comments and non-empty review bodies, oldest first."""
        view = await self._pr_view(workdir, pr, "comments,reviews")
        entries: list[tuple[str, PRComment]] = []
        for comment in view.get("comments") or []:
            entries.append((comment.get("createdAt", ""), _to_comment(comment)))
        for review in view.get("reviews") or []:
            if (review.get("body") or "").strip():
                entries.append((review.get("submittedAt", ""), _to_comment(review)))
        entries.sort(key=lambda entry: entry[0])
        return [comment for _, comment in entries]

    async def get_pr_state(self, workdir: str, pr: str) -> PRState:
        view = await self._pr_view(workdir, pr, "state")
        try:
            return PRState((view.get("state") or "").lower())
        except ValueError:
            return PRState.UNKNOWN

    async def merge_pull_request(self, workdir: str, pr: str, method: str = "squash") -> None:
        flag = MERGE_METHOD_FLAGS.get(method)
        if flag is None:
            raise GitOperationError(f"Unknown merge method: {method}")

        _, stderr, code = await self._gh(workdir, "pr", "merge", pr, flag, timeout=self.command_timeout)
        if code != 0:
            raise GitOperationError(f"gh pr merge failed: {stderr.strip()}")
        log.info("pull_request_merged", pr=pr, method=method)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _pr_view(self, workdir: str, pr: str, fields: str) -> dict[str, Any]:
        stdout, stderr, code = await self._gh(workdir, "pr", "view", pr, "--json", fields)
        if code != 0:
            raise ExternalServiceError(f"gh pr view {pr} failed", status_code=code, response_text=stderr.strip())
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ExternalServiceError(f"gh pr view {pr} returned invalid JSON", response_text=stdout) from e
        return data if isinstance(data, dict) else {}

    async def _git(self, cwd: str, *args: str, check: bool = True) -> tuple[str, str, int]:
        try:
            return await run_command("git", *args, cwd=cwd, check=check, timeout=self.command_timeout)
        except FileNotFoundError as e:
            raise GitOperationError("git executable not found") from e
        except TimeoutError as e:
            raise GitOperationError(f"git {args[0]} timed out") from e

    async def _gh(self, cwd: str, *args: str, timeout: float | None = None) -> tuple[str, str, int]:
        try:
            return await run_command("gh", *args, cwd=cwd, check=False, timeout=timeout or self.query_timeout)
        except FileNotFoundError as e:
            raise GitOperationError("gh executable not found") from e
        except TimeoutError as e:
            raise ExternalServiceError(f"gh {' '.join(args[:2])} timed out") from e


def parse_ci_status(stdout: str, stderr: str = "", exit_code: int = 0) -> CIStatus:
    """Aggregate ``gh pr checks --json state`` output into one status.

    Any failing check fails the whole; otherwise any pending check keeps it
    pending. An empty list (no checks configured) is passing.

    Raises:
        MergeCheckAmbiguousError: If the output is empty or not a JSON list
    """
    text = stdout.strip()
    if not text:
        raise MergeCheckAmbiguousError("empty CI status output", status_code=exit_code, response_text=stderr)
    try:
        checks = json.loads(text)
    except json.JSONDecodeError as e:
        raise MergeCheckAmbiguousError("unparseable CI status output", response_text=text) from e
    if not isinstance(checks, list):
        raise MergeCheckAmbiguousError("CI status output is not a list", response_text=text)

    states = {str(check.get("state", "")).upper() for check in checks if isinstance(check, dict)}
    if states & FAILING_CHECK_STATES:
        return CIStatus.FAILING
    if states & PENDING_CHECK_STATES:
        return CIStatus.PENDING
    return CIStatus.PASSING


def _to_comment(entry: dict[str, Any]) -> PRComment:
    author = (entry.get("author") or {}).get("login", "")
    return PRComment(author=author, body=entry.get("body") or "", path=entry.get("path") or "")
