"""Pytest configuration and shared fixtures."""

from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest

from mergeloop.config.settings import MergeLoopSettings
from mergeloop.engine.context import RuntimeContext
from mergeloop.engine.host import Host
from mergeloop.engine.session_store import SessionStore
from mergeloop.enums import CIStatus, IssueSource, PRState, ReviewDecision
from mergeloop.git.service import GitService
from mergeloop.models.domain import Issue, Session, SessionInfo
from mergeloop.paths import PathResolver
from mergeloop.providers.registry import ProviderRegistry


class StubHost(Host):
    """Host backed by a real RuntimeContext and a mocked GitService."""

    def __init__(self, settings: MergeLoopSettings, git: Mock, context: RuntimeContext) -> None:
        self.settings = settings
        self.git = git
        self.context = context
        self.transcripts: dict[str, list[dict[str, Any]]] = {}
        self.cleaned: list[str] = []
        self.running: set[str] = set()

    def config(self) -> MergeLoopSettings:
        return self.settings

    def git_service(self) -> GitService:
        return self.git

    def get_pending_message(self, session_id: str) -> str:
        return self.context.consume_pending_message(session_id)

    def set_pending_message(self, session_id: str, message: str) -> None:
        self.context.set_pending_message(session_id, message)

    def logger(self) -> Any:
        return Mock()

    def max_turns(self) -> int:
        return self.settings.agent.max_turns

    def max_duration(self) -> int:
        return self.settings.agent.max_duration

    def auto_merge(self) -> bool:
        return self.settings.merge.auto_merge

    def merge_method(self) -> str:
        return self.settings.merge.method

    def auto_address_pr_comments(self) -> bool:
        return self.settings.merge.auto_address_comments

    async def create_child_session(self, supervisor_id: str, task: str) -> SessionInfo:
        return SessionInfo(id=f"{supervisor_id}-child", branch="child")

    async def cleanup_session(self, session_id: str) -> None:
        self.cleaned.append(session_id)

    async def save_runner_messages(self, session_id: str, transcript: list[dict[str, Any]]) -> None:
        self.transcripts.setdefault(session_id, []).extend(transcript)

    def is_worker_running(self, session_id: str) -> bool:
        return session_id in self.running

    def record_spend(self, cost_usd: float, output_tokens: int, input_tokens: int) -> None:
        self.context.record_spend(cost_usd, output_tokens, input_tokens)


@pytest.fixture
def settings(tmp_path: Path) -> MergeLoopSettings:
    """Settings with one GitHub-backed repository and a temp state directory."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    return MergeLoopSettings(
        state_directory=str(tmp_path / "state"),
        repos=[
            {
                "path": str(repo_path),
                "sources": [{"provider": "github", "repository": "acme/app", "label": "mergeloop"}],
            }
        ],
    )


@pytest.fixture
def runtime_context(tmp_path: Path) -> RuntimeContext:
    """Fresh runtime context with an isolated path resolver."""
    return RuntimeContext(paths=PathResolver(home=tmp_path / "home", environ={}), providers=ProviderRegistry())


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    """SessionStore rooted in a temp directory."""
    return SessionStore(tmp_path / "state")


@pytest.fixture
def mock_git() -> Mock:
    """GitService mock with happy-path defaults."""
    git = Mock(spec=GitService)
    git.create_worktree = AsyncMock(
        side_effect=lambda repo_path, branch, **kwargs: Path(repo_path) / ".worktrees" / branch
    )
    git.remove_worktree = AsyncMock()
    git.push_branch = AsyncMock()
    git.create_pull_request = AsyncMock(return_value="https://github.com/acme/app/pull/7")
    git.get_review_decision = AsyncMock(return_value=ReviewDecision.NONE)
    git.get_ci_status = AsyncMock(return_value=CIStatus.PENDING)
    git.get_pr_comments = AsyncMock(return_value=[])
    git.get_pr_state = AsyncMock(return_value=PRState.OPEN)
    git.merge_pull_request = AsyncMock()
    return git


@pytest.fixture
def host(settings: MergeLoopSettings, mock_git: Mock, runtime_context: RuntimeContext) -> StubHost:
    """Host implementation for engine and action tests."""
    return StubHost(settings, mock_git, runtime_context)


@pytest.fixture
def sample_issue() -> Issue:
    """Sample GitHub issue."""
    return Issue(
        id="42",
        title="Add rate limiting to the API",
        body="Requests should be limited per token.",
        url="https://github.com/acme/app/issues/42",
        source=IssueSource.GITHUB,
        labels=["mergeloop"],
    )


@pytest.fixture
def make_session(tmp_path: Path, sample_issue: Issue):
    """Factory for sessions rooted in the temp directory."""

    def _make(session_id: str = "github-42-abc12345", state: str = "coding", **overrides: Any) -> Session:
        workdir = tmp_path / "work" / session_id
        workdir.mkdir(parents=True, exist_ok=True)
        fields: dict[str, Any] = {
            "id": session_id,
            "repo_path": str(tmp_path / "repo"),
            "branch": "issue-42",
            "issue_key": sample_issue.key,
            "issue": sample_issue,
            "workspace_path": str(workdir),
            "current_state": state,
        }
        fields.update(overrides)
        return Session(**fields)

    return _make
