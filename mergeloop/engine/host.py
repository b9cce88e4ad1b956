"""
The host contract consumed by workflow actions.

Actions and merge automation never reach into the daemon directly; they go
through ``Host``, which the daemon implements. Tests substitute a mock.
"""

from abc import ABC, abstractmethod
from typing import Any

from mergeloop.config.settings import MergeLoopSettings
from mergeloop.git.service import GitService
from mergeloop.models.domain import SessionInfo


class Host(ABC):
    """Services and settings a session's actions may use."""

    @abstractmethod
    def config(self) -> MergeLoopSettings:
        """Loaded daemon settings."""

    @abstractmethod
    def git_service(self) -> GitService:
        """Git/gh service used for worktrees and pull requests."""

    @abstractmethod
    def get_pending_message(self, session_id: str) -> str:
        """Return and clear the session's pending message.

        This is a consuming get: the message is cleared on retrieval, so it is
        delivered to exactly one step. Returns "" when there is none.
        """

    @abstractmethod
    def set_pending_message(self, session_id: str, message: str) -> None:
        """Queue a message for the session's next action step."""

    @abstractmethod
    def logger(self) -> Any:
        """Structured (structlog) logger bound to the daemon."""

    @abstractmethod
    def max_turns(self) -> int: ...

    @abstractmethod
    def max_duration(self) -> int:
        """Agent wall-clock limit in minutes."""

    @abstractmethod
    def auto_merge(self) -> bool: ...

    @abstractmethod
    def merge_method(self) -> str: ...

    @abstractmethod
    def auto_address_pr_comments(self) -> bool: ...

    @abstractmethod
    async def create_child_session(self, supervisor_id: str, task: str) -> SessionInfo:
        """Spawn a session for a sub-task of ``supervisor_id``.

        The child starts in the workflow's initial state on its own branch.
        """

    @abstractmethod
    async def cleanup_session(self, session_id: str) -> None:
        """Remove the session's workspace and archive it.

        Waits for an advancement that holds the session to finish first, so it
        must not be called from a step of the same session.
        """

    @abstractmethod
    async def save_runner_messages(self, session_id: str, transcript: list[dict[str, Any]]) -> None:
        """Persist the transcript of a completed agent run."""

    @abstractmethod
    def is_worker_running(self, session_id: str) -> bool:
        """Whether the session is currently being advanced."""

    @abstractmethod
    def record_spend(self, cost_usd: float, output_tokens: int, input_tokens: int) -> None:
        """Add one agent run's usage to the running totals."""
