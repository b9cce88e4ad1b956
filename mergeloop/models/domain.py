"""
Domain models for the mergeloop daemon.

This module contains the data classes representing the core entities: issues
pulled from external trackers, the provider-agnostic filter used to query
them, pull request comments, hook and action results, and the persisted
``Session`` record that the workflow engine advances.

Issues and results are plain dataclasses. ``Session`` is a pydantic model
because it is persisted to disk as JSON and reloaded on every tick.

Example:
    Creating a session for a freshly fetched issue::

        session = Session(
            id="github-42-3f9a1c2b",
            repo_path="/src/app",
            branch="issue-42",
            issue_key="github:42",
            issue=issue,
            current_state="coding",
        )
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from mergeloop.enums import ActionOutcome, ErrorKind, HookOutcome, IssueSource


@dataclass
class Issue:
    """A work item from any issue tracker.

    This is the normalized representation used internally, converted from
    GitHub issues, Asana tasks, or Linear issues.
    """

    id: str
    """Provider identifier: issue number (GitHub), task GID (Asana),
    or team-scoped identifier such as ``ENG-123`` (Linear)."""

    title: str
    body: str
    url: str
    source: IssueSource

    labels: list[str] = field(default_factory=list)
    """Tag or label names attached to the item, as returned by the provider."""

    provider_ref: str = ""
    """Provider-internal reference needed by follow-up actions
    (Linear issue UUID). Empty when the ``id`` is sufficient."""

    @property
    def key(self) -> str:
        """Stable key used to deduplicate sessions across ticks."""
        return f"{self.source.value}:{self.id}"


@dataclass
class FilterConfig:
    """Provider-agnostic query parameters for ``fetch_issues``."""

    label: str = ""
    """Label/tag name to filter by. Empty means unfiltered."""

    project: str = ""
    """Asana project GID."""

    team: str = ""
    """Linear team ID."""

    repository: str = ""
    """GitHub repository in ``owner/name`` form."""


@dataclass
class PRComment:
    """A review or conversation comment on a pull request."""

    author: str
    body: str
    path: str = ""
    """File path for inline review comments."""


@dataclass
class HookResult:
    """Outcome of running one hook or shell action."""

    outcome: HookOutcome
    output: str = ""
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded


@dataclass
class ActionResult:
    """Outcome of a state's primary action.

    ``data`` replaces ``Session.data`` so that choice states can branch
    on it (for example ``ci_status``).
    """

    outcome: ActionOutcome
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_kind: ErrorKind | None = None
    signal: str | None = None
    output: str = ""

    @classmethod
    def success(cls, **data: Any) -> "ActionResult":
        return cls(ActionOutcome.SUCCESS, data=data)

    @classmethod
    def wait(cls, **data: Any) -> "ActionResult":
        return cls(ActionOutcome.WAIT, data=data)

    @classmethod
    def failure(cls, error: str, kind: ErrorKind = ErrorKind.ACTION_ERROR, **data: Any) -> "ActionResult":
        return cls(ActionOutcome.FAILURE, data=data, error=error, error_kind=kind)

    @classmethod
    def emit(cls, signal: str, **data: Any) -> "ActionResult":
        return cls(ActionOutcome.SIGNAL, data=data, signal=signal)


@dataclass
class SessionInfo:
    """Minimal info returned after creating a child session."""

    id: str
    branch: str


@dataclass
class SpendTotals:
    """Process-wide running totals of model usage."""

    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionError(BaseModel):
    """Last error recorded on a session, for operator inspection."""

    kind: ErrorKind
    message: str
    state: str | None = None


class Session(BaseModel):
    """One unit of in-flight work moving through the workflow graph.

    A session is owned by exactly one in-flight advancement at a time. The
    engine mutates a working copy and persists it as the last action of a
    step, so a cancelled step leaves the stored record untouched.
    """

    id: str
    repo_path: str
    branch: str
    issue_key: str = ""
    issue: Issue | None = None
    parent_id: str | None = None
    workspace_path: str | None = None

    current_state: str
    attempt: int = 0
    """Number of times the current state's action has run. Reset to zero
    whenever the session enters a different state."""

    state_entered_at: datetime = Field(default_factory=_utcnow)
    data: dict[str, Any] = Field(default_factory=dict)
    """Payload of the most recent action result, read by choice predicates."""

    pr_url: str | None = None
    pr_merged: bool = False
    pr_comments_addressed_count: int = 0

    last_error: SessionError | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def workdir(self) -> str:
        """Directory the agent and hooks run in."""
        return self.workspace_path or self.repo_path

    def snapshot(self) -> dict[str, Any]:
        """Flat view used to evaluate choice predicates."""
        view = self.model_dump(mode="json", exclude={"data", "issue"})
        view.update(self.data)
        return view

    def record_error(self, kind: ErrorKind, message: str) -> None:
        self.last_error = SessionError(kind=kind, message=message, state=self.current_state)
