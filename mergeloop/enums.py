"""Enumerations shared by the workflow engine, merge automation and providers."""

from enum import Enum, IntEnum


class IssueSource(str, Enum):
    """Issue trackers mergeloop can pull work from."""

    GITHUB = "github"
    ASANA = "asana"
    LINEAR = "linear"

    def __str__(self) -> str:
        return self.value


class MergeAction(IntEnum):
    """Outcome of a single merge-automation check.

    The numeric values are stable and persisted in logs.
    """

    CONTINUE = 0
    """Keep waiting; poll again on the next tick."""

    STOP = 1
    """Abort this path and route the session to failure."""

    PROCEED = 2
    """Advance to the next state (or the merge has been performed)."""


class HookOutcome(str, Enum):
    """Result classification for a hook or shell action."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    ERROR = "error"
    """The process could not be started. Routed like FAILURE."""

    @property
    def succeeded(self) -> bool:
        return self is HookOutcome.SUCCESS


class ActionOutcome(str, Enum):
    """Result classification for a state's primary action."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    WAIT = "wait"
    """Stay in the current state and poll again next tick."""

    SIGNAL = "signal"
    """Take the state's named signal transition."""


class StateKind(str, Enum):
    """Structural kind of a workflow state."""

    TASK = "task"
    WAIT = "wait"
    CHOICE = "choice"
    TERMINAL = "terminal"


class CIStatus(str, Enum):
    """Aggregated CI status of a pull request."""

    PASSING = "passing"
    PENDING = "pending"
    FAILING = "failing"


class ReviewDecision(str, Enum):
    """Aggregated review decision of a pull request."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    NONE = "none"


class PRState(str, Enum):
    """Pull request lifecycle state as reported by the git host."""

    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"
    UNKNOWN = "unknown"


class ErrorKind(str, Enum):
    """Kind recorded in ``Session.last_error`` for operator inspection."""

    CONFIGURATION = "configuration"
    GRAPH = "graph"
    HOOK_FAILURE = "hook_failure"
    HOOK_TIMEOUT = "hook_timeout"
    ACTION_ERROR = "action_error"
    TIMEOUT = "timeout"
    PROVIDER = "provider"
    MERGE = "merge"


class TransitionKind(str, Enum):
    """Kind of a workflow edge, used for diagram labels and reachability."""

    NEXT = "next"
    ERROR = "error"
    TIMEOUT = "timeout"
    CHOICE = "choice"
    DEFAULT = "default"
    SIGNAL = "signal"
