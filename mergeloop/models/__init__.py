"""Domain models for mergeloop."""

from mergeloop.models.domain import (
    ActionResult,
    FilterConfig,
    HookResult,
    Issue,
    PRComment,
    Session,
    SessionError,
    SessionInfo,
    SpendTotals,
)

__all__ = [
    "ActionResult",
    "FilterConfig",
    "HookResult",
    "Issue",
    "PRComment",
    "Session",
    "SessionError",
    "SessionInfo",
    "SpendTotals",
]
