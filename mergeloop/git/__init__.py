"""Version control operations (worktrees, pull requests) via git and gh."""

from mergeloop.git.service import GitService, parse_ci_status

__all__ = ["GitService", "parse_ci_status"]
