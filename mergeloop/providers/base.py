"""
Abstract base classes for issue providers.

An issue provider is an external tracker (GitHub Issues, Asana, Linear) that
yields work items. Every provider implements the core ``IssueProvider``
contract. Some also implement ``ProviderActions``, an optional capability for
writing back to the tracker (removing the queue label, commenting). Callers
query that capability with ``supports_actions`` instead of assuming it.
"""

from abc import ABC, abstractmethod

from mergeloop.enums import IssueSource
from mergeloop.models.domain import FilterConfig, Issue


class IssueProvider(ABC):
    """Abstract base class for issue tracker integrations.

    Implementations normalize provider-specific payloads into ``Issue``
    objects and derive branch names that are safe for both git refs and
    filesystem paths.

    Provider failures are reported as ``ProviderError`` (transient, retried
    next tick) or ``CredentialError`` (missing token or target mapping,
    reported once until the provider is configured again).
    """

    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name, e.g. ``"GitHub Issues"``."""

    @abstractmethod
    def source(self) -> IssueSource:
        """Source tag stamped on every issue this provider returns."""

    @abstractmethod
    def is_configured(self, repo_path: str) -> bool:
        """Whether the provider has what it needs to poll for ``repo_path``.

        Args:
            repo_path: Local path of the repository the issues are worked in

        Returns:
            True when credentials (and any required mapping) are present
        """

    @abstractmethod
    async def fetch_issues(self, repo_path: str, filter: FilterConfig) -> list[Issue]:
        """Fetch open or incomplete work items.

        Args:
            repo_path: Local repository the work will be done in
            filter: Label and target (project/team/repository) to query.
                An empty label returns every open item; a non-empty label
                returns only items carrying a tag or label whose name matches
                it case-insensitively.

        Returns:
            List of issues in provider order

        Raises:
            CredentialError: If the token or target mapping is missing
            ProviderError: On network, HTTP or payload errors
        """

    @abstractmethod
    def generate_branch_name(self, issue: Issue) -> str:
        """Derive a deterministic, branch-safe name for the issue.

        The result is lowercase, never ends in a separator, and falls back to
        an ID-based name when nothing usable can be derived.
        """

    @abstractmethod
    def get_pr_link_text(self, issue: Issue) -> str:
        """Text placed in a pull request body to link or close the issue.

        Providers without auto-linking return an empty string.
        """


class ProviderActions(ABC):
    """Optional write-back capability of an issue provider."""

    @abstractmethod
    async def remove_label(self, repo_path: str, issue_id: str, label: str) -> None:
        """Remove a label or tag from an issue.

        Raises:
            ProviderError: If the issue ID is invalid or the request fails
        """

    @abstractmethod
    async def comment(self, repo_path: str, issue_id: str, body: str) -> None:
        """Post a comment on an issue.

        Raises:
            ProviderError: If the issue ID is invalid or the request fails
        """


def supports_actions(provider: IssueProvider) -> bool:
    """Return True if the provider implements ``ProviderActions``."""
    return isinstance(provider, ProviderActions)
