"""Issue providers: the external trackers work items are pulled from.

Key Components:
    - IssueProvider: Abstract base for issue sources
    - ProviderActions: Optional write-back capability (labels, comments)
    - supports_actions: Capability query for ProviderActions
    - GitHubProvider: GitHub Issues via PyGithub
    - AsanaProvider: Asana tasks via the REST API
    - LinearProvider: Linear issues via the GraphQL API
    - ProviderRegistry: Source tag to provider lookup

Example:
    >>> registry = ProviderRegistry.from_settings(settings)
    >>> provider = registry.get(IssueSource.LINEAR)
    >>> issues = await provider.fetch_issues("/src/app", FilterConfig(label="queued", team="TEAM-ID"))
"""

from mergeloop.providers.asana import AsanaProvider
from mergeloop.providers.base import IssueProvider, ProviderActions, supports_actions
from mergeloop.providers.github import GitHubProvider
from mergeloop.providers.linear import LinearProvider
from mergeloop.providers.registry import ProviderRegistry

__all__ = [
    "AsanaProvider",
    "GitHubProvider",
    "IssueProvider",
    "LinearProvider",
    "ProviderActions",
    "ProviderRegistry",
    "supports_actions",
]
