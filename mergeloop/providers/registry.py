"""Lookup of issue providers by source tag."""

from collections.abc import Iterator

from mergeloop.config.settings import MergeLoopSettings
from mergeloop.enums import IssueSource
from mergeloop.exceptions import ProviderError
from mergeloop.providers.asana import AsanaProvider
from mergeloop.providers.base import IssueProvider
from mergeloop.providers.github import GitHubProvider
from mergeloop.providers.linear import LinearProvider


class ProviderRegistry:
    """Maps each ``IssueSource`` to the provider that serves it."""

    def __init__(self, providers: list[IssueProvider] | None = None) -> None:
        self._providers: dict[IssueSource, IssueProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: IssueProvider) -> None:
        self._providers[provider.source()] = provider

    def get(self, source: IssueSource) -> IssueProvider:
        """Return the provider for a source.

        Raises:
            ProviderError: If no provider is registered for the source
        """
        try:
            return self._providers[source]
        except KeyError:
            raise ProviderError(f"No provider registered for source '{source}'") from None

    def __contains__(self, source: object) -> bool:
        return source in self._providers

    def __iter__(self) -> Iterator[IssueProvider]:
        return iter(self._providers.values())

    @classmethod
    def from_settings(cls, settings: MergeLoopSettings) -> "ProviderRegistry":
        """Build the built-in providers with per-repository target mappings.

        Credentials are read from the environment when a request is made, so
        a token exported after startup is picked up without a restart.
        """
        repositories: dict[str, str] = {}
        projects: dict[str, str] = {}
        teams: dict[str, str] = {}
        for repo in settings.repos:
            for source in repo.sources:
                if source.provider is IssueSource.GITHUB and source.repository:
                    repositories.setdefault(repo.path, source.repository)
                elif source.provider is IssueSource.ASANA and source.project:
                    projects.setdefault(repo.path, source.project)
                elif source.provider is IssueSource.LINEAR and source.team:
                    teams.setdefault(repo.path, source.team)

        timeout = settings.daemon.provider_timeout
        return cls(
            [
                GitHubProvider(repositories=repositories, timeout=timeout),
                AsanaProvider(projects=projects, timeout=timeout),
                LinearProvider(teams=teams, timeout=timeout),
            ]
        )
