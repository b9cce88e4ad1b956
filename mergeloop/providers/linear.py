"""Linear provider using the GraphQL API via httpx."""

import os
from collections.abc import Mapping
from typing import Any

import httpx
import structlog

from mergeloop.enums import IssueSource
from mergeloop.exceptions import CredentialError, ProviderError
from mergeloop.models.domain import FilterConfig, Issue
from mergeloop.providers.base import IssueProvider, ProviderActions
from mergeloop.utils.slug import slugify

log = structlog.get_logger(__name__)

LINEAR_API_BASE = "https://api.linear.app"
LINEAR_API_KEY_ENV = "LINEAR_API_KEY"

_ISSUE_FIELDS = """
      nodes {
        id
        identifier
        title
        description
        url
        labels { nodes { name } }
      }"""

TEAM_ISSUES_QUERY = (
    """query($teamId: String!) {
  team(id: $teamId) {
    issues(filter: { state: { type: { nin: ["completed", "canceled"] } } }) {"""
    + _ISSUE_FIELDS
    + """
    }
  }
}"""
)

TEAM_ISSUES_BY_LABEL_QUERY = (
    """query($teamId: String!, $label: String!) {
  team(id: $teamId) {
    issues(filter: {
      state: { type: { nin: ["completed", "canceled"] } }
      labels: { name: { eqIgnoreCase: $label } }
    }) {"""
    + _ISSUE_FIELDS
    + """
    }
  }
}"""
)

FIND_LABEL_QUERY = """query($label: String!) {
  issueLabels(filter: { name: { eqIgnoreCase: $label } }) {
    nodes { id name }
  }
}"""

REMOVE_LABEL_MUTATION = """mutation($issueId: String!, $labelId: String!) {
  issueRemoveLabel(id: $issueId, labelId: $labelId) {
    success
  }
}"""

COMMENT_MUTATION = """mutation($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) {
    success
  }
}"""


class LinearProvider(IssueProvider, ProviderActions):
    """Active (not completed, not canceled) issues from a Linear team.

    ``Issue.id`` is the team-scoped identifier (``ENG-123``) and
    ``Issue.provider_ref`` the issue UUID. Write-back actions accept either.
    """

    def __init__(
        self,
        api_key: str | None = None,
        teams: Mapping[str, str] | None = None,
        api_base: str = LINEAR_API_BASE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Linear provider.

        Args:
            api_key: API key. Defaults to ``$LINEAR_API_KEY`` at call time.
            teams: Local repository path to Linear team ID
            api_base: API base URL (overridable for testing)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self._api_key = api_key.strip() if api_key else None
        self.teams = dict(teams or {})
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def api_key(self) -> str | None:
        return self._api_key or os.environ.get(LINEAR_API_KEY_ENV) or None

    def name(self) -> str:
        return "Linear Issues"

    def source(self) -> IssueSource:
        return IssueSource.LINEAR

    def is_configured(self, repo_path: str) -> bool:
        return bool(self.api_key) and bool(self.teams.get(repo_path))

    def generate_branch_name(self, issue: Issue) -> str:
        slug = slugify(issue.id)
        if not slug:
            return f"linear-{slugify(issue.provider_ref) or 'issue'}"
        return f"linear-{slug}"

    def get_pr_link_text(self, issue: Issue) -> str:
        return f"Fixes {issue.id}"

    async def fetch_issues(self, repo_path: str, filter: FilterConfig) -> list[Issue]:
        team = filter.team or self.teams.get(repo_path, "")
        if not team:
            raise CredentialError("Linear team ID not configured for this repository", provider=self.name())

        variables: dict[str, Any] = {"teamId": team}
        if filter.label:
            query = TEAM_ISSUES_BY_LABEL_QUERY
            variables["label"] = filter.label
        else:
            query = TEAM_ISSUES_QUERY

        data = await self._graphql(
            query,
            variables,
            forbidden_hint="check that your LINEAR_API_KEY has access to this team",
        )

        nodes = (((data.get("team") or {}).get("issues") or {}).get("nodes")) or []
        issues = [
            Issue(
                id=node["identifier"],
                title=node.get("title", ""),
                body=node.get("description") or "",
                url=node.get("url") or "",
                source=IssueSource.LINEAR,
                labels=[label["name"] for label in ((node.get("labels") or {}).get("nodes") or [])],
                provider_ref=node.get("id", ""),
            )
            for node in nodes
        ]

        log.debug("linear_issues_fetched", team=team, label=filter.label, count=len(issues))
        return issues

    async def remove_label(self, repo_path: str, issue_id: str, label: str) -> None:
        data = await self._graphql(FIND_LABEL_QUERY, {"label": label})
        nodes = (data.get("issueLabels") or {}).get("nodes") or []
        if not nodes:
            raise ProviderError(f"label '{label}' not found in Linear", provider=self.name())

        await self._graphql(REMOVE_LABEL_MUTATION, {"issueId": issue_id, "labelId": nodes[0]["id"]})
        log.info("linear_label_removed", issue=issue_id, label=label)

    async def comment(self, repo_path: str, issue_id: str, body: str) -> None:
        await self._graphql(COMMENT_MUTATION, {"issueId": issue_id, "body": body})
        log.info("linear_comment_added", issue=issue_id)

    async def _graphql(
        self,
        query: str,
        variables: dict[str, Any],
        forbidden_hint: str = "",
    ) -> dict[str, Any]:
        api_key = self.api_key
        if not api_key:
            raise CredentialError(f"{LINEAR_API_KEY_ENV} environment variable not set", provider=self.name())

        headers = {"Authorization": api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.api_base,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post("/graphql", json={"query": query, "variables": variables})
        except httpx.HTTPError as e:
            raise ProviderError(f"GraphQL request failed: {e}", provider=self.name()) from e

        if response.status_code == 401:
            raise CredentialError("Linear API returned 401 Unauthorized", provider=self.name())
        if response.status_code == 403:
            message = "Linear API returned 403 Forbidden"
            if forbidden_hint:
                message = f"{message} - {forbidden_hint}"
            raise ProviderError(message, provider=self.name())
        if response.status_code != 200:
            raise ProviderError(f"Linear API returned status {response.status_code}", provider=self.name())

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"failed to parse Linear response: {e}", provider=self.name()) from e

        if payload.get("errors"):
            messages = "; ".join(error.get("message", "unknown error") for error in payload["errors"])
            raise ProviderError(f"GraphQL errors: {messages}", provider=self.name())
        return payload.get("data") or {}
