"""Asana provider using the REST API via httpx."""

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

ASANA_API_BASE = "https://app.asana.com/api/1.0"
ASANA_PAT_ENV = "ASANA_PAT"

TASK_FIELDS = "gid,name,notes,permalink_url,tags.name"


class AsanaProvider(IssueProvider, ProviderActions):
    """Incomplete tasks from an Asana project.

    Tasks are filtered by tag name client-side, since the project task
    listing cannot filter on tags.
    """

    def __init__(
        self,
        pat: str | None = None,
        projects: Mapping[str, str] | None = None,
        api_base: str = ASANA_API_BASE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Asana provider.

        Args:
            pat: Personal access token. Defaults to ``$ASANA_PAT`` at call time.
            projects: Local repository path to Asana project GID
            api_base: API base URL (overridable for testing)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self._pat = pat.strip() if pat else None
        self.projects = dict(projects or {})
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def pat(self) -> str | None:
        return self._pat or os.environ.get(ASANA_PAT_ENV) or None

    def name(self) -> str:
        return "Asana Tasks"

    def source(self) -> IssueSource:
        return IssueSource.ASANA

    def is_configured(self, repo_path: str) -> bool:
        return bool(self.pat) and bool(self.projects.get(repo_path))

    def generate_branch_name(self, issue: Issue) -> str:
        slug = slugify(issue.title)
        if not slug:
            return f"task-{issue.id}"
        return f"task-{slug}"

    def get_pr_link_text(self, issue: Issue) -> str:
        # Asana has no close-on-merge keyword
        return ""

    async def fetch_issues(self, repo_path: str, filter: FilterConfig) -> list[Issue]:
        project = filter.project or self.projects.get(repo_path, "")
        if not project:
            raise CredentialError("Asana project GID not configured for this repository", provider=self.name())

        payload = await self._request(
            "GET",
            f"/projects/{project}/tasks",
            params={"opt_fields": TASK_FIELDS, "completed_since": "now"},
            forbidden_hint="check that your ASANA_PAT has access to this project",
        )

        issues = []
        for task in payload.get("data") or []:
            tags = [tag.get("name", "") for tag in task.get("tags") or []]
            if filter.label and not any(tag.lower() == filter.label.lower() for tag in tags):
                continue
            issues.append(
                Issue(
                    id=task["gid"],
                    title=task.get("name", ""),
                    body=task.get("notes") or "",
                    url=task.get("permalink_url") or "",
                    source=IssueSource.ASANA,
                    labels=tags,
                )
            )

        log.debug("asana_tasks_fetched", project=project, label=filter.label, count=len(issues))
        return issues

    async def remove_label(self, repo_path: str, issue_id: str, label: str) -> None:
        tag_gid = await self._find_tag_gid(issue_id, label)
        await self._request("POST", f"/tasks/{issue_id}/removeTag", json={"data": {"tag": tag_gid}})
        log.info("asana_tag_removed", task=issue_id, tag=label)

    async def comment(self, repo_path: str, issue_id: str, body: str) -> None:
        await self._request("POST", f"/tasks/{issue_id}/stories", json={"data": {"text": body}})
        log.info("asana_comment_added", task=issue_id)

    async def _find_tag_gid(self, task_gid: str, tag_name: str) -> str:
        """Look up a tag by name in the workspace the task belongs to."""
        task = await self._request("GET", f"/tasks/{task_gid}", params={"opt_fields": "workspace.gid"})
        workspace = ((task.get("data") or {}).get("workspace") or {}).get("gid")
        if not workspace:
            raise ProviderError(f"could not determine workspace for task {task_gid}", provider=self.name())

        tags = await self._request("GET", f"/workspaces/{workspace}/tags", params={"opt_fields": "gid,name"})
        for tag in tags.get("data") or []:
            if tag.get("name", "").lower() == tag_name.lower():
                return tag["gid"]
        raise ProviderError(f"tag '{tag_name}' not found in workspace", provider=self.name())

    async def _request(
        self,
        method: str,
        path: str,
        forbidden_hint: str = "",
        **kwargs: Any,
    ) -> dict[str, Any]:
        pat = self.pat
        if not pat:
            raise CredentialError(f"{ASANA_PAT_ENV} environment variable not set", provider=self.name())

        headers = {"Authorization": f"Bearer {pat}", "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.api_base,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"{method} {path} failed: {e}", provider=self.name()) from e

        if response.status_code == 401:
            raise CredentialError("Asana API returned 401 Unauthorized", provider=self.name())
        if response.status_code == 403:
            message = "Asana API returned 403 Forbidden"
            if forbidden_hint:
                message = f"{message} - {forbidden_hint}"
            raise ProviderError(message, provider=self.name())
        if response.status_code >= 300:
            raise ProviderError(f"Asana API returned status {response.status_code} for {path}", provider=self.name())

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"failed to parse Asana response: {e}", provider=self.name()) from e
