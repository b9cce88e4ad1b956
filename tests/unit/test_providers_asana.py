"""Tests for mergeloop/providers/asana.py - Asana REST provider."""

import json

import httpx
import pytest

from mergeloop.enums import IssueSource
from mergeloop.exceptions import CredentialError, ProviderError
from mergeloop.models.domain import FilterConfig, Issue
from mergeloop.providers.asana import AsanaProvider

REPO_PATH = "/src/app"

TASKS = {
    "data": [
        {
            "gid": "1201",
            "name": "Add export button",
            "notes": "CSV please",
            "permalink_url": "https://app.asana.com/0/1/1201",
            "tags": [{"name": "MergeLoop"}],
        },
        {"gid": "1202", "name": "Untagged", "notes": None, "tags": []},
    ]
}


def make_provider(handler, **kwargs) -> AsanaProvider:
    return AsanaProvider(
        pat="asana-pat",
        projects={REPO_PATH: "999"},
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestAsanaBasics:
    """Tests for identity and naming."""

    def test_branch_name_from_title(self):
        provider = AsanaProvider(pat="x")
        issue = Issue(id="1201", title="Add export button!", body="", url="", source=IssueSource.ASANA)

        assert provider.generate_branch_name(issue) == "task-add-export-button"
        assert provider.get_pr_link_text(issue) == ""

    def test_branch_name_falls_back_to_id(self):
        issue = Issue(id="1201", title="???", body="", url="", source=IssueSource.ASANA)

        assert AsanaProvider(pat="x").generate_branch_name(issue) == "task-1201"

    def test_is_configured_needs_project(self):
        provider = AsanaProvider(pat="x", projects={REPO_PATH: "999"})

        assert provider.is_configured(REPO_PATH)
        assert not provider.is_configured("/src/other")


class TestFetchIssues:
    """Tests for fetch_issues."""

    @pytest.mark.asyncio
    async def test_filters_by_tag_case_insensitively(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=TASKS)

        issues = await make_provider(handler).fetch_issues(REPO_PATH, FilterConfig(label="mergeloop"))

        assert [issue.id for issue in issues] == ["1201"]
        assert issues[0].source is IssueSource.ASANA
        assert issues[0].body == "CSV please"
        request = requests[0]
        assert request.url.path == "/api/1.0/projects/999/tasks"
        assert request.url.params["completed_since"] == "now"
        assert request.headers["Authorization"] == "Bearer asana-pat"

    @pytest.mark.asyncio
    async def test_no_label_returns_all(self):
        issues = await make_provider(lambda request: httpx.Response(200, json=TASKS)).fetch_issues(
            REPO_PATH, FilterConfig()
        )

        assert [issue.id for issue in issues] == ["1201", "1202"]
        assert issues[1].body == ""

    @pytest.mark.asyncio
    async def test_missing_project(self):
        with pytest.raises(CredentialError, match="project GID not configured"):
            await make_provider(lambda request: httpx.Response(200, json=TASKS)).fetch_issues(
                "/src/other", FilterConfig()
            )

    @pytest.mark.asyncio
    async def test_missing_pat(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("ASANA_PAT", raising=False)
        provider = AsanaProvider(projects={REPO_PATH: "999"})

        with pytest.raises(CredentialError, match="ASANA_PAT"):
            await provider.fetch_issues(REPO_PATH, FilterConfig())

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "error", "message"),
        [
            (401, CredentialError, "401 Unauthorized"),
            (403, ProviderError, "403 Forbidden - check that your ASANA_PAT"),
            (500, ProviderError, "status 500"),
        ],
    )
    async def test_http_errors(self, status, error, message):
        provider = make_provider(lambda request: httpx.Response(status, json={}))

        with pytest.raises(error, match=message):
            await provider.fetch_issues(REPO_PATH, FilterConfig())

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError, match="connection refused"):
            await make_provider(handler).fetch_issues(REPO_PATH, FilterConfig())

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        provider = make_provider(lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(ProviderError, match="failed to parse"):
            await provider.fetch_issues(REPO_PATH, FilterConfig())


class TestWriteBack:
    """Tests for remove_label and comment."""

    @pytest.mark.asyncio
    async def test_remove_label_resolves_tag_in_workspace(self):
        calls: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            if request.url.path.endswith("/tasks/1201"):
                return httpx.Response(200, json={"data": {"workspace": {"gid": "77"}}})
            if request.url.path.endswith("/workspaces/77/tags"):
                return httpx.Response(200, json={"data": [{"gid": "5", "name": "MergeLoop"}]})
            assert json.loads(request.content) == {"data": {"tag": "5"}}
            return httpx.Response(200, json={"data": {}})

        await make_provider(handler).remove_label(REPO_PATH, "1201", "mergeloop")

        assert calls[-1] == ("POST", "/api/1.0/tasks/1201/removeTag")

    @pytest.mark.asyncio
    async def test_remove_unknown_tag(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/tasks/1201"):
                return httpx.Response(200, json={"data": {"workspace": {"gid": "77"}}})
            return httpx.Response(200, json={"data": []})

        with pytest.raises(ProviderError, match="tag 'mergeloop' not found"):
            await make_provider(handler).remove_label(REPO_PATH, "1201", "mergeloop")

    @pytest.mark.asyncio
    async def test_comment_posts_story(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append((request.url.path, json.loads(request.content)))
            return httpx.Response(201, json={"data": {}})

        await make_provider(handler).comment(REPO_PATH, "1201", "Merged in https://github.com/acme/app/pull/7")

        assert bodies == [
            ("/api/1.0/tasks/1201/stories", {"data": {"text": "Merged in https://github.com/acme/app/pull/7"}})
        ]
