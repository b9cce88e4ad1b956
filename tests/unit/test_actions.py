"""Tests for mergeloop/engine/actions.py - the built-in workflow actions."""

from unittest.mock import AsyncMock, Mock

import pytest

from mergeloop.agents.runner import AgentRun, AgentRunner
from mergeloop.config.workflow import default_workflow
from mergeloop.engine.actions import (
    COMMENTS_SIGNAL,
    ActionContext,
    ActionRegistry,
    build_prompt,
    builtin_actions,
    from_merge_action,
)
from mergeloop.engine.graph import WorkflowGraph
from mergeloop.engine.merge import MergeAutomation
from mergeloop.enums import ActionOutcome, CIStatus, ErrorKind, IssueSource, MergeAction, PRState, ReviewDecision
from mergeloop.exceptions import ConfigurationError, ExternalServiceError, GitOperationError
from mergeloop.models.domain import ActionResult, PRComment
from mergeloop.providers.base import IssueProvider
from mergeloop.providers.registry import ProviderRegistry

PR_URL = "https://github.com/acme/app/pull/7"


@pytest.fixture
def agent_runner() -> Mock:
    runner = Mock(spec=AgentRunner)
    runner.run = AsyncMock(
        return_value=AgentRun(
            success=True,
            output="Implemented rate limiting",
            cost_usd=0.25,
            input_tokens=1000,
            output_tokens=200,
            transcript=[{"role": "assistant", "content": "Implemented rate limiting"}],
        )
    )
    return runner


@pytest.fixture
def actions(agent_runner: Mock) -> ActionRegistry:
    return builtin_actions(agent_runner)


@pytest.fixture
def make_ctx(host, make_session):
    """Factory for action contexts against the default workflow."""
    graph = WorkflowGraph.from_definition(default_workflow())

    def _make(state: str, attempt: int = 1, message: str = "", providers=None, **session_fields) -> ActionContext:
        session = make_session(state=state, **session_fields)
        return ActionContext(
            session=session,
            state=graph.state(state),
            host=host,
            merge=MergeAutomation(host),
            attempt=attempt,
            message=message,
            providers=providers,
        )

    return _make


# =============================================================================
# Registry
# =============================================================================


class TestActionRegistry:
    """Tests for ActionRegistry."""

    def test_builtin_names(self, actions: ActionRegistry):
        assert actions.names() == [
            "agent.code",
            "git.open_pr",
            "merge.await_ci",
            "merge.await_review",
            "merge.ci_and_merge",
            "merge.merge",
            "noop",
        ]

    def test_register_decorator_and_direct(self):
        registry = ActionRegistry()

        @registry.register("custom")
        async def custom(ctx):
            return ActionResult.success()

        registry.register("other", custom)

        assert registry.get("custom") is custom
        assert "other" in registry

    def test_unknown_action(self):
        with pytest.raises(ConfigurationError, match="Unknown action 'missing'"):
            ActionRegistry().get("missing")

    def test_only_agent_code_consumes_messages(self, actions: ActionRegistry):
        assert [name for name in actions.names() if actions.consumes_message(name)] == ["agent.code"]

    def test_consumes_message_flag(self):
        registry = ActionRegistry()

        @registry.register("reader", consumes_message=True)
        async def reader(ctx):
            return ActionResult.success()

        registry.register("poller", reader)

        assert registry.consumes_message("reader")
        assert not registry.consumes_message("poller")
        assert not registry.consumes_message("missing")

        registry.register("reader", reader)
        assert not registry.consumes_message("reader")


class TestFromMergeAction:
    def test_mapping(self, make_session):
        session = make_session()
        session.record_error(ErrorKind.MERGE, "CI checks failed")

        assert from_merge_action(MergeAction.CONTINUE, session).outcome is ActionOutcome.WAIT
        assert from_merge_action(MergeAction.PROCEED, session, pr_merged=True).data == {"pr_merged": True}
        stopped = from_merge_action(MergeAction.STOP, session)
        assert stopped.outcome is ActionOutcome.FAILURE
        assert stopped.error == "CI checks failed"
        assert stopped.error_kind is ErrorKind.MERGE


# =============================================================================
# agent.code
# =============================================================================


class TestAgentCode:
    """Tests for the agent.code action."""

    @pytest.mark.asyncio
    async def test_runs_agent_in_workdir(self, actions, make_ctx, agent_runner, host):
        ctx = make_ctx("coding", message="Please also add tests")

        result = await actions.get("agent.code")(ctx)

        assert result.outcome is ActionOutcome.SUCCESS
        assert result.output == "Implemented rate limiting"
        prompt = agent_runner.run.await_args.args[0]
        assert "# Add rate limiting to the API" in prompt
        assert "Please also add tests" in prompt
        assert agent_runner.run.await_args.kwargs == {
            "cwd": ctx.session.workdir,
            "max_turns": 50,
            "max_duration": 30,
        }

    @pytest.mark.asyncio
    async def test_records_spend_and_transcript(self, actions, make_ctx, host):
        ctx = make_ctx("coding")

        await actions.get("agent.code")(ctx)

        totals = host.context.spend.totals()
        assert totals.cost_usd == 0.25
        assert totals.calls == 1
        assert host.transcripts[ctx.session.id][0]["content"] == "Implemented rate limiting"

    @pytest.mark.asyncio
    async def test_agent_failure(self, actions, make_ctx, agent_runner):
        agent_runner.run.return_value = AgentRun(success=False, error="max turns reached", exit_code=1)

        result = await actions.get("agent.code")(make_ctx("coding"))

        assert result.outcome is ActionOutcome.FAILURE
        assert result.error == "max turns reached"
        assert result.error_kind is ErrorKind.ACTION_ERROR

    def test_prompt_without_issue(self, make_session):
        prompt = build_prompt(make_session(issue=None, branch="issue-42-child"))

        assert prompt.startswith("# Work on branch issue-42-child")
        assert "Do not push" in prompt


# =============================================================================
# git.open_pr
# =============================================================================


class TestOpenPr:
    """Tests for the git.open_pr action."""

    @pytest.mark.asyncio
    async def test_pushes_and_opens(self, actions, make_ctx, mock_git):
        ctx = make_ctx("open_pr")

        result = await actions.get("git.open_pr")(ctx)

        assert result.data == {"pr_url": PR_URL}
        assert ctx.session.pr_url == PR_URL
        mock_git.push_branch.assert_awaited_once_with(ctx.session.workdir, "issue-42")
        args = mock_git.create_pull_request.await_args
        assert args.args[2] == "Add rate limiting to the API"
        assert "Resolves https://github.com/acme/app/issues/42" in args.args[3]
        assert args.kwargs == {"base": "main"}

    @pytest.mark.asyncio
    async def test_existing_pr_is_reused(self, actions, make_ctx, mock_git):
        """Re-running after an interrupted step pushes again but opens nothing."""
        ctx = make_ctx("open_pr", pr_url=PR_URL)

        result = await actions.get("git.open_pr")(ctx)

        assert result.data == {"pr_url": PR_URL}
        mock_git.push_branch.assert_awaited_once()
        mock_git.create_pull_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_link_text(self, actions, make_ctx, mock_git):
        provider = Mock(spec=IssueProvider)
        provider.get_pr_link_text.return_value = "Closes #42"
        provider.source.return_value = IssueSource.GITHUB
        registry = ProviderRegistry([provider])

        await actions.get("git.open_pr")(make_ctx("open_pr", providers=registry))

        assert "Closes #42" in mock_git.create_pull_request.await_args.args[3]

    @pytest.mark.asyncio
    async def test_child_session_has_no_link_text(self, actions, make_ctx, mock_git):
        """Only the parent session's pull request closes the issue."""
        provider = Mock(spec=IssueProvider)
        provider.get_pr_link_text.return_value = "Closes #42"
        provider.source.return_value = IssueSource.GITHUB
        registry = ProviderRegistry([provider])

        await actions.get("git.open_pr")(make_ctx("open_pr", providers=registry, parent_id="github-42-parent"))

        assert "Closes #42" not in mock_git.create_pull_request.await_args.args[3]
        provider.get_pr_link_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_failure_raises(self, actions, make_ctx, mock_git):
        """Git errors propagate for the engine to route through the error edge."""
        mock_git.push_branch.side_effect = GitOperationError("git push failed for issue-42: rejected")

        with pytest.raises(GitOperationError):
            await actions.get("git.open_pr")(make_ctx("open_pr"))


# =============================================================================
# Merge region
# =============================================================================


class TestAwaitReview:
    """Tests for the merge.await_review action."""

    @pytest.mark.asyncio
    async def test_new_comments_emit_signal(self, actions, make_ctx, mock_git, host):
        mock_git.get_pr_comments.return_value = [PRComment(author="bob", body="nit")]
        ctx = make_ctx("await_review", pr_url=PR_URL)

        result = await actions.get("merge.await_review")(ctx)

        assert result.outcome is ActionOutcome.SIGNAL
        assert result.signal == COMMENTS_SIGNAL
        assert result.data == {"comments_addressed": 1}
        assert "nit" in host.get_pending_message(ctx.session.id)

    @pytest.mark.asyncio
    async def test_waits_for_approval(self, actions, make_ctx):
        result = await actions.get("merge.await_review")(make_ctx("await_review", pr_url=PR_URL))

        assert result.outcome is ActionOutcome.WAIT

    @pytest.mark.asyncio
    async def test_approved(self, actions, make_ctx, mock_git):
        mock_git.get_review_decision.return_value = ReviewDecision.APPROVED

        result = await actions.get("merge.await_review")(make_ctx("await_review", pr_url=PR_URL))

        assert result.outcome is ActionOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_comments_ignored_when_disabled(self, actions, make_ctx, mock_git, settings):
        settings.merge.auto_address_comments = False
        mock_git.get_pr_comments.return_value = [PRComment(author="bob", body="nit")]

        result = await actions.get("merge.await_review")(make_ctx("await_review", pr_url=PR_URL))

        assert result.outcome is ActionOutcome.WAIT
        mock_git.get_pr_comments.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_attempt_limit_fails(self, actions, make_ctx):
        result = await actions.get("merge.await_review")(make_ctx("await_review", attempt=120, pr_url=PR_URL))

        assert result.outcome is ActionOutcome.FAILURE
        assert result.error_kind is ErrorKind.MERGE


class TestAwaitCI:
    """Tests for the merge.await_ci action."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "outcome"),
        [
            (CIStatus.PENDING, ActionOutcome.WAIT),
            (CIStatus.PASSING, ActionOutcome.SUCCESS),
            (CIStatus.FAILING, ActionOutcome.SUCCESS),
        ],
    )
    async def test_reports_ci_status(self, actions, make_ctx, mock_git, status, outcome):
        """The status is handed to the choice state, failing included."""
        mock_git.get_ci_status.return_value = status

        result = await actions.get("merge.await_ci")(make_ctx("await_ci", pr_url=PR_URL))

        assert result.outcome is outcome
        assert result.data == {"ci_status": status.value}

    @pytest.mark.asyncio
    async def test_query_failure_waits_without_status(self, actions, make_ctx, mock_git):
        mock_git.get_ci_status.side_effect = ExternalServiceError("gh pr checks timed out")

        result = await actions.get("merge.await_ci")(make_ctx("await_ci", pr_url=PR_URL))

        assert result.outcome is ActionOutcome.WAIT
        assert result.data == {}

    @pytest.mark.asyncio
    async def test_ci_and_merge(self, actions, make_ctx, mock_git):
        mock_git.get_ci_status.return_value = CIStatus.PASSING

        result = await actions.get("merge.ci_and_merge")(make_ctx("await_ci", pr_url=PR_URL))

        assert result.outcome is ActionOutcome.SUCCESS
        assert result.data == {"pr_merged": True}


class TestMerge:
    """Tests for the merge.merge action."""

    @pytest.mark.asyncio
    async def test_merges_open_pr(self, actions, make_ctx, mock_git):
        ctx = make_ctx("merge", pr_url=PR_URL)

        result = await actions.get("merge.merge")(ctx)

        assert result.outcome is ActionOutcome.SUCCESS
        assert ctx.session.pr_merged is True
        mock_git.merge_pull_request.assert_awaited_once_with(ctx.session.workdir, PR_URL, "squash")

    @pytest.mark.asyncio
    async def test_already_merged(self, actions, make_ctx, mock_git):
        """A PR merged by hand completes the state without merging again."""
        mock_git.get_pr_state.return_value = PRState.MERGED

        result = await actions.get("merge.merge")(make_ctx("merge", pr_url=PR_URL))

        assert result.data == {"pr_merged": True}
        mock_git.merge_pull_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closed_pr_fails(self, actions, make_ctx, mock_git):
        mock_git.get_pr_state.return_value = PRState.CLOSED

        result = await actions.get("merge.merge")(make_ctx("merge", pr_url=PR_URL))

        assert result.outcome is ActionOutcome.FAILURE
        assert "closed" in result.error

    @pytest.mark.asyncio
    async def test_manual_merge_waits(self, actions, make_ctx, mock_git, settings):
        settings.merge.auto_merge = False

        result = await actions.get("merge.merge")(make_ctx("merge", pr_url=PR_URL))

        assert result.outcome is ActionOutcome.WAIT
        mock_git.merge_pull_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_merge_fails(self, actions, make_ctx, mock_git):
        mock_git.merge_pull_request.side_effect = GitOperationError("gh pr merge failed: not mergeable")

        result = await actions.get("merge.merge")(make_ctx("merge", pr_url=PR_URL))

        assert result.outcome is ActionOutcome.FAILURE
        assert result.error_kind is ErrorKind.MERGE
        assert result.data == {"pr_merged": False}

    @pytest.mark.asyncio
    async def test_noop(self, actions, make_ctx):
        result = await actions.get("noop")(make_ctx("coding"))

        assert result.outcome is ActionOutcome.SUCCESS
