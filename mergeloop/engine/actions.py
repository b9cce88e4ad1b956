"""
Named primary actions for workflow states.

A state's ``action:`` names an entry in an ``ActionRegistry``. Actions are
async callables taking an ``ActionContext`` and returning an
``ActionResult``; they should report failures through the result rather than
raise. Anything they do raise is caught by the engine and routed through the
state's error edge.

Only actions registered with ``consumes_message=True`` take the session's
pending message. For every other action the message stays queued until a
consuming action runs.

Built-in actions:

=====================  ======================================================
``agent.code``         Run the coding agent on the issue (plus any pending
                       message) in the session workspace
``git.open_pr``        Push the branch and open (or reuse) the pull request
``merge.await_review`` Route new review comments back to coding, then wait
                       for approval
``merge.await_ci``     Wait for CI; report ``ci_status`` for a choice state
``merge.ci_and_merge`` Wait for CI and merge in one step
``merge.merge``        Merge the pull request (or wait for a manual merge
                       when auto-merge is off)
``noop``               Succeed immediately
=====================  ======================================================
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from mergeloop.agents.runner import AgentRunner, CLIAgentRunner
from mergeloop.engine.graph import StateConfig
from mergeloop.engine.host import Host
from mergeloop.engine.merge import MergeAutomation, pr_ref
from mergeloop.enums import ActionOutcome, CIStatus, ErrorKind, MergeAction, PRState
from mergeloop.exceptions import ConfigurationError, ExternalServiceError, GitOperationError
from mergeloop.models.domain import ActionResult, Session
from mergeloop.providers.registry import ProviderRegistry

log = structlog.get_logger(__name__)

COMMENTS_SIGNAL = "comments"


@dataclass
class ActionContext:
    """Everything an action may use during one step."""

    session: Session
    """The engine's working copy; changes persist only if the step completes."""

    state: StateConfig
    host: Host
    merge: MergeAutomation
    attempt: int
    """1-based number of this run of the state's action."""

    message: str = ""
    """Pending message consumed for this step ("" when none)."""

    providers: ProviderRegistry | None = None
    params: dict[str, Any] = field(default_factory=dict)


ActionFn = Callable[[ActionContext], Awaitable[ActionResult]]


class ActionRegistry:
    """Name to action lookup.

    Example:
        >>> registry = ActionRegistry()
        >>> @registry.register("notify")
        ... async def notify(ctx: ActionContext) -> ActionResult:
        ...     return ActionResult.success()
    """

    def __init__(self) -> None:
        self._actions: dict[str, ActionFn] = {}
        self._message_readers: set[str] = set()

    def register(self, name: str, fn: ActionFn | None = None, *, consumes_message: bool = False) -> Any:
        """Register ``fn`` under ``name``; usable as a decorator.

        Args:
            name: Name referenced by ``action:`` in the workflow
            fn: The action, or None when used as a decorator
            consumes_message: Hand the session's pending message to this
                action. Other actions leave it queued for a later step.
        """

        def add(func: ActionFn) -> ActionFn:
            self._actions[name] = func
            if consumes_message:
                self._message_readers.add(name)
            else:
                self._message_readers.discard(name)
            return func

        if fn is not None:
            return add(fn)
        return add

    def get(self, name: str) -> ActionFn:
        try:
            return self._actions[name]
        except KeyError:
            raise ConfigurationError(f"Unknown action '{name}'") from None

    def consumes_message(self, name: str) -> bool:
        return name in self._message_readers

    def names(self) -> list[str]:
        return sorted(self._actions)

    def __contains__(self, name: object) -> bool:
        return name in self._actions


def from_merge_action(action: MergeAction, session: Session, **data: Any) -> ActionResult:
    """Map a merge check result onto the engine's outcomes."""
    if action is MergeAction.CONTINUE:
        return ActionResult.wait(**data)
    if action is MergeAction.STOP:
        message = session.last_error.message if session.last_error else "merge check stopped"
        return ActionResult.failure(message, kind=ErrorKind.MERGE, **data)
    return ActionResult.success(**data)


def build_prompt(session: Session, message: str = "") -> str:
    """Compose the coding agent prompt for a session."""
    parts = []
    issue = session.issue
    if issue is not None:
        parts.append(f"# {issue.title}")
        if issue.url:
            parts.append(f"Source: {issue.url}")
        if issue.body.strip():
            parts.append(issue.body.strip())
    else:
        parts.append(f"# Work on branch {session.branch}")

    if message:
        parts.append(f"## Additional instructions\n\n{message}")

    parts.append(
        f"Work on the current branch (`{session.branch}`). Commit your changes with clear "
        "messages when done. Do not push and do not open a pull request."
    )
    return "\n\n".join(parts)


def builtin_actions(agent_runner: AgentRunner | None = None) -> ActionRegistry:
    """Create a registry holding the built-in actions."""
    runner = agent_runner or CLIAgentRunner()
    registry = ActionRegistry()

    @registry.register("agent.code", consumes_message=True)
    async def agent_code(ctx: ActionContext) -> ActionResult:
        session = ctx.session
        run = await runner.run(
            build_prompt(session, ctx.message),
            cwd=session.workdir,
            max_turns=ctx.host.max_turns(),
            max_duration=ctx.host.max_duration(),
        )
        if run.reported_usage:
            ctx.host.record_spend(run.cost_usd, run.output_tokens, run.input_tokens)
        if run.transcript:
            await ctx.host.save_runner_messages(session.id, run.transcript)

        if not run.success:
            return ActionResult(
                ActionOutcome.FAILURE,
                error=run.error or "agent run failed",
                error_kind=ErrorKind.ACTION_ERROR,
                output=run.output,
            )
        return ActionResult(ActionOutcome.SUCCESS, output=run.output)

    @registry.register("git.open_pr")
    async def open_pr(ctx: ActionContext) -> ActionResult:
        session = ctx.session
        git = ctx.host.git_service()
        await git.push_branch(session.workdir, session.branch)
        if session.pr_url:
            return ActionResult.success(pr_url=session.pr_url)

        issue = session.issue
        title = issue.title if issue else session.branch
        body_parts = []
        if issue is not None:
            if issue.url:
                body_parts.append(f"Resolves {issue.url}")
            if session.parent_id is None and ctx.providers is not None and issue.source in ctx.providers:
                link = ctx.providers.get(issue.source).get_pr_link_text(issue)
                if link:
                    body_parts.append(link)

        url = await git.create_pull_request(
            session.workdir,
            session.branch,
            title,
            "\n\n".join(body_parts) or f"Automated changes from {session.branch}",
            base=ctx.host.config().merge.base_branch,
        )
        session.pr_url = url
        return ActionResult.success(pr_url=url)

    @registry.register("merge.await_review")
    async def await_review(ctx: ActionContext) -> ActionResult:
        if ctx.host.auto_address_pr_comments():
            action = await ctx.merge.check_and_address_comments(ctx.session, ctx.attempt)
            if action is MergeAction.CONTINUE:
                return ActionResult.emit(COMMENTS_SIGNAL, comments_addressed=ctx.session.pr_comments_addressed_count)

        action = await ctx.merge.check_review_approval(ctx.session, ctx.attempt)
        return from_merge_action(action, ctx.session)

    @registry.register("merge.await_ci")
    async def await_ci(ctx: ActionContext) -> ActionResult:
        status = await ctx.merge.ci_status(ctx.session)
        if status is None:
            return ActionResult.wait()
        if status is CIStatus.PENDING:
            return ActionResult.wait(ci_status=status.value)
        return ActionResult.success(ci_status=status.value)

    @registry.register("merge.ci_and_merge")
    async def ci_and_merge(ctx: ActionContext) -> ActionResult:
        action = await ctx.merge.check_ci_and_merge(ctx.session, ctx.attempt)
        return from_merge_action(action, ctx.session, pr_merged=ctx.session.pr_merged)

    @registry.register("merge.merge")
    async def merge(ctx: ActionContext) -> ActionResult:
        session = ctx.session
        try:
            pr_state = await ctx.host.git_service().get_pr_state(session.workdir, pr_ref(session))
        except (ExternalServiceError, GitOperationError) as e:
            log.warning("pr_state_check_failed", session_id=session.id, error=str(e))
            pr_state = PRState.UNKNOWN

        if pr_state is PRState.MERGED:
            session.pr_merged = True
            return ActionResult.success(pr_merged=True)
        if pr_state is PRState.CLOSED:
            return ActionResult.failure("pull request was closed without merging", kind=ErrorKind.MERGE)

        if not ctx.host.auto_merge():
            log.debug("awaiting_manual_merge", session_id=session.id, attempt=ctx.attempt)
            return ActionResult.wait()

        action = await ctx.merge.do_merge(session)
        return from_merge_action(action, session, pr_merged=session.pr_merged)

    @registry.register("noop")
    async def noop(ctx: ActionContext) -> ActionResult:
        return ActionResult.success()

    return registry
