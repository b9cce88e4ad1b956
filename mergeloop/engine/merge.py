"""
Merge automation: bounded polling checks for the merge region of a workflow.

Each check looks at one externally observed signal (review decision, CI
status, new review comments) for a session's pull request and returns a
``MergeAction``:

- ``CONTINUE``: nothing decisive yet; poll again next tick
- ``STOP``: give up on this path; the session is routed to failure
- ``PROCEED``: advance (or, for the merge itself, the merge happened)

Checks never loop or sleep. Polling is bounded by the attempt counter stored
on the session, so the bound survives a daemon restart. Each check is
independent; the workflow actions decide how they compose.

Two behaviours are deliberately permissive and are logged with their own
event names so operators can monitor them:

- ``comment_check_failed_open``: the comment query failed; the check
  returns ``PROCEED`` rather than stalling the pipeline.
- ``ci_status_ambiguous``: CI output was empty or unparseable; it is treated
  as passing.
"""

import structlog

from mergeloop.engine.host import Host
from mergeloop.enums import CIStatus, ErrorKind, MergeAction, ReviewDecision
from mergeloop.exceptions import ExternalServiceError, GitOperationError, MergeCheckAmbiguousError
from mergeloop.models.domain import PRComment, Session

log = structlog.get_logger(__name__)


def pr_ref(session: Session) -> str:
    """How ``gh`` should address the session's pull request."""
    return session.pr_url or session.branch


def format_review_comments(comments: list[PRComment]) -> str:
    """Render new review comments as a message for the coding agent."""
    lines = ["New review comments on the pull request need to be addressed:", ""]
    for comment in comments:
        location = f" on {comment.path}" if comment.path else ""
        lines.append(f"- @{comment.author or 'unknown'}{location}:")
        lines.extend(f"  {line}" for line in comment.body.strip().splitlines())
    lines.extend(["", "Address each comment, commit the changes, and leave the branch ready to push."])
    return "\n".join(lines)


class MergeAutomation:
    """Review, CI and merge checks for a session's pull request.

    The checks mutate only the session they are given (the engine's working
    copy), so nothing they change is persisted unless the step completes.

    Example:
        >>> merge = MergeAutomation(host)
        >>> await merge.check_review_approval(session, attempt=1)
        <MergeAction.CONTINUE: 0>
    """

    def __init__(self, host: Host) -> None:
        self.host = host

    @property
    def review_max_attempts(self) -> int:
        return self.host.config().merge.review_max_attempts

    async def check_review_approval(self, session: Session, attempt: int) -> MergeAction:
        """Wait for an approving review, for at most ``review_max_attempts`` polls.

        Args:
            session: Session whose pull request is checked
            attempt: 1-based poll number within the current state

        Returns:
            STOP once the attempt bound is reached (whatever the decision),
            PROCEED when approved, CONTINUE otherwise
        """
        limit = self.review_max_attempts
        if attempt >= limit:
            log.warning("review_wait_exhausted", session_id=session.id, attempt=attempt, limit=limit)
            session.record_error(ErrorKind.MERGE, f"pull request not approved after {attempt} checks")
            return MergeAction.STOP

        try:
            decision = await self.host.git_service().get_review_decision(session.workdir, pr_ref(session))
        except (ExternalServiceError, GitOperationError) as e:
            log.warning("review_check_failed", session_id=session.id, attempt=attempt, error=str(e))
            decision = ReviewDecision.NONE

        log.debug("review_decision", session_id=session.id, attempt=attempt, decision=decision.value)
        if decision is ReviewDecision.APPROVED:
            return MergeAction.PROCEED
        return MergeAction.CONTINUE

    async def ci_status(self, session: Session) -> CIStatus | None:
        """Current CI status, or None when it could not be queried.

        Ambiguous output resolves to ``CIStatus.PASSING``.
        """
        try:
            return await self.host.git_service().get_ci_status(session.workdir, pr_ref(session))
        except MergeCheckAmbiguousError as e:
            log.warning(
                "ci_status_ambiguous",
                session_id=session.id,
                error=e.message,
                output=(e.response_text or "")[:500],
            )
            return CIStatus.PASSING
        except (ExternalServiceError, GitOperationError) as e:
            log.warning("ci_check_failed", session_id=session.id, error=str(e))
            return None

    async def check_ci_and_merge(self, session: Session, attempt: int) -> MergeAction:
        """Merge once CI passes.

        Returns:
            STOP on failing CI, CONTINUE while pending (or when CI could not
            be queried), otherwise the result of ``do_merge``
        """
        status = await self.ci_status(session)
        log.debug("ci_status", session_id=session.id, attempt=attempt, status=status and status.value)

        if status is None or status is CIStatus.PENDING:
            return MergeAction.CONTINUE
        if status is CIStatus.FAILING:
            session.record_error(ErrorKind.MERGE, "CI checks failed")
            return MergeAction.STOP
        return await self.do_merge(session)

    async def check_and_address_comments(self, session: Session, attempt: int) -> MergeAction:
        """Look for review comments not yet handed to the agent.

        New comments are appended to the session's pending message, after
        any message already queued, and the addressed count advances past
        them. The caller routes the session back to coding.

        Returns:
            CONTINUE when new comments were found, PROCEED otherwise
            (including when the query itself fails)
        """
        try:
            comments = await self.host.git_service().get_pr_comments(session.workdir, pr_ref(session))
        except (ExternalServiceError, GitOperationError) as e:
            log.warning("comment_check_failed_open", session_id=session.id, attempt=attempt, error=str(e))
            return MergeAction.PROCEED

        new_comments = comments[session.pr_comments_addressed_count :]
        if not new_comments:
            return MergeAction.PROCEED

        feedback = format_review_comments(new_comments)
        queued = self.host.get_pending_message(session.id)
        self.host.set_pending_message(session.id, f"{queued}\n\n{feedback}" if queued else feedback)
        session.pr_comments_addressed_count = len(comments)
        log.info(
            "review_comments_found",
            session_id=session.id,
            new=len(new_comments),
            addressed_total=session.pr_comments_addressed_count,
        )
        return MergeAction.CONTINUE

    async def do_merge(self, session: Session) -> MergeAction:
        """Merge the pull request. Not retried on failure.

        Returns:
            PROCEED with ``session.pr_merged`` set on success; STOP with
            ``pr_merged`` untouched when the merge is rejected
        """
        method = self.host.merge_method()
        try:
            await self.host.git_service().merge_pull_request(session.workdir, pr_ref(session), method)
        except (GitOperationError, ExternalServiceError) as e:
            log.error("merge_failed", session_id=session.id, method=method, error=str(e))
            session.record_error(ErrorKind.MERGE, str(e))
            return MergeAction.STOP

        session.pr_merged = True
        log.info("merge_completed", session_id=session.id, pr=pr_ref(session), method=method)
        return MergeAction.PROCEED
