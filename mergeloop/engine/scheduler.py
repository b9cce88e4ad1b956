"""
Tick-based scheduler that drives every active session.

Each tick:

1. Delivers operator messages queued in the store to the pending-message
   slots of their sessions. Messages for sessions that are no longer active
   are dropped.
2. Advances every active session by one step, concurrently. Concurrency is
   bounded by a semaphore; each session is serialized by its store lock and
   skipped for this tick if another advancement still holds it. Sessions
   are reloaded under the lock so a step always acts on the latest record.
3. Finalizes sessions that reached a terminal state: writes back to the
   issue tracker, removes the worktree and archives the session.
4. Admits new work while fewer than ``max_active_sessions`` are in flight.

One session's failure never affects another's. A session whose state is
missing from the graph, or whose choice state cannot be resolved, is routed
to the graph's failure state.
"""

import asyncio
from dataclasses import dataclass, field

import structlog

from mergeloop.config.settings import MergeLoopSettings, RepoConfig, SourceConfig
from mergeloop.engine.context import RuntimeContext
from mergeloop.engine.graph import WorkflowGraph
from mergeloop.engine.session_store import SessionStore, new_session_id
from mergeloop.engine.workflow_engine import WorkflowEngine
from mergeloop.enums import ErrorKind, IssueSource
from mergeloop.exceptions import (
    ConfigurationError,
    CredentialError,
    GitOperationError,
    GraphError,
    ProviderError,
)
from mergeloop.git.service import GitService
from mergeloop.models.domain import Issue, Session, _utcnow
from mergeloop.providers.base import IssueProvider, supports_actions

log = structlog.get_logger(__name__)

TICK_GRACE_SECONDS = 5.0


@dataclass
class TickReport:
    """Session IDs grouped by what happened to them during one tick."""

    advanced: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    finalized: list[str] = field(default_factory=list)
    admitted: list[str] = field(default_factory=list)


class SessionScheduler:
    """Advance sessions and admit new work on a fixed interval.

    Example:
        >>> scheduler = SessionScheduler(settings, graph, engine, store, git, context)
        >>> report = await scheduler.run_once()
        >>> report.advanced
        ['github-42-3f9a1c2b']
    """

    def __init__(
        self,
        settings: MergeLoopSettings,
        graph: WorkflowGraph,
        engine: WorkflowEngine,
        store: SessionStore,
        git: GitService,
        context: RuntimeContext,
    ) -> None:
        self.settings = settings
        self.graph = graph
        self.engine = engine
        self.store = store
        self.git = git
        self.context = context
        self._semaphore = asyncio.Semaphore(settings.daemon.max_concurrent_advances)
        self._disabled_sources: set[tuple[str, IssueSource]] = set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, interval: float | None = None) -> None:
        """Tick forever, sleeping ``interval`` seconds between ticks."""
        interval = interval if interval is not None else self.settings.daemon.poll_interval
        log.info(
            "scheduler_started",
            interval=interval,
            states=len(self.graph),
            repos=len(self.settings.repos),
        )
        while True:
            await self.run_once()
            await asyncio.sleep(interval)

    async def run_once(self) -> TickReport | None:
        """Run a single tick under the configured tick timeout.

        Returns:
            The tick report, or None if the tick was cancelled at its
            deadline (in which case no in-flight step was persisted)
        """
        timeout = self.settings.daemon.tick_timeout
        deadline = asyncio.get_running_loop().time() + timeout
        try:
            return await asyncio.wait_for(self.tick(deadline), timeout=timeout + TICK_GRACE_SECONDS)
        except TimeoutError:
            log.error("tick_timed_out", timeout=timeout)
            return None

    async def tick(self, deadline: float | None = None) -> TickReport:
        """Advance every active session once, then admit new work."""
        if deadline is None:
            deadline = asyncio.get_running_loop().time() + self.settings.daemon.tick_timeout

        report = TickReport()
        await self._deliver_messages()

        sessions = await self.store.list_active()
        outcomes = await asyncio.gather(
            *(self._advance_one(session.id, deadline) for session in sessions),
            return_exceptions=True,
        )
        for session, outcome in zip(sessions, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                log.error("session_tick_failed", session_id=session.id, error=str(outcome))
                report.failed.append(session.id)
            elif outcome is not None:
                getattr(report, outcome).append(session.id)

        report.admitted = [session.id for session in await self.admit_new_work()]

        totals = self.context.spend.totals()
        log.info(
            "tick_completed",
            advanced=len(report.advanced),
            skipped=len(report.skipped),
            failed=len(report.failed),
            finalized=len(report.finalized),
            admitted=len(report.admitted),
            spend_usd=round(totals.cost_usd, 4),
            agent_calls=totals.calls,
        )
        return report

    async def _deliver_messages(self) -> None:
        messages = await self.store.drain_messages()
        if not messages:
            return
        active = {session.id for session in await self.store.list_active()}
        for session_id, message in messages.items():
            if session_id not in active:
                log.warning("operator_message_dropped", session_id=session_id, reason="no active session")
                continue
            self.context.set_pending_message(session_id, message)
            log.info("operator_message_delivered", session_id=session_id)

    # ------------------------------------------------------------------
    # Advancement
    # ------------------------------------------------------------------

    async def _advance_one(self, session_id: str, deadline: float) -> str | None:
        """Advance one session; return the report bucket it belongs in."""
        lock = self.store.lock(session_id)
        if lock.locked():
            log.debug("session_busy", session_id=session_id)
            return "skipped"

        async with self._semaphore:
            if lock.locked():
                log.debug("session_busy", session_id=session_id)
                return "skipped"
            async with lock:
                session = await self.store.load(session_id)
                if session is None:
                    return None
                if self.graph.is_terminal(session.current_state):
                    await self.finalize(session)
                    return "finalized"

                try:
                    step = await self.engine.advance(session, deadline)
                except GraphError as e:
                    log.error("session_state_unknown", session_id=session_id, state=e.state, error=e.message)
                    await self.finalize(await self._fail(session, ErrorKind.GRAPH, e.message))
                    return "failed"
                except ConfigurationError as e:
                    log.error("session_step_invalid", session_id=session_id, error=e.message)
                    await self.finalize(await self._fail(session, ErrorKind.CONFIGURATION, e.message))
                    return "failed"
                except Exception:
                    log.exception("session_advance_crashed", session_id=session_id)
                    return "failed"

                if self.graph.is_terminal(step.to_state):
                    await self.finalize(step.session)
                    return "finalized"
                return "advanced"

    async def _fail(self, session: Session, kind: ErrorKind, message: str) -> Session:
        failed = session.model_copy(deep=True)
        failed.record_error(kind, message)
        now = _utcnow()
        failed.current_state = self.graph.failure_state
        failed.attempt = 0
        failed.state_entered_at = now
        failed.completed_at = now
        failed.updated_at = now
        await self.store.save(failed)
        return failed

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def finalize(self, session: Session) -> None:
        """Write back to the tracker, then clean up and archive the session."""
        if session.parent_id is None:
            await self._write_back(session)
        await self.cleanup(session)

    async def cleanup(self, session: Session) -> None:
        """Archive the session after removing its worktree.

        Any unread pending message is dropped with it. Callers must hold the
        session's store lock.
        """
        if session.workspace_path:
            try:
                await self.git.remove_worktree(session.repo_path, session.workspace_path)
            except GitOperationError as e:
                log.warning("worktree_cleanup_failed", session_id=session.id, error=str(e))
        await self.store.archive(session)
        self.store.forget(session.id)
        self.context.discard_pending_message(session.id)

    async def _write_back(self, session: Session) -> None:
        issue = session.issue
        if issue is None or issue.source not in self.context.providers:
            return
        provider = self.context.providers.get(issue.source)
        if not supports_actions(provider):
            return

        ref = issue.provider_ref or issue.id
        succeeded = session.current_state != self.graph.failure_state
        try:
            if succeeded:
                label = self._source_label(session.repo_path, issue.source)
                if label:
                    await provider.remove_label(session.repo_path, ref, label)
                await provider.comment(session.repo_path, ref, _completion_comment(session))
            else:
                await provider.comment(session.repo_path, ref, _failure_comment(session))
        except ProviderError as e:
            log.warning("provider_writeback_failed", session_id=session.id, provider=provider.name(), error=str(e))

    def _source_label(self, repo_path: str, source: IssueSource) -> str:
        repo = self.settings.repo(repo_path)
        if repo is None:
            return ""
        for configured in repo.sources:
            if configured.provider is source:
                return configured.label
        return ""

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def admit_new_work(self) -> list[Session]:
        """Create sessions for new issues while below the active limit.

        Returns:
            Sessions created during this call
        """
        capacity = self.settings.daemon.max_active_sessions - len(await self.store.list_active())
        if capacity <= 0:
            log.debug("intake_paused", max_active=self.settings.daemon.max_active_sessions)
            return []

        known = await self.store.known_issue_keys()
        created: list[Session] = []
        for repo in self.settings.repos:
            for source in repo.sources:
                if len(created) >= capacity:
                    return created
                provider = self._provider_for(repo, source)
                if provider is None:
                    continue
                for issue in await self._poll(provider, repo, source):
                    if len(created) >= capacity:
                        break
                    if issue.key in known:
                        continue
                    session = await self._start_session(repo, provider, issue)
                    if session is not None:
                        known.add(issue.key)
                        created.append(session)
        return created

    def _provider_for(self, repo: RepoConfig, source: SourceConfig) -> IssueProvider | None:
        if source.provider not in self.context.providers:
            log.warning("provider_not_registered", repo=repo.path, source=source.provider.value)
            return None
        provider = self.context.providers.get(source.provider)

        key = (repo.path, source.provider)
        if key in self._disabled_sources:
            if not provider.is_configured(repo.path):
                return None
            self._disabled_sources.discard(key)
            log.info("provider_reenabled", repo=repo.path, provider=provider.name())
        return provider

    async def _poll(self, provider: IssueProvider, repo: RepoConfig, source: SourceConfig) -> list[Issue]:
        try:
            return await asyncio.wait_for(
                provider.fetch_issues(repo.path, source.filter()),
                timeout=self.settings.daemon.provider_timeout,
            )
        except CredentialError as e:
            self._disabled_sources.add((repo.path, source.provider))
            log.error("provider_credentials_missing", repo=repo.path, provider=provider.name(), error=e.message)
        except ProviderError as e:
            log.warning("provider_poll_failed", repo=repo.path, provider=provider.name(), error=str(e))
        except TimeoutError:
            log.warning("provider_poll_timed_out", repo=repo.path, provider=provider.name())
        return []

    async def _start_session(self, repo: RepoConfig, provider: IssueProvider, issue: Issue) -> Session | None:
        branch = provider.generate_branch_name(issue)
        try:
            workspace = await self.git.create_worktree(
                repo.path,
                branch,
                worktree_root=repo.worktree_root,
                base_branch=self.settings.merge.base_branch,
            )
        except GitOperationError as e:
            log.error("worktree_create_failed", repo=repo.path, issue_key=issue.key, error=str(e))
            return None

        session = Session(
            id=new_session_id(issue.source.value, issue.id),
            repo_path=repo.path,
            branch=branch,
            issue_key=issue.key,
            issue=issue,
            workspace_path=str(workspace),
            current_state=self.graph.initial_state,
        )
        return await self.store.create(session)


def _completion_comment(session: Session) -> str:
    if session.pr_merged and session.pr_url:
        return f"Merged in {session.pr_url}"
    if session.pr_url:
        return f"Pull request: {session.pr_url}"
    return f"Work on branch `{session.branch}` is complete."


def _failure_comment(session: Session) -> str:
    reason = session.last_error.message if session.last_error else "unknown error"
    return f"Automated work on branch `{session.branch}` stopped: {reason}"
