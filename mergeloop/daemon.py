"""
Daemon assembly and the ``Host`` implementation.

``Daemon`` wires settings, the runtime context, the session store, the git
service, the compiled workflow graph, the engine and the scheduler together,
and serves as the ``Host`` that workflow actions talk to.
"""

from typing import Any

import structlog

from mergeloop.agents.runner import AgentRunner, CLIAgentRunner
from mergeloop.config.settings import MergeLoopSettings
from mergeloop.engine.actions import ActionRegistry, builtin_actions
from mergeloop.engine.context import RuntimeContext
from mergeloop.engine.graph import WorkflowGraph
from mergeloop.engine.hooks import HookRunner
from mergeloop.engine.host import Host
from mergeloop.engine.scheduler import SessionScheduler, TickReport
from mergeloop.engine.session_store import SessionStore, new_session_id
from mergeloop.engine.workflow_engine import WorkflowEngine
from mergeloop.exceptions import WorkflowError
from mergeloop.git.service import GitService
from mergeloop.models.domain import Issue, Session, SessionInfo
from mergeloop.providers.registry import ProviderRegistry
from mergeloop.utils.slug import slugify

log = structlog.get_logger(__name__)


class Daemon(Host):
    """The long-running mergeloop process.

    Args:
        settings: Loaded settings
        context: Process-wide runtime state; built from ``settings`` when omitted
        store: Session store; rooted at ``state_directory`` or the resolved
            data directory when omitted
        git: Git service
        agent_runner: Runner used by ``agent.code``
        actions: Action registry; the built-ins when omitted
        hooks: Hook runner

    Raises:
        ConfigurationError: If the workflow is invalid or names an unknown action
    """

    def __init__(
        self,
        settings: MergeLoopSettings,
        context: RuntimeContext | None = None,
        store: SessionStore | None = None,
        git: GitService | None = None,
        agent_runner: AgentRunner | None = None,
        actions: ActionRegistry | None = None,
        hooks: HookRunner | None = None,
    ) -> None:
        self.settings = settings
        self.context = context or RuntimeContext(providers=ProviderRegistry.from_settings(settings))
        self.store = store or SessionStore(settings.state_directory or self.context.paths.data_dir)
        self.git = git or GitService(query_timeout=settings.daemon.provider_timeout)
        self.graph = WorkflowGraph.from_definition(settings.workflow_definition())

        runner = agent_runner or CLIAgentRunner(settings.agent.command)
        self.actions = actions or builtin_actions(runner)
        self.engine = WorkflowEngine(self.graph, self.actions, self, self.store, hooks, self.context.providers)
        self.scheduler = SessionScheduler(settings, self.graph, self.engine, self.store, self.git, self.context)
        self._log = log.bind(component="daemon")

    async def run(self, interval: float | None = None) -> None:
        await self.scheduler.run(interval)

    async def run_once(self) -> TickReport | None:
        return await self.scheduler.run_once()

    # ------------------------------------------------------------------
    # Host
    # ------------------------------------------------------------------

    def config(self) -> MergeLoopSettings:
        return self.settings

    def git_service(self) -> GitService:
        return self.git

    def get_pending_message(self, session_id: str) -> str:
        return self.context.consume_pending_message(session_id)

    def set_pending_message(self, session_id: str, message: str) -> None:
        self.context.set_pending_message(session_id, message)

    def logger(self) -> Any:
        return self._log

    def max_turns(self) -> int:
        return self.settings.agent.max_turns

    def max_duration(self) -> int:
        return self.settings.agent.max_duration

    def auto_merge(self) -> bool:
        return self.settings.merge.auto_merge

    def merge_method(self) -> str:
        return self.settings.merge.method

    def auto_address_pr_comments(self) -> bool:
        return self.settings.merge.auto_address_comments

    async def create_child_session(self, supervisor_id: str, task: str) -> SessionInfo:
        """Start a sub-task session branched from the supervisor's branch.

        Raises:
            WorkflowError: If the supervisor session does not exist
        """
        parent = await self.store.load(supervisor_id)
        if parent is None:
            raise WorkflowError(f"Supervisor session {supervisor_id} not found")

        suffix = slugify(task, max_length=24) or "task"
        branch = f"{parent.branch}-{suffix}"
        repo = self.settings.repo(parent.repo_path)
        workspace = await self.git.create_worktree(
            parent.repo_path,
            branch,
            worktree_root=repo.worktree_root if repo else None,
            base_branch=parent.branch,
        )

        source = parent.issue.source.value if parent.issue else "task"
        child_id = new_session_id(source, suffix)
        issue = None
        if parent.issue is not None:
            title = task.strip().splitlines()[0][:80] if task.strip() else suffix
            issue = Issue(id=child_id, title=title, body=task, url="", source=parent.issue.source)

        child = Session(
            id=child_id,
            repo_path=parent.repo_path,
            branch=branch,
            issue=issue,
            parent_id=parent.id,
            workspace_path=str(workspace),
            current_state=self.graph.initial_state,
        )
        await self.store.create(child)
        if issue is None:
            self.set_pending_message(child.id, task)
        self._log.info("child_session_created", supervisor_id=supervisor_id, session_id=child.id, branch=branch)
        return SessionInfo(id=child.id, branch=branch)

    async def cleanup_session(self, session_id: str) -> None:
        # An in-flight step holds the lock until it has committed.
        async with self.store.lock(session_id):
            session = await self.store.load(session_id)
            if session is None:
                return
            await self.scheduler.cleanup(session)

    async def save_runner_messages(self, session_id: str, transcript: list[dict[str, Any]]) -> None:
        path = await self.store.save_transcript(session_id, transcript)
        self._log.debug("transcript_saved", session_id=session_id, path=str(path), messages=len(transcript))

    def is_worker_running(self, session_id: str) -> bool:
        return self.store.is_locked(session_id)

    def record_spend(self, cost_usd: float, output_tokens: int, input_tokens: int) -> None:
        totals = self.context.record_spend(cost_usd, output_tokens, input_tokens)
        self._log.info(
            "spend_recorded",
            cost_usd=cost_usd,
            total_cost_usd=round(totals.cost_usd, 4),
            total_output_tokens=totals.output_tokens,
        )
