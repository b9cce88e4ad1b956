"""
Single-step workflow engine.

``WorkflowEngine.advance`` moves one session exactly one step through the
compiled ``WorkflowGraph``:

1. Terminal states are a no-op; choice states pick a branch and transition.
2. Before-hooks run on first entry to a state (attempt 0).
3. The primary action runs, bounded by the state's timeout and the tick
   deadline. Actions registered as message consumers take the pending
   message first; for any other action it stays queued.
4. ``WAIT`` keeps the session in place (attempt + 1) unless the state's
   timeout has elapsed since it was entered.
5. After-hooks run on success only.
6. The next state is resolved from the outcome and the working copy is
   persisted.

All mutation happens on a deep copy of the session. Persisting it is the
last thing a step does, so a step cancelled by the tick deadline leaves the
stored record exactly as it was and the next tick redoes the step.
Step-local failures never escape ``advance``; they are routed through the
state's error and timeout edges and recorded in ``Session.last_error``.
``GraphError`` (unknown state) and ``ConfigurationError`` (no choice branch
matched) do escape, and the scheduler routes the session to failure.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass

import structlog

from mergeloop.config.workflow import HookConfig
from mergeloop.engine.actions import ActionContext, ActionRegistry
from mergeloop.engine.graph import StateConfig, WorkflowGraph
from mergeloop.engine.hooks import HookRunner, effective_timeout
from mergeloop.engine.host import Host
from mergeloop.engine.merge import MergeAutomation
from mergeloop.engine.session_store import SessionStore
from mergeloop.enums import ActionOutcome, ErrorKind, HookOutcome, TransitionKind
from mergeloop.exceptions import ConfigurationError, HookError, HookTimeoutError, ProviderError
from mergeloop.models.domain import ActionResult, HookResult, Session, _utcnow
from mergeloop.providers.registry import ProviderRegistry

log = structlog.get_logger(__name__)


@dataclass
class StepResult:
    """What one call to ``advance`` did."""

    session: Session
    """The persisted session after the step (the input session for no-ops)."""

    from_state: str
    to_state: str
    outcome: ActionOutcome | None = None
    """Outcome of the primary action; None for choice steps and no-ops."""

    via: TransitionKind | None = None
    """Edge taken; None when the session stayed in place."""

    persisted: bool = False

    @property
    def transitioned(self) -> bool:
        return self.from_state != self.to_state


class WorkflowEngine:
    """Advance sessions through a shared, read-only workflow graph.

    Args:
        graph: Validated workflow graph
        actions: Registry resolving each state's ``action`` name
        host: Services and settings exposed to actions
        store: Where the working copy is persisted at the end of each step
        hooks: Hook runner (a default one is created when omitted)
        providers: Issue providers, made available to actions

    Raises:
        ConfigurationError: If a state names an action that is not registered
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        actions: ActionRegistry,
        host: Host,
        store: SessionStore,
        hooks: HookRunner | None = None,
        providers: ProviderRegistry | None = None,
    ) -> None:
        check_actions(graph, actions)
        self.graph = graph
        self.actions = actions
        self.host = host
        self.store = store
        self.hooks = hooks or HookRunner()
        self.providers = providers
        self.merge = MergeAutomation(host)

    async def advance(self, session: Session, deadline: float | None = None) -> StepResult:
        """Advance a session by exactly one step.

        Args:
            session: Session as last persisted; it is not mutated
            deadline: Absolute ``loop.time()`` by which the step must finish

        Returns:
            StepResult describing the transition taken

        Raises:
            GraphError: If the session's state is not part of the graph
            ConfigurationError: If a choice state has no matching branch
                and no default
        """
        with structlog.contextvars.bound_contextvars(session_id=session.id, state=session.current_state):
            cfg = self.graph.state(session.current_state)
            if cfg.is_terminal:
                return StepResult(session, cfg.name, cfg.name)

            working = session.model_copy(deep=True)
            if cfg.is_choice:
                target, label = self.graph.evaluate_choice(cfg, working.snapshot())
                via = TransitionKind.DEFAULT if label == "default" and target == cfg.default else TransitionKind.CHOICE
                log.debug("choice_taken", branch=label, target=target)
                return await self._commit(working, cfg, target, via)

            env = self._hook_env(working, cfg)

            if working.attempt == 0 and cfg.before:
                try:
                    await self._run_hooks(cfg.before, working, env, deadline)
                except HookError as e:
                    return await self._route_hook_failure(working, cfg, e, "before")

            result = await self._run_action(working, cfg, env, deadline)
            working.data = dict(result.data)
            return await self._resolve(working, cfg, result, env, deadline)

    # ------------------------------------------------------------------
    # Primary action
    # ------------------------------------------------------------------

    async def _run_action(
        self,
        working: Session,
        cfg: StateConfig,
        env: Mapping[str, str],
        deadline: float | None,
    ) -> ActionResult:
        if cfg.run:
            hook = await self.hooks.run_command(
                cfg.run, cwd=working.workdir, env=env, timeout=cfg.timeout, deadline=deadline
            )
            return _from_hook(hook)
        if not cfg.action:
            return ActionResult.success()

        action = self.actions.get(cfg.action)
        message = self.host.get_pending_message(working.id) if self.actions.consumes_message(cfg.action) else ""
        ctx = ActionContext(
            session=working,
            state=cfg,
            host=self.host,
            merge=self.merge,
            attempt=working.attempt + 1,
            message=message,
            providers=self.providers,
            params=dict(cfg.params),
        )
        limit = effective_timeout(cfg.timeout, deadline)

        try:
            return await asyncio.wait_for(action(ctx), timeout=limit)
        except TimeoutError:
            log.warning("action_timed_out", action=cfg.action, timeout=limit)
            return ActionResult(
                ActionOutcome.TIMEOUT,
                error=f"action '{cfg.action}' timed out",
                error_kind=ErrorKind.TIMEOUT,
            )
        except asyncio.CancelledError:
            if message:
                self.host.set_pending_message(working.id, message)
            raise
        except ProviderError as e:
            log.warning("action_provider_error", action=cfg.action, error=str(e))
            return ActionResult.failure(str(e), kind=ErrorKind.PROVIDER)
        except Exception as e:
            log.exception("action_raised", action=cfg.action)
            return ActionResult.failure(f"{type(e).__name__}: {e}")

    async def _resolve(
        self,
        working: Session,
        cfg: StateConfig,
        result: ActionResult,
        env: Mapping[str, str],
        deadline: float | None,
    ) -> StepResult:
        outcome = result.outcome

        if outcome is ActionOutcome.SIGNAL:
            target = cfg.signals.get(result.signal or "")
            if target is not None:
                log.info("signal_received", signal=result.signal, target=target)
                return await self._commit(working, cfg, target, TransitionKind.SIGNAL, outcome)
            log.warning("unknown_signal", signal=result.signal)
            outcome = ActionOutcome.WAIT

        if outcome is ActionOutcome.WAIT:
            if cfg.timeout is not None:
                waited = (_utcnow() - working.state_entered_at).total_seconds()
                if waited >= cfg.timeout:
                    log.warning("state_wait_timed_out", waited=round(waited), timeout=cfg.timeout)
                    working.record_error(ErrorKind.TIMEOUT, f"state '{cfg.name}' timed out after {round(waited)}s")
                    return await self._commit(
                        working, cfg, self.graph.timeout_target(cfg), TransitionKind.TIMEOUT, outcome
                    )
            return await self._commit(working, cfg, cfg.name, None, outcome)

        if outcome is ActionOutcome.TIMEOUT:
            working.record_error(result.error_kind or ErrorKind.TIMEOUT, result.error or "action timed out")
            return await self._commit(working, cfg, self.graph.timeout_target(cfg), TransitionKind.TIMEOUT, outcome)

        if outcome is ActionOutcome.FAILURE:
            working.record_error(result.error_kind or ErrorKind.ACTION_ERROR, result.error or "action failed")
            return await self._commit(working, cfg, self.graph.error_target(cfg), TransitionKind.ERROR, outcome)

        if cfg.after:
            try:
                await self._run_hooks(cfg.after, working, env, deadline)
            except HookError as e:
                return await self._route_hook_failure(working, cfg, e, "after")

        return await self._commit(working, cfg, cfg.next or cfg.name, TransitionKind.NEXT, outcome)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def _run_hooks(
        self,
        hooks: tuple[HookConfig, ...],
        working: Session,
        env: Mapping[str, str],
        deadline: float | None,
    ) -> None:
        """Run hooks in order, stopping at the first one that does not succeed.

        Raises:
            HookTimeoutError: If a hook ran past its timeout or the tick deadline
            HookError: If a hook exited non-zero or could not be started
        """
        for hook in hooks:
            result = await self.hooks.run(hook, cwd=working.workdir, env=env, deadline=deadline)
            if result.succeeded:
                continue
            message = result.error or result.outcome.value
            if result.outcome is HookOutcome.TIMEOUT:
                raise HookTimeoutError(message, output=result.output)
            raise HookError(message, output=result.output)

    async def _route_hook_failure(self, working: Session, cfg: StateConfig, error: HookError, phase: str) -> StepResult:
        detail = error.message
        if error.output:
            detail = f"{detail}\n{error.output[-2000:]}"

        if isinstance(error, HookTimeoutError):
            working.record_error(ErrorKind.HOOK_TIMEOUT, f"{phase} hook: {detail}")
            return await self._commit(working, cfg, self.graph.timeout_target(cfg), TransitionKind.TIMEOUT)

        working.record_error(ErrorKind.HOOK_FAILURE, f"{phase} hook: {detail}")
        return await self._commit(working, cfg, self.graph.error_target(cfg), TransitionKind.ERROR)

    def _hook_env(self, working: Session, cfg: StateConfig) -> dict[str, str]:
        env = {
            "MERGELOOP_SESSION_ID": working.id,
            "MERGELOOP_STATE": cfg.name,
            "MERGELOOP_BRANCH": working.branch,
            "MERGELOOP_REPO_PATH": working.repo_path,
            "MERGELOOP_WORKDIR": working.workdir,
            "MERGELOOP_ATTEMPT": str(working.attempt),
        }
        if working.pr_url:
            env["MERGELOOP_PR_URL"] = working.pr_url
        return env

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def _commit(
        self,
        working: Session,
        cfg: StateConfig,
        target: str,
        via: TransitionKind | None,
        outcome: ActionOutcome | None = None,
    ) -> StepResult:
        now = _utcnow()
        if target == cfg.name:
            working.attempt += 1
        else:
            working.current_state = target
            working.attempt = 0
            working.state_entered_at = now
        if self.graph.is_terminal(target):
            working.completed_at = now
        working.updated_at = now

        await self.store.save(working)

        log.info(
            "session_advanced",
            from_state=cfg.name,
            to_state=target,
            outcome=outcome.value if outcome else None,
            via=via.value if via else None,
            attempt=working.attempt,
        )
        return StepResult(working, cfg.name, target, outcome, via, persisted=True)


def _from_hook(hook: HookResult) -> ActionResult:
    if hook.outcome is HookOutcome.SUCCESS:
        return ActionResult(ActionOutcome.SUCCESS, output=hook.output)
    if hook.outcome is HookOutcome.TIMEOUT:
        return ActionResult(ActionOutcome.TIMEOUT, error=hook.error, error_kind=ErrorKind.TIMEOUT, output=hook.output)
    return ActionResult(ActionOutcome.FAILURE, error=hook.error, error_kind=ErrorKind.ACTION_ERROR, output=hook.output)


def check_actions(graph: WorkflowGraph, actions: ActionRegistry) -> None:
    """Ensure every ``action`` named by the graph is registered.

    Raises:
        ConfigurationError: On the first unknown action
    """
    for cfg in graph:
        if cfg.action and cfg.action not in actions:
            raise ConfigurationError(f"State '{cfg.name}' uses unknown action '{cfg.action}'")
