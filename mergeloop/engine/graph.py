"""
Compiled, validated workflow graph.

``WorkflowGraph`` is built once from a ``WorkflowDefinition`` at daemon start
and shared read-only by every concurrently advancing session. Construction
validates every structural rule eagerly and raises
``ConfigurationError`` on the first violation; unreachable states are only
reported as advisory warnings.

Rules enforced:
    - The initial state exists and exactly one is designated.
    - At least one terminal state exists; the failure state is terminal.
    - Every edge (next, error, timeout, choice, default, signal) targets a
      known state.
    - Every non-terminal, non-choice state has exactly one ``next``.
    - Choice states have ordered predicate branches and no ``next``.
    - Terminal states have no outgoing edges.

States without an explicit ``error`` edge implicitly error to the graph's
failure state.
"""

from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import structlog

from mergeloop.config.workflow import ChoiceConfig, HookConfig, StateDefinition, WorkflowDefinition
from mergeloop.enums import StateKind, TransitionKind
from mergeloop.exceptions import ConfigurationError, GraphError

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Transition:
    """One outgoing edge of a state."""

    kind: TransitionKind
    target: str
    label: str = ""
    implicit: bool = False
    """True for error edges inherited from the graph's failure state."""


@dataclass(frozen=True)
class StateConfig:
    """Immutable configuration of one compiled state."""

    name: str
    kind: StateKind
    action: str | None = None
    run: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    before: tuple[HookConfig, ...] = ()
    after: tuple[HookConfig, ...] = ()
    next: str | None = None
    error: str | None = None
    timeout: float | None = None
    timeout_next: str | None = None
    choices: tuple[ChoiceConfig, ...] = ()
    default: str | None = None
    signals: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.kind is StateKind.TERMINAL

    @property
    def is_choice(self) -> bool:
        return self.kind is StateKind.CHOICE

    @classmethod
    def from_definition(cls, name: str, definition: StateDefinition) -> "StateConfig":
        return cls(
            name=name,
            kind=definition.resolved_kind(),
            action=definition.action,
            run=definition.run,
            params=MappingProxyType(dict(definition.params)),
            before=tuple(definition.before),
            after=tuple(definition.after),
            next=definition.next,
            error=definition.error,
            timeout=definition.timeout,
            timeout_next=definition.timeout_next,
            choices=tuple(definition.choices),
            default=definition.default,
            signals=MappingProxyType(dict(definition.signals)),
        )


class WorkflowGraph:
    """Immutable state machine shared by all sessions.

    Use ``WorkflowGraph.from_definition`` to build one; the constructor
    assumes its input has already been validated.

    Example:
        >>> graph = WorkflowGraph.from_definition(default_workflow())
        >>> graph.initial_state
        'coding'
        >>> graph.is_terminal("done")
        True
    """

    def __init__(
        self,
        states: Mapping[str, StateConfig],
        initial_state: str,
        failure_state: str,
        warnings: tuple[str, ...] = (),
    ) -> None:
        self._states = MappingProxyType(dict(states))
        self._initial_state = initial_state
        self._failure_state = failure_state
        self._warnings = warnings

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "WorkflowGraph":
        """Compile and validate a workflow definition.

        Args:
            definition: Parsed workflow configuration

        Returns:
            A validated, immutable graph

        Raises:
            ConfigurationError: If any structural rule is violated
        """
        if not definition.states:
            raise ConfigurationError("Workflow defines no states")

        states = {name: StateConfig.from_definition(name, state) for name, state in definition.states.items()}

        if not definition.start:
            raise ConfigurationError("Workflow has no initial state")
        if definition.start not in states:
            raise ConfigurationError(f"Initial state '{definition.start}' is not defined")

        terminals = [name for name, cfg in states.items() if cfg.is_terminal]
        if not terminals:
            raise ConfigurationError("Workflow has no terminal state")

        failure = states.get(definition.failure_state)
        if failure is None:
            raise ConfigurationError(f"Failure state '{definition.failure_state}' is not defined")
        if not failure.is_terminal:
            raise ConfigurationError(f"Failure state '{definition.failure_state}' must be terminal")

        for cfg in states.values():
            _validate_state(cfg, states)

        graph = cls(states, definition.start, definition.failure_state)
        unreachable = graph._unreachable_states()
        if unreachable:
            warnings = tuple(f"State '{name}' is unreachable from '{definition.start}'" for name in unreachable)
            log.warning("workflow_unreachable_states", states=unreachable)
            graph = cls(states, definition.start, definition.failure_state, warnings)
        return graph

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def initial_state(self) -> str:
        return self._initial_state

    @property
    def failure_state(self) -> str:
        return self._failure_state

    @property
    def terminal_states(self) -> list[str]:
        return [name for name, cfg in self._states.items() if cfg.is_terminal]

    @property
    def warnings(self) -> tuple[str, ...]:
        """Advisory validation findings (unreachable states)."""
        return self._warnings

    def lookup(self, name: str) -> tuple[StateConfig | None, bool]:
        """Return ``(config, found)`` for a state name."""
        cfg = self._states.get(name)
        return cfg, cfg is not None

    def state(self, name: str) -> StateConfig:
        """Return the config for a state.

        Raises:
            GraphError: If the state is not part of this graph
        """
        cfg = self._states.get(name)
        if cfg is None:
            raise GraphError(f"Unknown workflow state '{name}'", state=name)
        return cfg

    def is_terminal(self, name: str) -> bool:
        cfg = self._states.get(name)
        return cfg is not None and cfg.is_terminal

    def __contains__(self, name: object) -> bool:
        return name in self._states

    def __iter__(self) -> Iterator[StateConfig]:
        return iter(self._states.values())

    def __len__(self) -> int:
        return len(self._states)

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def error_target(self, cfg: StateConfig) -> str:
        """Explicit error edge, or the graph's failure state."""
        return cfg.error or self._failure_state

    def timeout_target(self, cfg: StateConfig) -> str:
        """Timeout edge, falling back to the error edge."""
        return cfg.timeout_next or self.error_target(cfg)

    def transitions(self, cfg: StateConfig) -> list[Transition]:
        """All outgoing edges of a state in a stable order.

        Order: next, choice branches, default, signals, timeout, error.
        """
        if cfg.is_terminal:
            return []

        edges: list[Transition] = []
        if cfg.next:
            edges.append(Transition(TransitionKind.NEXT, cfg.next))
        for choice in cfg.choices:
            edges.append(Transition(TransitionKind.CHOICE, choice.next, choice.display_label))
        if cfg.default:
            edges.append(Transition(TransitionKind.DEFAULT, cfg.default, "default"))
        for signal, target in cfg.signals.items():
            edges.append(Transition(TransitionKind.SIGNAL, target, signal))
        if cfg.timeout is not None and cfg.timeout_next:
            edges.append(Transition(TransitionKind.TIMEOUT, cfg.timeout_next))
        if not cfg.is_choice:
            edges.append(Transition(TransitionKind.ERROR, self.error_target(cfg), implicit=cfg.error is None))
        return edges

    def evaluate_choice(self, cfg: StateConfig, snapshot: dict[str, Any]) -> tuple[str, str]:
        """Pick the branch of a choice state for the given snapshot.

        Branches are evaluated in declared order and the first match wins.
        More than one match is logged as ambiguous.

        Args:
            cfg: A choice state
            snapshot: Session fields merged with the last action's data

        Returns:
            Tuple of (target state, branch label)

        Raises:
            ConfigurationError: If no branch matches and there is no default
        """
        matched = [choice for choice in cfg.choices if choice.matches(snapshot)]
        if len(matched) > 1:
            log.warning(
                "choice_ambiguous",
                state=cfg.name,
                branches=[choice.display_label for choice in matched],
                taken=matched[0].display_label,
            )
        if matched:
            return matched[0].next, matched[0].display_label
        if cfg.default:
            return cfg.default, "default"
        raise ConfigurationError(f"No branch of choice state '{cfg.name}' matched and no default is defined")

    def _unreachable_states(self) -> list[str]:
        seen = {self._initial_state}
        queue = deque([self._initial_state])
        while queue:
            cfg = self._states[queue.popleft()]
            for edge in self.transitions(cfg):
                if edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return [name for name in self._states if name not in seen]


def _validate_state(cfg: StateConfig, states: Mapping[str, StateConfig]) -> None:
    def check_target(target: str | None, edge: str) -> None:
        if target is not None and target not in states:
            raise ConfigurationError(f"State '{cfg.name}' {edge} transition targets unknown state '{target}'")

    if cfg.action and cfg.run:
        raise ConfigurationError(f"State '{cfg.name}' sets both 'action' and 'run'")

    if cfg.is_terminal:
        if cfg.next or cfg.choices or cfg.default or cfg.signals or cfg.timeout_next or cfg.error:
            raise ConfigurationError(f"Terminal state '{cfg.name}' must not have outgoing transitions")
        return

    if cfg.choices and not cfg.is_choice:
        raise ConfigurationError(f"State '{cfg.name}' has choices but kind '{cfg.kind.value}'")

    if cfg.is_choice:
        if cfg.next:
            raise ConfigurationError(f"Choice state '{cfg.name}' must not have a 'next' transition")
        if not cfg.choices:
            raise ConfigurationError(f"Choice state '{cfg.name}' has no branches")
        if cfg.action or cfg.run or cfg.before or cfg.after:
            raise ConfigurationError(f"Choice state '{cfg.name}' must not run hooks or actions")
        for index, choice in enumerate(cfg.choices):
            if choice.operator is None:
                raise ConfigurationError(f"Choice state '{cfg.name}' branch {index} has no operator")
            check_target(choice.next, "choice")
        check_target(cfg.default, "default")
        return

    if not cfg.next:
        raise ConfigurationError(f"State '{cfg.name}' has no 'next' transition")
    check_target(cfg.next, "next")
    check_target(cfg.error, "error")
    check_target(cfg.timeout_next, "timeout")
    if cfg.timeout_next and cfg.timeout is None:
        raise ConfigurationError(f"State '{cfg.name}' sets 'timeout_next' without a timeout")
    for signal, target in cfg.signals.items():
        check_target(target, f"signal '{signal}'")
