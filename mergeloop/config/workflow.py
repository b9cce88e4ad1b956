"""
Declarative workflow definitions.

A workflow is plain data: a set of named states, each with optional before-
and after-hooks, a primary action, and outgoing transitions. These pydantic
models describe the *configuration* shape (as read from YAML); the engine
compiles them into an immutable, validated ``WorkflowGraph``.

Example YAML::

    workflow:
      start: coding
      states:
        coding:
          action: agent.code
          before:
            - run: git fetch origin
          after:
            - run: make lint
              timeout: 5m
          next: open_pr
        await_ci:
          kind: wait
          action: merge.await_ci
          timeout: 2h
          timeout_next: failed
          next: check_ci_result
        check_ci_result:
          choices:
            - variable: ci_status
              equals: passing
              next: merge
          default: failed
        done: {}
        failed: {}
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from mergeloop.enums import StateKind
from mergeloop.utils.durations import parse_duration

CHOICE_OPERATORS = ("equals", "not_equals", "one_of", "is_set")


class HookConfig(BaseModel):
    """A shell snippet run before or after a state's primary action.

    A bare string in YAML is accepted as shorthand for ``{run: <string>}``.
    """

    run: str = Field(..., min_length=1, description="Shell command to execute")
    timeout: float | None = Field(default=None, description="Seconds, or a duration string such as '5m'")

    @model_validator(mode="before")
    @classmethod
    def _coerce_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"run": value}
        return value

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float | None:
        if value is None:
            return None
        return parse_duration(value)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class ChoiceConfig(BaseModel):
    """One predicate branch of a choice state.

    Exactly one operator (``equals``, ``not_equals``, ``one_of`` or
    ``is_set``) should be given; the graph rejects branches without one.
    """

    variable: str = Field(..., min_length=1)
    equals: Any = None
    not_equals: Any = None
    one_of: list[Any] | None = None
    is_set: bool | None = None
    next: str
    label: str | None = None

    @property
    def operator(self) -> str | None:
        """Name of the configured operator, or None when absent."""
        for name in CHOICE_OPERATORS:
            if name in self.model_fields_set:
                return name
        return None

    @property
    def display_label(self) -> str:
        if self.label:
            return self.label
        op = self.operator
        if op == "equals":
            return f"{self.variable} == {_plain(self.equals)}"
        if op == "not_equals":
            return f"{self.variable} != {_plain(self.not_equals)}"
        if op == "one_of":
            values = ", ".join(str(_plain(v)) for v in self.one_of or [])
            return f"{self.variable} in [{values}]"
        if op == "is_set":
            return f"{self.variable} set" if self.is_set else f"{self.variable} unset"
        return self.variable

    def matches(self, snapshot: dict[str, Any]) -> bool:
        """Evaluate this branch against a session snapshot."""
        present = snapshot.get(self.variable) is not None
        value = _plain(snapshot.get(self.variable))
        op = self.operator
        if op == "equals":
            return present and value == _plain(self.equals)
        if op == "not_equals":
            return value != _plain(self.not_equals)
        if op == "one_of":
            return present and value in [_plain(v) for v in self.one_of or []]
        if op == "is_set":
            return present is bool(self.is_set)
        return False


class StateDefinition(BaseModel):
    """Configuration of a single workflow state.

    ``kind`` may be omitted: states with ``choices`` are choice states, states
    with no action and no outgoing transition are terminal, everything else is
    a task.
    """

    kind: StateKind | None = None
    description: str = ""

    action: str | None = Field(default=None, description="Registered action name, e.g. 'merge.await_ci'")
    run: str | None = Field(default=None, description="Shell command used as the primary action")
    params: dict[str, Any] = Field(default_factory=dict)

    before: list[HookConfig] = Field(default_factory=list)
    after: list[HookConfig] = Field(default_factory=list)

    next: str | None = None
    error: str | None = None
    timeout: float | None = None
    timeout_next: str | None = None

    choices: list[ChoiceConfig] = Field(default_factory=list)
    default: str | None = None
    signals: dict[str, str] = Field(default_factory=dict)

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float | None:
        if value is None:
            return None
        return parse_duration(value)

    def resolved_kind(self) -> StateKind:
        if self.kind is not None:
            return self.kind
        if self.choices:
            return StateKind.CHOICE
        has_edges = any((self.next, self.error, self.timeout_next, self.default, self.signals))
        if not has_edges and self.action is None and self.run is None:
            return StateKind.TERMINAL
        return StateKind.TASK


class WorkflowDefinition(BaseModel):
    """A complete workflow: the initial state and every state by name."""

    start: str = "coding"
    failure_state: str = "failed"
    states: dict[str, StateDefinition] = Field(default_factory=dict)


def default_workflow() -> WorkflowDefinition:
    """Return the built-in issue-to-merge workflow.

    ``coding -> open_pr -> await_review -> await_ci -> check_ci_result ->
    merge -> done``, with every intermediate state erroring to ``failed``.
    Review comments route back to ``coding``; CI that stays pending for two
    hours fails the session.
    """
    return WorkflowDefinition(
        start="coding",
        failure_state="failed",
        states={
            "coding": StateDefinition(
                action="agent.code",
                description="Run the coding agent on the issue",
                next="open_pr",
                error="failed",
            ),
            "open_pr": StateDefinition(
                action="git.open_pr",
                description="Push the branch and open a pull request",
                next="await_review",
                error="failed",
            ),
            "await_review": StateDefinition(
                kind=StateKind.WAIT,
                action="merge.await_review",
                description="Wait for approval, addressing review comments",
                next="await_ci",
                error="failed",
                signals={"comments": "coding"},
            ),
            "await_ci": StateDefinition(
                kind=StateKind.WAIT,
                action="merge.await_ci",
                description="Wait for CI to finish",
                next="check_ci_result",
                error="failed",
                timeout=2 * 3600,
                timeout_next="failed",
            ),
            "check_ci_result": StateDefinition(
                choices=[
                    ChoiceConfig(variable="ci_status", equals="passing", next="merge", label="passing"),
                    ChoiceConfig(variable="ci_status", equals="pending", next="await_ci", label="pending"),
                    ChoiceConfig(variable="ci_status", equals="failing", next="failed", label="failing"),
                ],
            ),
            "merge": StateDefinition(
                action="merge.merge",
                description="Merge the pull request",
                next="done",
                error="failed",
            ),
            "done": StateDefinition(kind=StateKind.TERMINAL),
            "failed": StateDefinition(kind=StateKind.TERMINAL),
        },
    )
