"""
Mermaid diagram export for workflow graphs.

Renders a ``stateDiagram-v2`` description of a workflow so operators can
inspect it with any Mermaid viewer. Two variants are provided:

- ``generate_diagram``: every edge, including error edges, plus hook
  pseudo-states (``<state>_before`` and ``<state>_hooks``).
- ``generate_diagram_compact``: the happy path plus timeout, choice and
  signal edges; no error edges and no hook pseudo-states.

Both emit exactly one entry arrow into the initial state and one exit arrow
per terminal state. The engine never reads this output.
"""

from mergeloop.config.workflow import HookConfig, WorkflowDefinition
from mergeloop.engine.graph import StateConfig, Transition, WorkflowGraph
from mergeloop.enums import TransitionKind
from mergeloop.utils.durations import format_duration

_INDENT = "    "


def generate_diagram(workflow: WorkflowGraph | WorkflowDefinition) -> str:
    """Render the full Mermaid diagram of a workflow."""
    return _render(_as_graph(workflow), compact=False)


def generate_diagram_compact(workflow: WorkflowGraph | WorkflowDefinition) -> str:
    """Render the compact Mermaid diagram (no error edges, no hook nodes)."""
    return _render(_as_graph(workflow), compact=True)


def _as_graph(workflow: WorkflowGraph | WorkflowDefinition) -> WorkflowGraph:
    if isinstance(workflow, WorkflowGraph):
        return workflow
    return WorkflowGraph.from_definition(workflow)


def _render(graph: WorkflowGraph, compact: bool) -> str:
    lines = ["stateDiagram-v2"]

    if not compact:
        for cfg in graph:
            if cfg.before:
                lines.append(f'{_INDENT}state "{_hook_label(cfg.before)}" as {cfg.name}_before')
            if cfg.after:
                lines.append(f'{_INDENT}state "{_hook_label(cfg.after)}" as {cfg.name}_hooks')

    lines.append(f"{_INDENT}[*] --> {graph.initial_state}")

    for cfg in graph:
        if not compact and cfg.before:
            lines.append(f"{_INDENT}{cfg.name}_before --> {cfg.name}")
        if not compact and cfg.after:
            lines.append(f"{_INDENT}{cfg.name} --> {cfg.name}_hooks")

        for edge in graph.transitions(cfg):
            if compact and edge.kind is TransitionKind.ERROR:
                continue
            lines.append(_INDENT + _edge_line(cfg, edge, compact))

    for name in graph.terminal_states:
        lines.append(f"{_INDENT}{name} --> [*]")

    return "\n".join(lines) + "\n"


def _edge_line(cfg: StateConfig, edge: Transition, compact: bool) -> str:
    source = cfg.name
    if edge.kind is TransitionKind.NEXT and cfg.after and not compact:
        source = f"{cfg.name}_hooks"

    label = _edge_label(cfg, edge)
    if label:
        return f"{source} --> {edge.target} : {label}"
    return f"{source} --> {edge.target}"


def _edge_label(cfg: StateConfig, edge: Transition) -> str:
    if edge.kind is TransitionKind.ERROR:
        return "error"
    if edge.kind is TransitionKind.TIMEOUT and cfg.timeout is not None:
        return f"timeout:{format_duration(cfg.timeout)}"
    return edge.label


def _hook_label(hooks: tuple[HookConfig, ...]) -> str:
    # Mermaid state descriptions cannot contain double quotes
    return "; ".join(hook.run for hook in hooks).replace('"', "'")
