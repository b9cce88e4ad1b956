"""Workflow graph, engine, merge automation and scheduling."""

from mergeloop.engine.graph import StateConfig, Transition, WorkflowGraph
from mergeloop.engine.scheduler import SessionScheduler, TickReport
from mergeloop.engine.session_store import SessionStore
from mergeloop.engine.visualize import generate_diagram, generate_diagram_compact
from mergeloop.engine.workflow_engine import StepResult, WorkflowEngine

__all__ = [
    "SessionScheduler",
    "SessionStore",
    "StateConfig",
    "StepResult",
    "TickReport",
    "Transition",
    "WorkflowEngine",
    "WorkflowGraph",
    "generate_diagram",
    "generate_diagram_compact",
]
