"""Configuration: daemon settings loaded from YAML and workflow definitions.

Key Components:
    - MergeLoopSettings: Root settings (daemon, agent, merge, repos, workflow)
    - WorkflowDefinition: Declarative workflow states and transitions
    - default_workflow: The built-in issue-to-merge workflow
"""

from mergeloop.config.settings import (
    AgentConfig,
    DaemonConfig,
    MergeConfig,
    MergeLoopSettings,
    RepoConfig,
    SourceConfig,
)
from mergeloop.config.workflow import (
    ChoiceConfig,
    HookConfig,
    StateDefinition,
    WorkflowDefinition,
    default_workflow,
)

__all__ = [
    "AgentConfig",
    "ChoiceConfig",
    "DaemonConfig",
    "HookConfig",
    "MergeConfig",
    "MergeLoopSettings",
    "RepoConfig",
    "SourceConfig",
    "StateDefinition",
    "WorkflowDefinition",
    "default_workflow",
]
