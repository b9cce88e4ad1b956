"""
Configuration system using Pydantic for type-safe settings management.

This module provides the configuration classes for the daemon loop, the
coding agent, merge automation, the repositories and issue sources to poll,
and the (optional) workflow definition.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mergeloop.config.workflow import WorkflowDefinition, default_workflow
from mergeloop.enums import IssueSource
from mergeloop.exceptions import ConfigurationError
from mergeloop.models.domain import FilterConfig

DEFAULT_AGENT_COMMAND = [
    "claude",
    "--print",
    "--output-format",
    "json",
    "--dangerously-skip-permissions",
]


class DaemonConfig(BaseModel):
    """Scheduler loop configuration."""

    poll_interval: float = Field(default=30.0, gt=0, description="Seconds between ticks")
    max_active_sessions: int = Field(default=3, ge=1, description="Sessions in flight before intake pauses")
    max_concurrent_advances: int = Field(default=3, ge=1, description="Sessions advanced in parallel per tick")
    tick_timeout: float = Field(
        default=2400.0, gt=0, description="Deadline for one tick, in seconds; must exceed the agent run time"
    )
    provider_timeout: float = Field(default=30.0, gt=0, description="Deadline for one provider poll, in seconds")


class AgentConfig(BaseModel):
    """Coding agent invocation."""

    command: list[str] = Field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND), min_length=1)
    max_turns: int = Field(default=50, ge=1, description="Maximum agent turns per run")
    max_duration: int = Field(default=30, ge=1, description="Maximum agent run time in minutes")


class MergeConfig(BaseModel):
    """Merge automation behaviour."""

    auto_merge: bool = Field(default=True, description="Merge automatically once CI passes")
    method: Literal["squash", "merge", "rebase"] = Field(default="squash", description="Merge method")
    auto_address_comments: bool = Field(default=True, description="Send new review comments back to the agent")
    review_max_attempts: int = Field(default=120, ge=1, description="Review polls before giving up")
    base_branch: str = Field(default="main", description="Base branch for pull requests")


class SourceConfig(BaseModel):
    """One issue source polled for a repository."""

    provider: IssueSource
    label: str = Field(default="", description="Label/tag to filter by; empty means every open item")
    project: str = Field(default="", description="Asana project GID")
    team: str = Field(default="", description="Linear team ID")
    repository: str = Field(default="", description="GitHub repository as owner/name")

    def filter(self) -> FilterConfig:
        return FilterConfig(
            label=self.label,
            project=self.project,
            team=self.team,
            repository=self.repository,
        )


class RepoConfig(BaseModel):
    """A local repository that agents work in."""

    path: str = Field(..., min_length=1, description="Local path of the repository")
    worktree_root: str | None = Field(default=None, description="Directory for session worktrees")
    sources: list[SourceConfig] = Field(default_factory=list)

    @field_validator("path", "worktree_root")
    @classmethod
    def _expand(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return str(Path(value).expanduser())


class MergeLoopSettings(BaseSettings):
    """Main daemon settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="MERGELOOP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    repos: list[RepoConfig] = Field(default_factory=list)
    workflow: WorkflowDefinition | None = Field(default=None, description="Custom workflow; default when absent")
    state_directory: str | None = Field(default=None, description="Overrides the resolved data directory")

    def workflow_definition(self) -> WorkflowDefinition:
        """Return the configured workflow, or the built-in default."""
        return self.workflow or default_workflow()

    def repo(self, path: str) -> RepoConfig | None:
        for repo in self.repos:
            if repo.path == path:
                return repo
        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> MergeLoopSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            MergeLoopSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
