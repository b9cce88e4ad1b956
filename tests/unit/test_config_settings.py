"""Tests for mergeloop/config/settings.py - YAML loading and defaults."""

from pathlib import Path

import pytest

from mergeloop.config.settings import DEFAULT_AGENT_COMMAND, MergeLoopSettings
from mergeloop.enums import IssueSource
from mergeloop.exceptions import ConfigurationError

FULL_CONFIG = """
daemon:
  poll_interval: 10
  max_active_sessions: 2
agent:
  max_turns: 20
merge:
  method: rebase
repos:
  - path: ${REPO_ROOT}/app
    sources:
      - provider: github
        repository: acme/app
        label: ${MERGELOOP_LABEL:-mergeloop}
      - provider: linear
        team: team-uuid
workflow:
  start: coding
  states:
    coding:
      action: agent.code
      after:
        - make lint
        - run: make test
          timeout: 10m
      next: done
    done: {}
    failed: {}
"""


def write_config(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(content)
    return path


class TestDefaults:
    """Tests for default settings."""

    def test_defaults(self):
        settings = MergeLoopSettings()

        assert settings.daemon.poll_interval == 30.0
        assert settings.daemon.max_active_sessions == 3
        assert settings.daemon.tick_timeout == 2400.0
        assert settings.agent.command == DEFAULT_AGENT_COMMAND
        assert settings.merge.method == "squash"
        assert settings.merge.review_max_attempts == 120
        assert settings.repos == []

    def test_default_workflow_when_absent(self):
        assert MergeLoopSettings().workflow_definition().start == "coding"

    def test_agent_command_is_not_shared(self):
        first = MergeLoopSettings()
        first.agent.command.append("--verbose")

        assert MergeLoopSettings().agent.command == DEFAULT_AGENT_COMMAND


class TestFromYaml:
    """Tests for MergeLoopSettings.from_yaml."""

    def test_full_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("REPO_ROOT", "/src")
        monkeypatch.delenv("MERGELOOP_LABEL", raising=False)

        settings = MergeLoopSettings.from_yaml(write_config(tmp_path, FULL_CONFIG))

        assert settings.daemon.poll_interval == 10
        assert settings.merge.method == "rebase"
        repo = settings.repo("/src/app")
        assert repo is not None
        assert [s.provider for s in repo.sources] == [IssueSource.GITHUB, IssueSource.LINEAR]
        assert repo.sources[0].filter().label == "mergeloop"
        assert repo.sources[1].filter().team == "team-uuid"

    def test_workflow_hooks_parsed(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Bare-string hooks and duration timeouts are accepted."""
        monkeypatch.setenv("REPO_ROOT", "/src")

        workflow = MergeLoopSettings.from_yaml(write_config(tmp_path, FULL_CONFIG)).workflow_definition()

        after = workflow.states["coding"].after
        assert [hook.run for hook in after] == ["make lint", "make test"]
        assert after[1].timeout == 600.0

    def test_repo_path_expands_user(self, tmp_path: Path):
        settings = MergeLoopSettings.from_yaml(write_config(tmp_path, "repos:\n  - path: ~/code/app\n"))

        assert not settings.repos[0].path.startswith("~")

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        settings = MergeLoopSettings.from_yaml(write_config(tmp_path, ""))

        assert settings.daemon.poll_interval == 30.0

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            MergeLoopSettings.from_yaml(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            MergeLoopSettings.from_yaml(write_config(tmp_path, "daemon: [unclosed\n"))

    def test_non_mapping(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="YAML object"):
            MergeLoopSettings.from_yaml(write_config(tmp_path, "- a\n- b\n"))

    def test_validation_error(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="Failed to validate"):
            MergeLoopSettings.from_yaml(write_config(tmp_path, "merge:\n  method: fast-forward\n"))

    def test_missing_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("REPO_ROOT", raising=False)

        with pytest.raises(ConfigurationError, match="REPO_ROOT"):
            MergeLoopSettings.from_yaml(write_config(tmp_path, FULL_CONFIG))


class TestInterpolation:
    """Tests for ${VAR} interpolation."""

    def test_comment_lines_untouched(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("UNSET_VAR", raising=False)

        content = "# uses ${UNSET_VAR}\nkey: value"

        assert MergeLoopSettings._interpolate_env_vars(content) == content

    def test_default_value(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("UNSET_VAR", raising=False)

        assert MergeLoopSettings._interpolate_env_vars("x: ${UNSET_VAR:-fallback}") == "x: fallback"
