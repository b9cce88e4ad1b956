"""Tests for mergeloop/main.py - the click command line interface."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from mergeloop.engine.scheduler import TickReport
from mergeloop.engine.session_store import SessionStore
from mergeloop.enums import ErrorKind
from mergeloop.main import cli

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Configuration file with a temp state directory and no repositories."""
    path = tmp_path / "config.yaml"
    path.write_text(f"state_directory: {tmp_path / 'state'}\ndaemon:\n  poll_interval: 5\n")
    return path


@pytest.fixture
def cli_store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "state")


def invoke(cli_runner: CliRunner, config_file: Path, *args: str):
    return cli_runner.invoke(cli, ["--config", str(config_file), "--console-logs", *args])


# =============================================================================
# Configuration loading
# =============================================================================


class TestConfigLoading:
    """Tests for --config handling."""

    def test_explicit_missing_config_fails(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "absent.yaml"), "validate"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_invalid_config_fails(self, cli_runner, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("merge:\n  method: octopus\n")

        result = cli_runner.invoke(cli, ["--config", str(path), "validate"])

        assert result.exit_code == 1
        assert "Failed to validate configuration" in result.output

    def test_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "diagram", "validate", "sessions", "message"):
            assert command in result.output


# =============================================================================
# Workflow commands
# =============================================================================


class TestWorkflowCommands:
    """Tests for validate and diagram."""

    def test_validate_default_workflow(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "validate")

        assert result.exit_code == 0
        assert "Workflow is valid: 8 states, start 'coding'" in result.output

    def test_validate_unknown_action(self, cli_runner, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "workflow:\n"
            "  states:\n"
            "    coding: {action: agent.teleport, next: done}\n"
            "    done: {}\n"
            "    failed: {}\n"
        )

        result = cli_runner.invoke(cli, ["--config", str(path), "validate"])

        assert result.exit_code == 1
        assert "unknown action 'agent.teleport'" in result.output

    def test_validate_reports_unreachable_states(self, cli_runner, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "workflow:\n"
            "  states:\n"
            "    coding: {action: noop, next: done}\n"
            "    orphan: {action: noop, next: done}\n"
            "    done: {}\n"
            "    failed: {}\n"
        )

        result = cli_runner.invoke(cli, ["--config", str(path), "validate"])

        assert result.exit_code == 0
        assert "Warning:" in result.output
        assert "orphan" in result.output

    def test_diagram(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "diagram")

        assert result.exit_code == 0
        assert result.output.startswith("stateDiagram-v2")
        assert "coding --> failed : error" in result.output

    def test_diagram_compact(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "diagram", "--compact")

        assert result.exit_code == 0
        assert ": error" not in result.output


# =============================================================================
# Session commands
# =============================================================================


class TestSessionCommands:
    """Tests for sessions and message."""

    def test_no_sessions(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "sessions")

        assert result.exit_code == 0
        assert "No sessions" in result.output

    def test_lists_active_sessions(self, cli_runner, config_file, cli_store, make_session):
        session = make_session(state="await_ci", attempt=4, pr_url="https://github.com/acme/app/pull/7")
        session.record_error(ErrorKind.MERGE, "CI checks failed\nsee logs")
        asyncio.run(cli_store.save(session))

        result = invoke(cli_runner, config_file, "sessions")

        assert result.exit_code == 0
        assert "github-42-abc12345  await_ci  attempt=4  branch=issue-42" in result.output
        assert "pr=https://github.com/acme/app/pull/7" in result.output
        assert "error=merge: CI checks failed" in result.output
        assert "see logs" not in result.output

    def test_lists_archived_sessions(self, cli_runner, config_file, cli_store, make_session):
        asyncio.run(cli_store.archive(make_session(state="done")))

        active = invoke(cli_runner, config_file, "sessions")
        archived = invoke(cli_runner, config_file, "sessions", "--archived")

        assert "No sessions" in active.output
        assert "github-42-abc12345  done" in archived.output

    def test_message_queued(self, cli_runner, config_file, cli_store, make_session):
        asyncio.run(cli_store.save(make_session()))

        result = invoke(cli_runner, config_file, "message", "github-42-abc12345", "Also update the docs")

        assert result.exit_code == 0
        assert "Message queued for github-42-abc12345" in result.output
        assert asyncio.run(cli_store.drain_messages()) == {"github-42-abc12345": "Also update the docs"}

    def test_message_unknown_session(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "message", "nope", "hello")

        assert result.exit_code == 1
        assert "No active session nope" in result.output


# =============================================================================
# Daemon commands
# =============================================================================


class TestRunCommand:
    """Tests for run."""

    def test_run_once_prints_report(self, cli_runner, config_file):
        report = TickReport(advanced=["a", "b"], admitted=["c"])

        with patch("mergeloop.main.Daemon") as mock_daemon:
            mock_daemon.return_value.run_once = AsyncMock(return_value=report)
            result = invoke(cli_runner, config_file, "run", "--once")

        assert result.exit_code == 0
        assert "advanced=2 skipped=0 failed=0 finalized=0 admitted=1" in result.output

    def test_run_once_timeout(self, cli_runner, config_file):
        with patch("mergeloop.main.Daemon") as mock_daemon:
            mock_daemon.return_value.run_once = AsyncMock(return_value=None)
            result = invoke(cli_runner, config_file, "run", "--once")

        assert result.exit_code == 1
        assert "Tick timed out" in result.output

    def test_run_loop_uses_interval(self, cli_runner, config_file):
        with patch("mergeloop.main.Daemon") as mock_daemon:
            mock_daemon.return_value.run = AsyncMock()
            result = invoke(cli_runner, config_file, "run", "--interval", "2.5")

        assert result.exit_code == 0
        mock_daemon.return_value.run.assert_awaited_once_with(2.5)

    def test_keyboard_interrupt(self, cli_runner, config_file):
        with patch("mergeloop.main.Daemon") as mock_daemon:
            mock_daemon.return_value.run = AsyncMock(side_effect=KeyboardInterrupt())
            result = invoke(cli_runner, config_file, "run")

        assert result.exit_code == 130
