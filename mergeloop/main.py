"""CLI entry point for the mergeloop daemon."""

import asyncio
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

import click
import structlog

from mergeloop.config.settings import MergeLoopSettings
from mergeloop.daemon import Daemon
from mergeloop.engine.actions import builtin_actions
from mergeloop.engine.context import RuntimeContext
from mergeloop.engine.graph import WorkflowGraph
from mergeloop.engine.session_store import SessionStore
from mergeloop.engine.visualize import generate_diagram, generate_diagram_compact
from mergeloop.engine.workflow_engine import check_actions
from mergeloop.exceptions import ConfigurationError, MergeLoopError
from mergeloop.paths import PathResolver
from mergeloop.providers.registry import ProviderRegistry
from mergeloop.utils.durations import format_duration
from mergeloop.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=None, help="Path to configuration file (default: resolved config directory)")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=True, help="Render logs as JSON or for a terminal")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str, json_logs: bool) -> None:
    """mergeloop: drive coding-agent work items from issue to merge."""
    configure_logging(log_level, json_output=json_logs)

    paths = PathResolver()
    config_path = Path(config) if config else paths.config_file

    try:
        if config_path.exists():
            settings = MergeLoopSettings.from_yaml(config_path)
        elif config:
            raise ConfigurationError(f"Configuration file not found: {config}")
        else:
            log.info("config_defaults_used", path=str(config_path))
            settings = MergeLoopSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings, "paths": paths}


def _store(ctx: click.Context) -> SessionStore:
    settings: MergeLoopSettings = ctx.obj["settings"]
    return SessionStore(settings.state_directory or ctx.obj["paths"].data_dir)


def _execute(operation: Callable[[], Coroutine[Any, Any, Any]]) -> Any:
    """Run an async CLI operation with the shared error handling."""
    try:
        return asyncio.run(operation())
    except MergeLoopError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("command_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@cli.command()
@click.option("--once", is_flag=True, help="Run a single tick and exit")
@click.option("--interval", type=float, default=None, help="Seconds between ticks (overrides poll_interval)")
@click.pass_context
def run(ctx: click.Context, once: bool, interval: float | None) -> None:
    """Run the daemon loop."""
    settings: MergeLoopSettings = ctx.obj["settings"]

    async def _run() -> None:
        daemon = Daemon(settings, context=_context(settings, ctx.obj["paths"]))
        if once:
            report = await daemon.run_once()
            if report is None:
                click.echo("Tick timed out", err=True)
                sys.exit(1)
            click.echo(
                f"advanced={len(report.advanced)} skipped={len(report.skipped)} failed={len(report.failed)} "
                f"finalized={len(report.finalized)} admitted={len(report.admitted)}"
            )
            return
        await daemon.run(interval)

    _execute(_run)


def _context(settings: MergeLoopSettings, paths: PathResolver) -> RuntimeContext:
    return RuntimeContext(paths=paths, providers=ProviderRegistry.from_settings(settings))


@cli.command()
@click.option("--compact", is_flag=True, help="Omit hook nodes and error edges")
@click.pass_context
def diagram(ctx: click.Context, compact: bool) -> None:
    """Print the workflow as a Mermaid state diagram."""
    settings: MergeLoopSettings = ctx.obj["settings"]
    try:
        graph = WorkflowGraph.from_definition(settings.workflow_definition())
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    click.echo(generate_diagram_compact(graph) if compact else generate_diagram(graph))


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate the configured workflow."""
    settings: MergeLoopSettings = ctx.obj["settings"]
    try:
        graph = WorkflowGraph.from_definition(settings.workflow_definition())
        check_actions(graph, builtin_actions())
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    for warning in graph.warnings:
        click.echo(f"Warning: {warning}", err=True)
    click.echo(
        f"Workflow is valid: {len(graph)} states, start '{graph.initial_state}', "
        f"terminal {', '.join(graph.terminal_states)}"
    )


@cli.command()
@click.option("--archived", is_flag=True, help="List finished sessions instead of active ones")
@click.pass_context
def sessions(ctx: click.Context, archived: bool) -> None:
    """List sessions with their state and attempt count."""
    store = _store(ctx)

    async def _list() -> None:
        found = await (store.list_archived() if archived else store.list_active())
        if not found:
            click.echo("No sessions")
            return
        for session in found:
            line = f"{session.id}  {session.current_state}  attempt={session.attempt}  branch={session.branch}"
            if not archived:
                age = (session.updated_at - session.state_entered_at).total_seconds()
                line += f"  in_state={format_duration(max(int(age), 0))}"
            if session.pr_url:
                line += f"  pr={session.pr_url}"
            if session.last_error:
                summary = (session.last_error.message.splitlines() or [""])[0]
                line += f"  error={session.last_error.kind.value}: {summary}"
            click.echo(line)

    _execute(_list)


@cli.command()
@click.argument("session_id")
@click.argument("text")
@click.pass_context
def message(ctx: click.Context, session_id: str, text: str) -> None:
    """Queue a message for a session's next action step."""
    store = _store(ctx)

    async def _post() -> None:
        if await store.load(session_id) is None:
            raise MergeLoopError(f"No active session {session_id}")
        await store.post_message(session_id, text)
        click.echo(f"Message queued for {session_id}")

    _execute(_post)


if __name__ == "__main__":
    cli()
