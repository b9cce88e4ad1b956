"""
Deadline-bounded execution of hooks and shell actions.

A hook is a shell snippet configured on a workflow state. ``HookRunner``
runs it in the session's working directory, never past the deadline of the
tick that started it, and classifies the result:

- exit code 0: ``HookOutcome.SUCCESS``
- non-zero exit: ``HookOutcome.FAILURE``
- deadline or hook timeout exceeded: ``HookOutcome.TIMEOUT`` (process killed)
- process could not be started: ``HookOutcome.ERROR`` (routed like a failure)

Hooks never raise for these outcomes; cancellation of the surrounding task
kills the child process and propagates.
"""

import asyncio
import os
from collections.abc import Mapping
from pathlib import Path

import structlog

from mergeloop.config.workflow import HookConfig
from mergeloop.enums import HookOutcome
from mergeloop.models.domain import HookResult

log = structlog.get_logger(__name__)

MAX_CAPTURED_OUTPUT = 8000


def effective_timeout(timeout: float | None, deadline: float | None) -> float | None:
    """Combine a configured timeout with an absolute loop-time deadline.

    Args:
        timeout: Per-call timeout in seconds, if any
        deadline: Absolute ``loop.time()`` value, if any

    Returns:
        The tighter of the two, in seconds from now (never negative), or None
        when neither is set
    """
    remaining = None
    if deadline is not None:
        remaining = max(0.0, deadline - asyncio.get_running_loop().time())
    if timeout is None:
        return remaining
    if remaining is None:
        return timeout
    return min(timeout, remaining)


class HookRunner:
    """Runs hook shell commands under a deadline.

    Example:
        >>> runner = HookRunner()
        >>> result = await runner.run(HookConfig(run="make test"), cwd="/work/app", deadline=loop.time() + 60)
        >>> result.outcome
        <HookOutcome.SUCCESS: 'success'>
    """

    def __init__(self, shell: str | None = None) -> None:
        self.shell = shell

    async def run(
        self,
        hook: HookConfig,
        *,
        cwd: Path | str,
        env: Mapping[str, str] | None = None,
        deadline: float | None = None,
    ) -> HookResult:
        """Run one hook.

        Args:
            hook: Hook configuration (command and optional timeout)
            cwd: Working directory for the command
            env: Extra environment variables layered over the daemon's own
            deadline: Absolute ``loop.time()`` the hook must not exceed

        Returns:
            HookResult with outcome, combined stdout/stderr and error text
        """
        return await self.run_command(hook.run, cwd=cwd, env=env, timeout=hook.timeout, deadline=deadline)

    async def run_command(
        self,
        command: str,
        *,
        cwd: Path | str,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        deadline: float | None = None,
    ) -> HookResult:
        """Run a shell command with the hook classification rules."""
        limit = effective_timeout(timeout, deadline)
        if limit is not None and limit <= 0:
            log.warning("hook_deadline_exhausted", command=command)
            return HookResult(HookOutcome.TIMEOUT, error="deadline exceeded before hook started")

        child_env = dict(os.environ)
        if env:
            child_env.update(env)

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                env=child_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                executable=self.shell,
            )
        except OSError as e:
            log.error("hook_start_failed", command=command, cwd=str(cwd), error=str(e))
            return HookResult(HookOutcome.ERROR, error=f"could not start hook: {e}")

        try:
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=limit)
        except TimeoutError:
            await _kill(process)
            log.warning("hook_timed_out", command=command, timeout=limit)
            return HookResult(HookOutcome.TIMEOUT, error=f"hook timed out after {limit:.0f}s")
        except asyncio.CancelledError:
            await _kill(process)
            raise

        output = (stdout_bytes or b"").decode("utf-8", errors="replace")[-MAX_CAPTURED_OUTPUT:]
        if process.returncode != 0:
            log.warning("hook_failed", command=command, exit_code=process.returncode)
            return HookResult(
                HookOutcome.FAILURE,
                output=output,
                error=f"hook exited with status {process.returncode}",
            )

        log.debug("hook_succeeded", command=command)
        return HookResult(HookOutcome.SUCCESS, output=output)


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
