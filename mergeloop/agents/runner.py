"""
Coding agent runners.

An ``AgentRunner`` runs the coding agent once in a session's workspace and
reports its output, usage and transcript. ``CLIAgentRunner`` drives a
Claude-Code-compatible CLI: the prompt is written to stdin (large prompts
exceed argv limits) and ``--output-format json`` output is parsed for the
final result and token/cost usage.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from mergeloop.config.settings import DEFAULT_AGENT_COMMAND
from mergeloop.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)


@dataclass
class AgentRun:
    """Result of a single agent invocation."""

    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int = 0

    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0

    transcript: list[dict[str, Any]] = field(default_factory=list)
    """Messages exchanged during the run, saved alongside the session."""

    @property
    def reported_usage(self) -> bool:
        return bool(self.cost_usd or self.input_tokens or self.output_tokens)


class AgentRunner(ABC):
    """Runs the coding agent."""

    @abstractmethod
    async def run(self, prompt: str, *, cwd: Path | str, max_turns: int, max_duration: int) -> AgentRun:
        """Run the agent to completion.

        Args:
            prompt: Full task prompt
            cwd: Workspace the agent edits
            max_turns: Turn limit passed to the agent
            max_duration: Wall-clock limit in minutes

        Returns:
            AgentRun with output and usage

        Raises:
            TimeoutError: If the run exceeds ``max_duration``
        """


class CLIAgentRunner(AgentRunner):
    """Runs an agent CLI such as ``claude --print --output-format json``."""

    def __init__(self, command: list[str] | None = None) -> None:
        self.command = list(command or DEFAULT_AGENT_COMMAND)

    async def run(self, prompt: str, *, cwd: Path | str, max_turns: int, max_duration: int) -> AgentRun:
        cmd = [*self.command, "--max-turns", str(max_turns)]
        log.debug("agent_run_started", cwd=str(cwd), prompt_length=len(prompt), max_turns=max_turns)

        try:
            stdout, stderr, code = await run_command(
                *cmd,
                cwd=cwd,
                check=False,
                timeout=max_duration * 60,
                input_text=prompt,
            )
        except FileNotFoundError:
            log.error("agent_executable_not_found", command=cmd[0])
            return AgentRun(success=False, error=f"agent executable not found: {cmd[0]}", exit_code=127)

        run = parse_agent_output(stdout, stderr, code)
        run.transcript.insert(0, {"role": "user", "content": prompt})

        log.info(
            "agent_run_complete",
            success=run.success,
            exit_code=code,
            output_length=len(run.output),
            cost_usd=run.cost_usd,
        )
        return run


def parse_agent_output(stdout: str, stderr: str, exit_code: int) -> AgentRun:
    """Build an ``AgentRun`` from CLI output.

    JSON output (``{"result", "is_error", "total_cost_usd", "usage"}``) is
    parsed for usage; anything else is kept verbatim as plain output.
    """
    try:
        payload = json.loads(stdout) if stdout.strip() else None
    except json.JSONDecodeError:
        payload = None

    if not isinstance(payload, dict):
        success = exit_code == 0
        return AgentRun(
            success=success,
            output=stdout,
            error=None if success else (stderr.strip() or f"agent exited with status {exit_code}"),
            exit_code=exit_code,
            transcript=[{"role": "assistant", "content": stdout}] if stdout else [],
        )

    usage = payload.get("usage") or {}
    result = str(payload.get("result") or "")
    success = exit_code == 0 and not payload.get("is_error", False)
    return AgentRun(
        success=success,
        output=result,
        error=None if success else (stderr.strip() or result or f"agent exited with status {exit_code}"),
        exit_code=exit_code,
        cost_usd=float(payload.get("total_cost_usd") or 0.0),
        input_tokens=int(usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or 0),
        transcript=[{"role": "assistant", "content": result, "session_id": payload.get("session_id")}],
    )
