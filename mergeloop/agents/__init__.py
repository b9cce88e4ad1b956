"""Coding agent execution.

Key Components:
    - AgentRunner: Abstract agent runner
    - CLIAgentRunner: Runs a Claude-Code-compatible CLI and parses its JSON usage
    - AgentRun: Output, usage and transcript of one run
"""

from mergeloop.agents.runner import AgentRun, AgentRunner, CLIAgentRunner

__all__ = ["AgentRun", "AgentRunner", "CLIAgentRunner"]
