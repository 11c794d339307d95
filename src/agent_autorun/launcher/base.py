"""Launcher interface for agent process execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from agent_autorun.agents.capabilities import AgentType
from agent_autorun.agents.spawn_config import RemoteExecutionDescriptor, SpawnConfig


@dataclass(slots=True)
class AgentCommand:
    """Inputs required to run one agent invocation."""

    agent_type: AgentType
    command_template: str
    prompt: str
    timeout_seconds: float
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class LaunchOutcome:
    """Execution outcome of one agent process."""

    success: bool
    duration_ms: int
    exit_code: int | None
    timed_out: bool = False
    error: str | None = None
    output: str = ""


class ProcessHandle(Protocol):
    """Handle to a started agent process."""

    async def wait(self) -> LaunchOutcome:
        """Deliver the prompt, wait for exit or timeout and report the outcome."""

    async def terminate(self) -> None:
        """Stop the process: terminate first, kill if it does not exit."""


class ProcessLauncher(Protocol):
    """Protocol implemented by process launchers."""

    async def spawn(
        self,
        config: SpawnConfig,
        command: AgentCommand,
        cwd: Path | None,
        remote: RemoteExecutionDescriptor | None = None,
    ) -> ProcessHandle:
        """Start the agent process described by ``command`` under ``config``."""
