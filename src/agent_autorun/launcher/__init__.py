"""Agent process launchers."""

from agent_autorun.launcher.base import AgentCommand, LaunchOutcome, ProcessHandle, ProcessLauncher
from agent_autorun.launcher.cli_launcher import (
    DEFAULT_COMMAND_TEMPLATES,
    CliProcessHandle,
    CliProcessLauncher,
    build_stream_json_message,
    default_command_template,
)

__all__ = [
    "DEFAULT_COMMAND_TEMPLATES",
    "AgentCommand",
    "CliProcessHandle",
    "CliProcessLauncher",
    "LaunchOutcome",
    "ProcessHandle",
    "ProcessLauncher",
    "build_stream_json_message",
    "default_command_template",
]
