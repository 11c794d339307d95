"""Agent capability lookup and spawn configuration resolution."""

from agent_autorun.agents.capabilities import (
    AgentCapabilities,
    AgentType,
    get_agent_capabilities,
)
from agent_autorun.agents.shell import ShellResolution, resolve_shell
from agent_autorun.agents.spawn_config import (
    RemoteExecutionDescriptor,
    ShellOverrideContext,
    SpawnConfig,
    SpawnConfigResolver,
)

__all__ = [
    "AgentCapabilities",
    "AgentType",
    "RemoteExecutionDescriptor",
    "ShellOverrideContext",
    "ShellResolution",
    "SpawnConfig",
    "SpawnConfigResolver",
    "get_agent_capabilities",
    "resolve_shell",
]
