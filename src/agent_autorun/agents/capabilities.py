"""Static per-agent capability table."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from agent_autorun.errors import ConfigurationError


class AgentType(str, Enum):
    """Supported agent binaries."""

    CLAUDE_CODE = "claude-code"
    CODEX = "codex"
    OPENCODE = "opencode"
    AIDER = "aider"
    GEMINI_CLI = "gemini-cli"
    TERMINAL = "terminal"

    @classmethod
    def parse(cls, value: AgentType | str) -> AgentType:
        """Return the enum member for ``value`` or raise a configuration error."""

        if isinstance(value, AgentType):
            return value
        normalized = value.strip().lower()
        try:
            return cls(normalized)
        except ValueError as error:
            supported = ", ".join(member.value for member in cls)
            raise ConfigurationError(
                f"Unknown agent type: {value!r}. Supported: {supported}",
                code="UNKNOWN_AGENT_TYPE",
            ) from error


@dataclass(frozen=True, slots=True)
class AgentCapabilities:
    """Read-only feature flags of one agent type."""

    supports_streaming_structured_input: bool = False
    supports_resume: bool = False
    supports_model_selection: bool = False
    supports_batch_mode: bool = True


DEFAULT_CAPABILITIES = AgentCapabilities()

_CAPABILITIES: dict[AgentType, AgentCapabilities] = {
    AgentType.CLAUDE_CODE: AgentCapabilities(
        supports_streaming_structured_input=True,
        supports_resume=True,
        supports_model_selection=True,
    ),
    AgentType.CODEX: AgentCapabilities(
        supports_resume=True,
        supports_model_selection=True,
    ),
    AgentType.OPENCODE: AgentCapabilities(
        supports_resume=True,
        supports_model_selection=True,
    ),
    AgentType.AIDER: AgentCapabilities(supports_model_selection=True),
    AgentType.GEMINI_CLI: AgentCapabilities(supports_model_selection=True),
    AgentType.TERMINAL: AgentCapabilities(supports_batch_mode=False),
}


def get_agent_capabilities(agent_type: AgentType | str) -> AgentCapabilities:
    """Look up capabilities; unknown agent types get the conservative default."""

    try:
        key = AgentType(agent_type)
    except ValueError:
        return DEFAULT_CAPABILITIES
    return _CAPABILITIES.get(key, DEFAULT_CAPABILITIES)
