from __future__ import annotations

import allure
import pytest

from agent_autorun.agents import AgentType, get_agent_capabilities
from agent_autorun.agents.capabilities import DEFAULT_CAPABILITIES
from agent_autorun.errors import ConfigurationError

pytestmark = [
    allure.epic("Agent Spawning"),
    allure.feature("Capabilities"),
]


def test_only_claude_code_accepts_structured_input() -> None:
    structured = [
        agent_type
        for agent_type in AgentType
        if get_agent_capabilities(agent_type).supports_streaming_structured_input
    ]
    assert structured == [AgentType.CLAUDE_CODE]


def test_lookup_accepts_plain_strings() -> None:
    assert get_agent_capabilities("claude-code").supports_resume is True
    assert get_agent_capabilities("terminal").supports_batch_mode is False


def test_unknown_agent_gets_conservative_default() -> None:
    capabilities = get_agent_capabilities("some-future-agent")

    assert capabilities == DEFAULT_CAPABILITIES
    assert capabilities.supports_streaming_structured_input is False


def test_agent_type_parse() -> None:
    assert AgentType.parse(" Codex ") is AgentType.CODEX
    assert AgentType.parse(AgentType.AIDER) is AgentType.AIDER

    with pytest.raises(ConfigurationError, match="Unknown agent type") as error:
        AgentType.parse("copilot")
    assert error.value.code == "UNKNOWN_AGENT_TYPE"
