"""Per-invocation launch parameters for agent processes.

Only Windows hosts need special handling: agents there are started through a
shell so PATH resolution of ``.cmd`` shims works, and the prompt travels over
stdin because command-line escaping through ``cmd.exe`` is lossy.  Remote
execution never gets local shell wrapping since the remote host has its own
shell context.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass

from agent_autorun.agents.capabilities import (
    AgentCapabilities,
    AgentType,
    get_agent_capabilities,
)
from agent_autorun.agents.shell import ShellResolution, resolve_shell

logger = logging.getLogger(__name__)

SHELL_DEPENDENT_OS_NAME = "nt"

CustomShellPathCallback = Callable[[], str | None]


@dataclass(frozen=True, slots=True)
class RemoteExecutionDescriptor:
    """Per-invocation remote execution target."""

    enabled: bool = False
    remote_id: str | None = None
    working_dir_override: str | None = None


@dataclass(frozen=True, slots=True)
class SpawnConfig:
    """Launcher input; consumed once per spawned process."""

    shell: str | None = None
    run_in_shell: bool = False
    send_prompt_via_structured_stdin: bool = False
    send_prompt_via_raw_stdin: bool = False

    @classmethod
    def default(cls) -> SpawnConfig:
        """Argv-based invocation with no stdin prompt transport."""

        return cls()

    @property
    def sends_prompt_via_stdin(self) -> bool:
        return self.send_prompt_via_structured_stdin or self.send_prompt_via_raw_stdin


class ShellOverrideContext:
    """Holder for the operator shell-path override.

    Created once at process start and handed to every resolver.  The
    registered callback is read on each resolution; last registration wins.
    """

    def __init__(self, callback: CustomShellPathCallback | None = None) -> None:
        self._callback = callback

    def set_custom_shell_path_callback(self, callback: CustomShellPathCallback | None) -> None:
        self._callback = callback

    def get_custom_shell_path(self) -> str | None:
        if self._callback is None:
            return None
        value = self._callback()
        if value is None or not value.strip():
            return None
        return value.strip()


class SpawnConfigResolver:
    """Combine host platform, capabilities, shell and remote target into a SpawnConfig."""

    def __init__(
        self,
        context: ShellOverrideContext | None = None,
        *,
        os_name: str | None = None,
        capabilities: Callable[[AgentType | str], AgentCapabilities] = get_agent_capabilities,
        shell_resolver: Callable[..., ShellResolution] = resolve_shell,
    ) -> None:
        self.context = context or ShellOverrideContext()
        self.os_name = os_name or os.name
        self._capabilities = capabilities
        self._shell_resolver = shell_resolver

    def resolve(
        self,
        agent_type: AgentType | str,
        remote: RemoteExecutionDescriptor | None = None,
    ) -> SpawnConfig:
        if self.os_name != SHELL_DEPENDENT_OS_NAME:
            return SpawnConfig.default()
        if remote is not None and remote.enabled:
            logger.debug(
                "Remote execution for agent=%s remote=%s, skipping local shell wrapping",
                agent_type,
                remote.remote_id,
            )
            return SpawnConfig.default()

        capabilities = self._capabilities(agent_type)
        resolution = self._shell_resolver(
            self.context.get_custom_shell_path(),
            os_name=self.os_name,
        )
        structured = capabilities.supports_streaming_structured_input
        logger.debug(
            "Resolved spawn shell=%s source=%s agent=%s structured_stdin=%s",
            resolution.shell,
            resolution.source,
            agent_type,
            structured,
        )
        return SpawnConfig(
            shell=resolution.shell,
            run_in_shell=True,
            send_prompt_via_structured_stdin=structured,
            send_prompt_via_raw_stdin=not structured,
        )
