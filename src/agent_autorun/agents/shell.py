"""Shell selection for agent execution on shell-dependent hosts."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import PureWindowsPath

WINDOWS_DEFAULT_SHELL = "cmd.exe"
POSIX_DEFAULT_SHELL = "/bin/sh"


@dataclass(frozen=True, slots=True)
class ShellResolution:
    """Chosen shell and why it was chosen.

    ``source`` is diagnostic only ("custom" or "default").
    """

    shell: str
    use_shell: bool
    source: str


def resolve_shell(
    custom_shell_path: str | None = None,
    *,
    os_name: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ShellResolution:
    """Pick a concrete shell executable, honoring an operator override."""

    if custom_shell_path is not None and custom_shell_path.strip():
        return ShellResolution(shell=custom_shell_path.strip(), use_shell=True, source="custom")

    env = os.environ if environ is None else environ
    current_os_name = os_name or os.name
    if current_os_name == "nt":
        comspec = env.get("ComSpec") or env.get("COMSPEC")
        shell = comspec.strip() if comspec and comspec.strip() else WINDOWS_DEFAULT_SHELL
        return ShellResolution(shell=shell, use_shell=True, source="default")

    posix_shell = env.get("SHELL", "").strip()
    return ShellResolution(
        shell=posix_shell or POSIX_DEFAULT_SHELL,
        use_shell=True,
        source="default",
    )


def is_powershell(shell: str | None) -> bool:
    """Return True when ``shell`` points at Windows PowerShell or pwsh."""

    if not shell:
        return False
    name = PureWindowsPath(shell.strip()).name.lower()
    return name in {"powershell", "powershell.exe", "pwsh", "pwsh.exe"}
