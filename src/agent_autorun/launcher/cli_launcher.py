"""Subprocess-based launcher for CLI agents."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import string
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

from agent_autorun.agents.capabilities import AgentType
from agent_autorun.agents.shell import is_powershell
from agent_autorun.agents.spawn_config import RemoteExecutionDescriptor, SpawnConfig
from agent_autorun.errors import ConfigurationError, LaunchError
from agent_autorun.launcher.base import AgentCommand, LaunchOutcome

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATES: dict[AgentType, str] = {
    AgentType.CLAUDE_CODE: (
        "claude --print --verbose --output-format stream-json "
        "--dangerously-skip-permissions {prompt}"
    ),
    AgentType.CODEX: "codex exec --skip-git-repo-check {prompt}",
    AgentType.OPENCODE: "opencode run {prompt}",
    AgentType.AIDER: "aider --yes --no-auto-commits --message {prompt}",
    AgentType.GEMINI_CLI: "gemini --yolo --prompt {prompt}",
}

SSH_OPTIONS = (
    "-o",
    "BatchMode=yes",
    "-o",
    "StrictHostKeyChecking=accept-new",
    "-o",
    "ConnectTimeout=10",
)
STREAM_JSON_FLAG = "--input-format"
# Options whose value is the prompt; dropped together with it for stdin transports.
_PROMPT_ARGUMENT = re.compile(
    r"""(?:(?<!\S)(?:--message|--prompt|-m)(?:=|\s+))?(["']?)\{prompt\}\1""",
)
TERMINATE_GRACE_SECONDS = 2.0
_ERROR_TAIL_CHARS = 2_000


def default_command_template(
    agent_type: AgentType,
    overrides: dict[str, str] | None = None,
) -> str:
    """Return the configured or built-in command template for ``agent_type``."""

    if overrides and agent_type.value in overrides:
        return overrides[agent_type.value]
    try:
        return DEFAULT_COMMAND_TEMPLATES[agent_type]
    except KeyError as error:
        raise ConfigurationError(
            f"Agent type {agent_type.value!r} has no batch command; configure "
            f"AGENT_AUTORUN_{agent_type.value.upper().replace('-', '_')}_COMMAND.",
            code="NO_COMMAND_TEMPLATE",
        ) from error


def build_stream_json_message(prompt: str) -> str:
    """Encode ``prompt`` as one stream-json user message line."""

    message = {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "text", "text": prompt}],
        },
    }
    return json.dumps(message, ensure_ascii=False) + "\n"


@dataclass(slots=True)
class _Invocation:
    """Either an argv vector for exec or a full command line for the host shell."""

    argv: list[str] | None = None
    command_line: str | None = None
    command_head: str = ""


class CliProcessHandle:
    """Running agent process started by :class:`CliProcessLauncher`."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        stdin_payload: bytes | None,
        timeout_seconds: float,
        started_monotonic: float,
        prompt_file: Path | None = None,
    ) -> None:
        self.process = process
        self._stdin_payload = stdin_payload
        self._timeout_seconds = timeout_seconds
        self._started_monotonic = started_monotonic
        self._prompt_file = prompt_file

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait(self) -> LaunchOutcome:
        try:
            stdout, stderr = await asyncio.wait_for(
                self.process.communicate(self._stdin_payload),
                timeout=self._timeout_seconds,
            )
        except TimeoutError:
            await self.terminate()
            logger.warning(
                "Agent process pid=%s timed out after %.1fs",
                self.process.pid,
                self._timeout_seconds,
            )
            return LaunchOutcome(
                success=False,
                duration_ms=self._elapsed_ms(),
                exit_code=self.process.returncode,
                timed_out=True,
                error=f"Timed out after {self._timeout_seconds:g}s",
            )
        finally:
            self._remove_prompt_file()

        exit_code = self.process.returncode
        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        if exit_code == 0:
            return LaunchOutcome(
                success=True,
                duration_ms=self._elapsed_ms(),
                exit_code=0,
                output=output,
            )
        error_text = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
        return LaunchOutcome(
            success=False,
            duration_ms=self._elapsed_ms(),
            exit_code=exit_code,
            error=error_text[-_ERROR_TAIL_CHARS:] or f"Agent exited with code {exit_code}",
            output=output,
        )

    async def terminate(self) -> None:
        if self.process.returncode is not None:
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self.process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            try:
                self.process.kill()
            except ProcessLookupError:
                return
            await self.process.wait()

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started_monotonic) * 1000)

    def _remove_prompt_file(self) -> None:
        if self._prompt_file is None:
            return
        self._prompt_file.unlink(missing_ok=True)
        self._prompt_file = None


class CliProcessLauncher:
    """Start CLI agents honoring the resolved spawn configuration."""

    def __init__(self, *, os_name: str | None = None) -> None:
        self.os_name = os_name or os.name

    async def spawn(
        self,
        config: SpawnConfig,
        command: AgentCommand,
        cwd: Path | None,
        remote: RemoteExecutionDescriptor | None = None,
    ) -> CliProcessHandle:
        template = _prepare_template(command.command_template, config)
        prompt_file = _write_prompt_file(command.prompt) if "{prompt_file}" in template else None
        values = {
            "prompt": command.prompt,
            "prompt_file": str(prompt_file) if prompt_file else "",
        }

        remote_active = remote is not None and remote.enabled
        process_cwd = None if remote_active else cwd
        try:
            if process_cwd is not None and not process_cwd.is_dir():
                raise LaunchError(f"Working directory does not exist: {process_cwd}", transient=False)
            invocation = _build_invocation(
                template=template,
                values=values,
                config=config,
                remote=remote,
                cwd=cwd,
                os_name=self.os_name,
            )
        except LaunchError:
            _discard(prompt_file)
            raise

        stdin_payload: bytes | None = None
        if config.send_prompt_via_structured_stdin:
            stdin_payload = build_stream_json_message(command.prompt).encode("utf-8")
        elif config.send_prompt_via_raw_stdin:
            stdin_payload = command.prompt.encode("utf-8")

        env = os.environ.copy()
        env.update(command.env)
        env["AGENT_AUTORUN_AGENT_TYPE"] = command.agent_type.value

        logger.debug(
            "Spawning agent=%s head=%s shell=%s structured_stdin=%s raw_stdin=%s remote=%s",
            command.agent_type.value,
            invocation.command_head,
            config.shell if config.run_in_shell else None,
            config.send_prompt_via_structured_stdin,
            config.send_prompt_via_raw_stdin,
            remote.remote_id if remote is not None and remote.enabled else None,
        )

        started = time.monotonic()
        try:
            if invocation.argv is not None:
                process = await asyncio.create_subprocess_exec(
                    *invocation.argv,
                    cwd=str(process_cwd) if process_cwd else None,
                    env=env,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            else:
                process = await asyncio.create_subprocess_shell(
                    invocation.command_line or "",
                    cwd=str(process_cwd) if process_cwd else None,
                    env=env,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except FileNotFoundError as error:
            _discard(prompt_file)
            raise LaunchError(
                f"Agent command not found: {invocation.command_head}",
                transient=False,
            ) from error
        except OSError as error:
            _discard(prompt_file)
            raise LaunchError(f"Agent process failed to start: {error}", transient=True) from error

        return CliProcessHandle(
            process,
            stdin_payload=stdin_payload,
            timeout_seconds=command.timeout_seconds,
            started_monotonic=started,
            prompt_file=prompt_file,
        )


def check_command_template(
    command_template: str,
    config: SpawnConfig,
    *,
    remote: RemoteExecutionDescriptor | None = None,
    os_name: str | None = None,
) -> str:
    """Render ``command_template`` with placeholder values and return the executable it starts.

    Raises :class:`ConfigurationError` when the template cannot produce a command line.
    """

    try:
        template = _prepare_template(command_template, config)
        invocation = _build_invocation(
            template=template,
            values={"prompt": "prompt", "prompt_file": "prompt.txt"},
            config=config,
            remote=remote,
            cwd=None,
            os_name=os_name or os.name,
        )
    except LaunchError as error:
        raise ConfigurationError(str(error), code="INVALID_COMMAND_TEMPLATE") from error
    return invocation.command_head.strip("\"'")


def _build_invocation(
    *,
    template: str,
    values: dict[str, str],
    config: SpawnConfig,
    remote: RemoteExecutionDescriptor | None,
    cwd: Path | None,
    os_name: str,
) -> _Invocation:
    if remote is not None and remote.enabled:
        return _build_remote_invocation(template=template, values=values, remote=remote, cwd=cwd)
    if config.run_in_shell:
        return _build_shell_invocation(
            template=template,
            values=values,
            shell=config.shell,
            os_name=os_name,
        )
    argv = _build_run_args(template=template, values=values)
    return _Invocation(argv=argv, command_head=argv[0])


def _prepare_template(command_template: str, config: SpawnConfig) -> str:
    stripped = command_template.strip()
    if not stripped:
        raise LaunchError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise LaunchError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    if not config.sends_prompt_via_stdin:
        return stripped

    # The prompt travels over stdin, never in argv.
    without_prompt = " ".join(_PROMPT_ARGUMENT.sub("", stripped).split())
    if config.send_prompt_via_structured_stdin and STREAM_JSON_FLAG not in without_prompt:
        without_prompt = f"{without_prompt} {STREAM_JSON_FLAG} stream-json"
    return without_prompt


def _render_posix(template: str, values: dict[str, str]) -> str:
    try:
        return template.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError, ValueError) as error:
        raise LaunchError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error


def _build_run_args(*, template: str, values: dict[str, str]) -> list[str]:
    rendered = _render_posix(template, values)
    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise LaunchError(f"Agent command template cannot be parsed: {error}", transient=False) from error
    if not argv:
        raise LaunchError("Agent command template rendered empty command.", transient=False)
    return argv


def _build_shell_invocation(
    *,
    template: str,
    values: dict[str, str],
    shell: str | None,
    os_name: str,
) -> _Invocation:
    if not shell:
        raise LaunchError("Spawn configuration requires a shell but none was resolved.", transient=False)

    if os_name != "nt":
        rendered = _render_posix(template, values).strip()
        if not rendered:
            raise LaunchError("Agent command template rendered empty command.", transient=False)
        return _Invocation(argv=[shell, "-c", rendered], command_head=rendered.split(maxsplit=1)[0])

    try:
        rendered = _render_windows_command_template(template=template, values=values).strip()
    except (KeyError, ValueError) as error:
        raise LaunchError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    if not rendered:
        raise LaunchError("Agent command template rendered empty command.", transient=False)

    command_head = rendered.split(maxsplit=1)[0]
    if is_powershell(shell):
        return _Invocation(
            argv=[shell, "-NoProfile", "-NonInteractive", "-Command", rendered],
            command_head=command_head,
        )
    # cmd.exe strips the outer quotes of /s /c "...", leaving the rendered line intact.
    command_line = f'"{shell}" /d /s /c "{rendered}"'
    return _Invocation(command_line=command_line, command_head=command_head)


def _build_remote_invocation(
    *,
    template: str,
    values: dict[str, str],
    remote: RemoteExecutionDescriptor,
    cwd: Path | None,
) -> _Invocation:
    if not remote.remote_id:
        raise LaunchError("Remote execution enabled without a remote host.", transient=False)
    rendered = _render_posix(template, values).strip()
    if not rendered:
        raise LaunchError("Agent command template rendered empty command.", transient=False)

    remote_dir = remote.working_dir_override or (cwd.as_posix() if cwd else None)
    remote_command = f"exec {rendered}"
    if remote_dir:
        remote_command = f"cd {shlex.quote(remote_dir)} && {remote_command}"
    return _Invocation(
        argv=["ssh", *SSH_OPTIONS, remote.remote_id, remote_command],
        command_head="ssh",
    )


def _render_windows_command_template(*, template: str, values: dict[str, str]) -> str:
    formatter = string.Formatter()
    rendered_parts: list[str] = []
    in_double_quotes = False

    for literal_text, field_name, _format_spec, _conversion in formatter.parse(template):
        rendered_parts.append(literal_text)
        in_double_quotes = _advance_windows_quote_state(literal_text, in_double_quotes)
        if field_name is None:
            continue

        value_text = values[field_name]
        if in_double_quotes:
            rendered_parts.append(value_text.replace('"', '\\"'))
            continue

        rendered_parts.append(subprocess.list2cmdline([value_text]))

    return "".join(rendered_parts)


def _advance_windows_quote_state(literal_text: str, in_double_quotes: bool) -> bool:
    for index, char in enumerate(literal_text):
        if char != '"':
            continue
        backslashes = 0
        scan_index = index - 1
        while scan_index >= 0 and literal_text[scan_index] == "\\":
            backslashes += 1
            scan_index -= 1
        if backslashes % 2 == 1:
            continue
        in_double_quotes = not in_double_quotes
    return in_double_quotes


def _write_prompt_file(prompt: str) -> Path:
    handle, name = tempfile.mkstemp(prefix="agent-autorun-", suffix=".prompt.txt")
    with os.fdopen(handle, "w", encoding="utf-8") as stream:
        stream.write(prompt)
    return Path(name)


def _discard(prompt_file: Path | None) -> None:
    if prompt_file is not None:
        prompt_file.unlink(missing_ok=True)
