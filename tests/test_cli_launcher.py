from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import allure
import pytest

from agent_autorun.agents import AgentType, RemoteExecutionDescriptor, SpawnConfig
from agent_autorun.errors import ConfigurationError, LaunchError
from agent_autorun.launcher import (
    AgentCommand,
    CliProcessLauncher,
    build_stream_json_message,
    default_command_template,
)
from agent_autorun.launcher.cli_launcher import (
    DEFAULT_COMMAND_TEMPLATES,
    SSH_OPTIONS,
    check_command_template,
    _build_remote_invocation,
    _build_shell_invocation,
    _prepare_template,
    _render_windows_command_template,
)

pytestmark = [
    allure.epic("Agent Spawning"),
    allure.feature("CLI Launcher"),
]

ECHO = f"{shlex.quote(sys.executable)} -m agent_autorun.launcher.echo_agent"
PROMPT = "Fix the \"flaky\" test & report back; it's $HOME"


def _command(template: str, *, timeout: float = 30.0, agent_type: AgentType = AgentType.CODEX) -> AgentCommand:
    return AgentCommand(
        agent_type=agent_type,
        command_template=template,
        prompt=PROMPT,
        timeout_seconds=timeout,
    )


def _echoed(output: str) -> dict[str, str]:
    return json.loads(output.strip().splitlines()[-1])


@pytest.mark.asyncio
async def test_prompt_in_argv(echo_agent: str, tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")

    handle = await launcher.spawn(SpawnConfig.default(), _command(f"{ECHO} --prompt {{prompt}}"), tmp_path)
    outcome = await handle.wait()

    assert outcome.success is True
    assert outcome.exit_code == 0
    assert _echoed(outcome.output) == {"transport": "argv", "prompt": PROMPT}


@pytest.mark.asyncio
async def test_prompt_via_posix_shell(echo_agent: str, tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")
    config = SpawnConfig(shell="/bin/sh", run_in_shell=True)

    handle = await launcher.spawn(config, _command(f"{ECHO} --prompt {{prompt}}"), tmp_path)
    outcome = await handle.wait()

    assert outcome.success is True
    assert _echoed(outcome.output)["prompt"] == PROMPT


@pytest.mark.asyncio
async def test_prompt_via_raw_stdin(echo_agent: str, tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")
    config = SpawnConfig(send_prompt_via_raw_stdin=True)

    handle = await launcher.spawn(config, _command(f"{ECHO} {{prompt}}"), tmp_path)
    outcome = await handle.wait()

    assert outcome.success is True
    assert _echoed(outcome.output) == {"transport": "stdin", "prompt": PROMPT}


@pytest.mark.asyncio
async def test_prompt_via_structured_stdin(echo_agent: str, tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")
    config = SpawnConfig(send_prompt_via_structured_stdin=True)

    handle = await launcher.spawn(
        config,
        _command(f"{ECHO} {{prompt}}", agent_type=AgentType.CLAUDE_CODE),
        tmp_path,
    )
    outcome = await handle.wait()

    assert outcome.success is True
    assert _echoed(outcome.output) == {"transport": "stream-json", "prompt": PROMPT}


@pytest.mark.asyncio
async def test_prompt_file_is_removed_after_exit(echo_agent: str, tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")

    handle = await launcher.spawn(
        SpawnConfig.default(),
        _command(f"{ECHO} --prompt-file {{prompt_file}}"),
        tmp_path,
    )
    prompt_file = handle._prompt_file
    assert prompt_file is not None and prompt_file.read_text("utf-8") == PROMPT

    outcome = await handle.wait()

    assert _echoed(outcome.output) == {"transport": "file", "prompt": PROMPT}
    assert not prompt_file.exists()


@pytest.mark.asyncio
async def test_nonzero_exit_reports_stderr(echo_agent: str, tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")

    handle = await launcher.spawn(
        SpawnConfig.default(),
        _command(f"{ECHO} --exit-code 3 --prompt {{prompt}}"),
        tmp_path,
    )
    outcome = await handle.wait()

    assert outcome.success is False
    assert outcome.exit_code == 3
    assert outcome.error is not None and "exit code 3" in outcome.error


@pytest.mark.asyncio
async def test_timeout_terminates_process(echo_agent: str, tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")

    handle = await launcher.spawn(
        SpawnConfig.default(),
        _command(f"{ECHO} --sleep 10 --prompt {{prompt}}", timeout=0.5),
        tmp_path,
    )
    outcome = await handle.wait()

    assert outcome.success is False
    assert outcome.timed_out is True
    assert outcome.error == "Timed out after 0.5s"
    assert handle.process.returncode is not None


@pytest.mark.asyncio
async def test_missing_binary_raises_non_transient_launch_error(tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")

    with pytest.raises(LaunchError, match="Agent command not found: agent-autorun-missing-binary") as error:
        await launcher.spawn(
            SpawnConfig.default(),
            _command("agent-autorun-missing-binary {prompt}"),
            tmp_path,
        )
    assert error.value.transient is False


def test_template_requires_prompt_placeholder() -> None:
    with pytest.raises(LaunchError, match="must include"):
        _prepare_template("codex exec", SpawnConfig.default())
    with pytest.raises(LaunchError, match="empty"):
        _prepare_template("   ", SpawnConfig.default())


def test_stdin_transport_strips_prompt_from_argv() -> None:
    raw = _prepare_template("aider --message {prompt} --yes", SpawnConfig(send_prompt_via_raw_stdin=True))
    structured = _prepare_template(
        "claude --print {prompt}",
        SpawnConfig(send_prompt_via_structured_stdin=True),
    )
    already_flagged = _prepare_template(
        "claude --input-format stream-json {prompt}",
        SpawnConfig(send_prompt_via_structured_stdin=True),
    )

    assert raw == "aider --yes"
    assert structured == "claude --print --input-format stream-json"
    assert already_flagged == "claude --input-format stream-json"


@pytest.mark.parametrize(
    ("agent_type", "expected"),
    [
        (AgentType.AIDER, "aider --yes --no-auto-commits"),
        (AgentType.GEMINI_CLI, "gemini --yolo"),
        (AgentType.CODEX, "codex exec --skip-git-repo-check"),
        (AgentType.OPENCODE, "opencode run"),
    ],
)
def test_raw_stdin_drops_prompt_options_from_default_templates(agent_type: AgentType, expected: str) -> None:
    config = SpawnConfig(shell="cmd.exe", run_in_shell=True, send_prompt_via_raw_stdin=True)

    assert _prepare_template(DEFAULT_COMMAND_TEMPLATES[agent_type], config) == expected


def test_raw_stdin_drops_quoted_and_inline_prompt_values() -> None:
    config = SpawnConfig(send_prompt_via_raw_stdin=True)

    assert _prepare_template('agent --message "{prompt}" --yes', config) == "agent --yes"
    assert _prepare_template("agent --prompt={prompt} --yes", config) == "agent --yes"
    assert _prepare_template("agent -m {prompt}", config) == "agent"
    assert _prepare_template("agent --model gpt {prompt}", config) == "agent --model gpt"


def test_stream_json_message_shape() -> None:
    line = build_stream_json_message("héllo")

    assert line.endswith("\n")
    assert json.loads(line) == {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": "héllo"}]},
    }


def test_default_command_template() -> None:
    assert "{prompt}" in default_command_template(AgentType.CLAUDE_CODE)
    assert default_command_template(AgentType.CODEX, {"codex": "my-codex {prompt}"}) == "my-codex {prompt}"

    with pytest.raises(ConfigurationError, match="AGENT_AUTORUN_TERMINAL_COMMAND") as error:
        default_command_template(AgentType.TERMINAL)
    assert error.value.code == "NO_COMMAND_TEMPLATE"


def test_windows_rendering_quotes_values() -> None:
    rendered = _render_windows_command_template(
        template="agent --message {prompt}",
        values={"prompt": 'say "hi" now'},
    )
    inside_quotes = _render_windows_command_template(
        template='agent --message "{prompt}"',
        values={"prompt": 'say "hi"'},
    )

    assert rendered == 'agent --message "say \\"hi\\" now"'
    assert inside_quotes == 'agent --message "say \\"hi\\""'


def test_windows_cmd_invocation_wraps_command_line() -> None:
    invocation = _build_shell_invocation(
        template="codex exec",
        values={"prompt": "", "prompt_file": ""},
        shell="C:\\Windows\\System32\\cmd.exe",
        os_name="nt",
    )

    assert invocation.argv is None
    assert invocation.command_line == '"C:\\Windows\\System32\\cmd.exe" /d /s /c "codex exec"'
    assert invocation.command_head == "codex"


def test_windows_powershell_invocation_uses_command_argument() -> None:
    invocation = _build_shell_invocation(
        template="codex exec",
        values={"prompt": "", "prompt_file": ""},
        shell="pwsh.exe",
        os_name="nt",
    )

    assert invocation.argv == ["pwsh.exe", "-NoProfile", "-NonInteractive", "-Command", "codex exec"]


def test_shell_invocation_requires_shell() -> None:
    with pytest.raises(LaunchError, match="requires a shell"):
        _build_shell_invocation(template="codex {prompt}", values={"prompt": "x"}, shell=None, os_name="nt")


def test_remote_invocation_runs_over_ssh() -> None:
    invocation = _build_remote_invocation(
        template="codex exec {prompt}",
        values={"prompt": "it's done", "prompt_file": ""},
        remote=RemoteExecutionDescriptor(enabled=True, remote_id="dev-box"),
        cwd=Path("/work/my project"),
    )

    assert invocation.argv == [
        "ssh",
        *SSH_OPTIONS,
        "dev-box",
        "cd '/work/my project' && exec codex exec 'it'\"'\"'s done'",
    ]


def test_remote_invocation_prefers_working_dir_override() -> None:
    invocation = _build_remote_invocation(
        template="codex exec {prompt}",
        values={"prompt": "go", "prompt_file": ""},
        remote=RemoteExecutionDescriptor(enabled=True, remote_id="dev", working_dir_override="/srv/app"),
        cwd=Path("/local/path"),
    )

    assert invocation.argv is not None
    assert invocation.argv[-1] == "cd /srv/app && exec codex exec go"


def test_remote_invocation_requires_host() -> None:
    with pytest.raises(LaunchError, match="without a remote host"):
        _build_remote_invocation(
            template="codex {prompt}",
            values={"prompt": "x"},
            remote=RemoteExecutionDescriptor(enabled=True),
            cwd=None,
        )


@pytest.mark.asyncio
async def test_unparseable_template_raises_launch_error(tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")

    with pytest.raises(LaunchError, match="Agent command template cannot be parsed") as error:
        await launcher.spawn(SpawnConfig.default(), _command("codex exec 'unbalanced {prompt}"), tmp_path)
    assert error.value.transient is False


@pytest.mark.asyncio
async def test_missing_working_directory_is_reported(tmp_path: Path) -> None:
    launcher = CliProcessLauncher(os_name="posix")
    missing = tmp_path / "gone"

    with pytest.raises(LaunchError, match="Working directory does not exist") as error:
        await launcher.spawn(SpawnConfig.default(), _command(f"{ECHO} --prompt {{prompt}}"), missing)
    assert str(missing) in str(error.value)
    assert error.value.transient is False


def test_check_command_template_returns_executable() -> None:
    config = SpawnConfig.default()

    assert check_command_template("codex exec {prompt}", config, os_name="posix") == "codex"
    assert check_command_template(f"{ECHO} --prompt {{prompt}}", config, os_name="posix") == sys.executable
    assert (
        check_command_template(
            "codex exec {prompt}",
            config,
            remote=RemoteExecutionDescriptor(enabled=True, remote_id="dev-box"),
            os_name="posix",
        )
        == "ssh"
    )


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("codex exec 'unbalanced {prompt}", "No closing quotation"),
        ("codex {prompt} {prompt_file!x}", "Unsupported command template placeholder"),
        ("codex {prompt} {workspace}", "Unsupported command template placeholder"),
        ("codex exec", "must include"),
    ],
)
def test_check_command_template_rejects_broken_templates(template: str, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message) as error:
        check_command_template(template, SpawnConfig.default(), os_name="posix")
    assert error.value.code == "INVALID_COMMAND_TEMPLATE"
