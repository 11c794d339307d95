from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_autorun.config import Settings, default_config_dir

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_default_config_dir_per_platform(tmp_path: Path) -> None:
    assert default_config_dir(platform="darwin", environ={}, home=tmp_path) == (
        tmp_path / "Library" / "Application Support" / "agent-autorun"
    )
    assert default_config_dir(
        platform="win32",
        environ={"APPDATA": str(tmp_path / "roaming")},
        home=tmp_path,
    ) == (tmp_path / "roaming" / "agent-autorun")
    assert default_config_dir(platform="linux", environ={}, home=tmp_path) == (
        tmp_path / ".config" / "agent-autorun"
    )
    assert default_config_dir(
        platform="linux",
        environ={"XDG_CONFIG_HOME": str(tmp_path / "xdg")},
        home=tmp_path,
    ) == (tmp_path / "xdg" / "agent-autorun")


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_AUTORUN_DB_PATH", str(tmp_path / "custom.db"))
    monkeypatch.setenv("AGENT_AUTORUN_LOG_LEVEL", "debug")
    monkeypatch.setenv("AGENT_AUTORUN_TASK_TIMEOUT_SECONDS", "90")
    monkeypatch.setenv("AGENT_AUTORUN_SHELL", "  C:\\tools\\pwsh.exe  ")
    monkeypatch.setenv("AGENT_AUTORUN_GEMINI_CLI_COMMAND", "gemini -p {prompt}")
    monkeypatch.setenv("AGENT_AUTORUN_RECORD_MAX_ATTEMPTS", "5")

    settings = Settings.from_env()

    assert settings.stats.db_path == tmp_path / "custom.db"
    assert settings.log_level == "DEBUG"
    assert settings.launcher.task_timeout_seconds == 90
    assert settings.launcher.custom_shell_path == "C:\\tools\\pwsh.exe"
    assert settings.launcher.command_templates == {"gemini-cli": "gemini -p {prompt}"}
    assert settings.recorder.max_attempts == 5
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_AUTORUN_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.stats.db_path == tmp_path / "cli.db"


def test_defaults_live_under_config_dir() -> None:
    settings = Settings.from_env()
    config_dir = default_config_dir()

    assert settings.catalog_path == config_dir / "playbooks.json"
    assert settings.history_path == config_dir / "history.json"
    assert settings.stats.db_path == config_dir / "stats.db"
    assert settings.stats.vacuum_threshold_bytes == 100 * 1024 * 1024
    assert settings.launcher.custom_shell_path is None


def test_validate_rejects_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_AUTORUN_LOG_LEVEL", "chatty")
    with pytest.raises(ValueError, match="AGENT_AUTORUN_LOG_LEVEL"):
        Settings.from_env().validate()

    monkeypatch.setenv("AGENT_AUTORUN_LOG_LEVEL", "INFO")
    monkeypatch.setenv("AGENT_AUTORUN_RECORD_MAX_ATTEMPTS", "0")
    with pytest.raises(ValueError, match="MAX_ATTEMPTS"):
        Settings.from_env().validate()

    monkeypatch.setenv("AGENT_AUTORUN_RECORD_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("AGENT_AUTORUN_CODEX_COMMAND", "   ")
    with pytest.raises(ValueError, match="Empty command template"):
        Settings.from_env().validate()
