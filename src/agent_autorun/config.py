"""Runtime configuration for spawn resolution, playbook runs and stats storage."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from agent_autorun.agents.capabilities import AgentType

DEFAULT_VACUUM_THRESHOLD_BYTES = 100 * 1024 * 1024
APP_DIR_NAME = "agent-autorun"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def default_config_dir(
    *,
    platform: str | None = None,
    environ: dict[str, str] | None = None,
    home: Path | None = None,
) -> Path:
    """Return the per-user configuration directory for the current platform."""

    current_platform = platform or sys.platform
    env = os.environ if environ is None else environ
    home_dir = home or Path.home()
    if current_platform == "darwin":
        return home_dir / "Library" / "Application Support" / APP_DIR_NAME
    if current_platform == "win32":
        appdata = env.get("APPDATA")
        base = Path(appdata) if appdata else home_dir / "AppData" / "Roaming"
        return base / APP_DIR_NAME
    xdg = env.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else home_dir / ".config"
    return base / APP_DIR_NAME


@dataclass(slots=True)
class StatsSettings:
    """Stats database settings."""

    db_path: Path = field(default_factory=lambda: default_config_dir() / "stats.db")
    busy_timeout_ms: int = 5_000
    vacuum_threshold_bytes: int = DEFAULT_VACUUM_THRESHOLD_BYTES


@dataclass(slots=True)
class RecorderSettings:
    """Bounded retry settings for stats recording."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.1


@dataclass(slots=True)
class LauncherSettings:
    """Agent process launch settings."""

    task_timeout_seconds: int = 1_800
    custom_shell_path: str | None = None
    command_templates: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    catalog_path: Path = field(default_factory=lambda: default_config_dir() / "playbooks.json")
    history_path: Path = field(default_factory=lambda: default_config_dir() / "history.json")
    log_level: str = "INFO"
    stats: StatsSettings = field(default_factory=StatsSettings)
    recorder: RecorderSettings = field(default_factory=RecorderSettings)
    launcher: LauncherSettings = field(default_factory=LauncherSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        config_dir = default_config_dir()
        return cls(
            catalog_path=Path(
                os.getenv("AGENT_AUTORUN_CATALOG_PATH", str(config_dir / "playbooks.json")),
            ),
            history_path=Path(
                os.getenv("AGENT_AUTORUN_HISTORY_PATH", str(config_dir / "history.json")),
            ),
            log_level=os.getenv("AGENT_AUTORUN_LOG_LEVEL", "INFO").strip().upper(),
            stats=StatsSettings(
                db_path=db_path
                or Path(os.getenv("AGENT_AUTORUN_DB_PATH", str(config_dir / "stats.db"))),
                busy_timeout_ms=int(os.getenv("AGENT_AUTORUN_BUSY_TIMEOUT_MS", "5000")),
                vacuum_threshold_bytes=int(
                    os.getenv(
                        "AGENT_AUTORUN_VACUUM_THRESHOLD_BYTES",
                        str(DEFAULT_VACUUM_THRESHOLD_BYTES),
                    ),
                ),
            ),
            recorder=RecorderSettings(
                max_attempts=int(os.getenv("AGENT_AUTORUN_RECORD_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(
                    os.getenv("AGENT_AUTORUN_RECORD_BASE_DELAY_SECONDS", "0.1"),
                ),
            ),
            launcher=LauncherSettings(
                task_timeout_seconds=int(
                    os.getenv("AGENT_AUTORUN_TASK_TIMEOUT_SECONDS", "1800"),
                ),
                custom_shell_path=_env_optional("AGENT_AUTORUN_SHELL"),
                command_templates=_collect_command_templates(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.stats.busy_timeout_ms <= 0:
            raise ValueError("AGENT_AUTORUN_BUSY_TIMEOUT_MS must be > 0.")
        if self.recorder.max_attempts < 1:
            raise ValueError("AGENT_AUTORUN_RECORD_MAX_ATTEMPTS must be >= 1.")
        if self.recorder.base_delay_seconds < 0:
            raise ValueError("AGENT_AUTORUN_RECORD_BASE_DELAY_SECONDS must be >= 0.")
        if self.launcher.task_timeout_seconds <= 0:
            raise ValueError("AGENT_AUTORUN_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid AGENT_AUTORUN_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(_LOG_LEVELS)}.",
            )
        for agent, template in self.launcher.command_templates.items():
            if not template.strip():
                raise ValueError(f"Empty command template for agent={agent!r}")


def _collect_command_templates() -> dict[str, str]:
    templates: dict[str, str] = {}
    for agent_type in AgentType:
        env_name = f"AGENT_AUTORUN_{agent_type.value.upper().replace('-', '_')}_COMMAND"
        value = os.getenv(env_name)
        if value is not None:
            templates[agent_type.value] = value
    return templates


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()
