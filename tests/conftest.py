"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import shlex
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_autorun.stats import StatsStore

ECHO_AGENT = f"{shlex.quote(sys.executable)} -m agent_autorun.launcher.echo_agent"
ECHO_AGENT_COMMAND_TEMPLATE = f"{ECHO_AGENT} --prompt {{prompt}}"
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every default path at a per-test directory."""

    config_dir = tmp_path / "config"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_dir))
    monkeypatch.setenv("APPDATA", str(config_dir))
    for name in (
        "AGENT_AUTORUN_CATALOG_PATH",
        "AGENT_AUTORUN_HISTORY_PATH",
        "AGENT_AUTORUN_DB_PATH",
        "AGENT_AUTORUN_LOG_LEVEL",
        "AGENT_AUTORUN_SHELL",
        "AGENT_AUTORUN_CODEX_COMMAND",
        "AGENT_AUTORUN_CLAUDE_CODE_COMMAND",
    ):
        monkeypatch.delenv(name, raising=False)
    return config_dir


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[StatsStore]:
    stats_store = StatsStore(tmp_path / "stats.db")
    stats_store.initialize()
    yield stats_store
    stats_store.close()


@pytest.fixture()
def echo_agent(monkeypatch: pytest.MonkeyPatch) -> str:
    """Route codex playbook runs through the local echo agent."""

    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(filter(None, [str(SRC_DIR), os.getenv("PYTHONPATH")])))
    monkeypatch.setenv("AGENT_AUTORUN_CODEX_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def catalog_path(tmp_path: Path) -> Path:
    """Catalog with one codex session owning a two-document playbook."""

    workspace = tmp_path / "workspace"
    docs = workspace / "autorun"
    docs.mkdir(parents=True)
    (docs / "setup.md").write_text("Install dependencies.", "utf-8")
    (docs / "tests.md").write_text("Run the test suite.", "utf-8")

    path = tmp_path / "playbooks.json"
    path.write_text(
        json.dumps(
            {
                "sessions": [
                    {
                        "id": "sess-alpha-1",
                        "name": "Alpha",
                        "agent_type": "codex",
                        "cwd": "workspace",
                        "auto_run_folder": "workspace/autorun",
                    },
                    {
                        "id": "sess-beta-2",
                        "name": "Beta",
                        "agent_type": "terminal",
                        "cwd": "workspace",
                    },
                ],
                "playbooks": [
                    {
                        "id": "pb-nightly",
                        "session_id": "sess-alpha-1",
                        "name": "Nightly",
                        "documents": ["setup", {"filename": "tests.md"}],
                        "prompt_template": "Task {document_name}: {document}",
                    },
                    {
                        "id": "pb-missing-doc",
                        "session_id": "sess-alpha-1",
                        "name": "Broken",
                        "documents": ["nope"],
                    },
                ],
            },
        ),
        "utf-8",
    )
    return path
