from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_autorun.main import agent_autorun

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("agent-autorun CLI"),
]


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _invoke(*args: str):
    return CliRunner().invoke(agent_autorun, ["--log-level", "ERROR", *args])


def _json_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def test_run_playbook_reports_missing_catalog_as_json(tmp_path: Path) -> None:
    result = _invoke(
        "run-playbook",
        "--agent",
        "sess",
        "--playbook",
        "pb",
        "--json",
        "--catalog-path",
        str(tmp_path / "absent.json"),
    )

    assert result.exit_code == 1
    [payload] = _json_lines(result.output)
    assert payload["type"] == "error"
    assert payload["code"] == "CATALOG_NOT_FOUND"
    assert "timestamp" in payload


def test_run_playbook_reports_unknown_agent(catalog_path: Path) -> None:
    result = _invoke(
        "run-playbook",
        "--agent",
        "nobody",
        "--playbook",
        "pb",
        "--json",
        "--catalog-path",
        str(catalog_path),
    )

    assert result.exit_code == 1
    assert _json_lines(result.output)[0]["code"] == "AGENT_NOT_FOUND"


def test_run_playbook_text_error_exits_nonzero(catalog_path: Path) -> None:
    result = _invoke(
        "run-playbook",
        "--agent",
        "sess-alpha",
        "--playbook",
        "pb-missing",
        "--catalog-path",
        str(catalog_path),
    )

    assert result.exit_code == 1
    assert "Playbook document not found" in result.output


def test_run_playbook_fails_when_agent_binary_is_missing(
    catalog_path: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_AUTORUN_CODEX_COMMAND", "agent-autorun-missing-binary {prompt}")
    db_path = tmp_path / "stats.db"

    result = _invoke(
        "run-playbook",
        "--agent",
        "sess-alpha",
        "--playbook",
        "pb-nightly",
        "--json",
        "--catalog-path",
        str(catalog_path),
        "--db-path",
        str(db_path),
    )

    assert result.exit_code == 1
    [payload] = _json_lines(result.output)
    assert payload["type"] == "error"
    assert payload["code"] == "AGENT_NOT_FOUND_ON_PATH"
    assert "agent-autorun-missing-binary" in payload["message"]
    assert not db_path.exists()


def test_run_playbook_reports_invalid_settings_as_json(
    catalog_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_AUTORUN_BUSY_TIMEOUT_MS", "0")

    result = _invoke(
        "run-playbook",
        "--agent",
        "sess-alpha",
        "--playbook",
        "pb-nightly",
        "--json",
        "--catalog-path",
        str(catalog_path),
    )

    assert result.exit_code == 1
    [payload] = _json_lines(result.output)
    assert payload["code"] == "INVALID_SETTINGS"
    assert "AGENT_AUTORUN_BUSY_TIMEOUT_MS must be > 0." in payload["message"]


def test_run_playbook_dry_run(catalog_path: Path, tmp_path: Path) -> None:
    db_path = tmp_path / "stats.db"

    result = _invoke(
        "run-playbook",
        "--agent",
        "sess-alpha",
        "--playbook",
        "pb-nightly",
        "--dry-run",
        "--catalog-path",
        str(catalog_path),
        "--db-path",
        str(db_path),
    )

    assert result.exit_code == 0, result.output
    assert "Dry run mode - no changes will be made" in result.output
    assert "[dry-run] Would run task 1: setup" in result.output
    assert "[dry-run] Would run task 2: tests" in result.output
    assert not db_path.exists()


def test_run_playbook_with_echo_agent_records_stats(
    catalog_path: Path,
    tmp_path: Path,
    echo_agent: str,
) -> None:
    db_path = tmp_path / "stats.db"

    result = _invoke(
        "run-playbook",
        "--agent",
        "sess-alpha",
        "--playbook",
        "pb-nightly",
        "--json",
        "--catalog-path",
        str(catalog_path),
        "--db-path",
        str(db_path),
    )

    assert result.exit_code == 0, result.output
    events = _json_lines(result.output)
    assert [event["type"] for event in events] == [
        "task-start",
        "task-complete",
        "task-start",
        "task-complete",
        "run-complete",
    ]
    assert events[-1]["tasks_completed"] == 2
    assert events[-1]["stop_reason"] == "completed"

    exported = _invoke("stats", "export", "--db-path", str(db_path))
    assert exported.exit_code == 0, exported.output
    rows = [line for line in exported.output.splitlines() if line.startswith('"')]
    assert len(rows) == 2
    assert all('"codex","auto"' in row for row in rows)


def test_stats_show_on_fresh_database(tmp_path: Path) -> None:
    result = _invoke("stats", "show", "--db-path", str(tmp_path / "stats.db"), "--range", "day")

    assert result.exit_code == 0, result.output
    assert "Stats for range=day" in result.output
    assert "Queries: total=0 duration_ms=0 avg_ms=0" in result.output
    assert "Sources: user=0 auto=0" in result.output


def test_stats_export_writes_file(tmp_path: Path) -> None:
    output = tmp_path / "out" / "events.csv"

    result = _invoke("stats", "export", "--db-path", str(tmp_path / "stats.db"), "--output", str(output))

    assert result.exit_code == 0, result.output
    assert "Exported 0 query events" in result.output
    assert output.read_text("utf-8").startswith("id,sessionId,agentType")


def test_stats_clear_rejects_non_positive_days(tmp_path: Path) -> None:
    result = _invoke("stats", "clear", "--db-path", str(tmp_path / "stats.db"), "--days", "0")

    assert result.exit_code == 1
    assert "olderThanDays must be greater than 0" in result.output


def test_stats_clear_and_vacuum(tmp_path: Path) -> None:
    db_path = tmp_path / "stats.db"

    cleared = _invoke("stats", "clear", "--db-path", str(db_path), "--days", "30")
    vacuumed = _invoke("stats", "vacuum", "--db-path", str(db_path))

    assert cleared.exit_code == 0, cleared.output
    assert "query_events=0" in cleared.output
    assert vacuumed.exit_code == 0, vacuumed.output
    assert "VACUUM completed" in vacuumed.output


def test_stats_migrations(tmp_path: Path) -> None:
    result = _invoke("stats", "migrations", "--db-path", str(tmp_path / "stats.db"))

    assert result.exit_code == 0, result.output
    assert "Schema version: current=3 target=3" in result.output
    assert "v1 success" in result.output
    assert "v3 success" in result.output
