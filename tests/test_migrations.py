from __future__ import annotations

from pathlib import Path

import allure
import pytest
import sqlalchemy as sa
from alembic.operations import Operations

from agent_autorun.errors import MigrationError
from agent_autorun.stats.common import build_sqlite_engine
from agent_autorun.stats.migrations import (
    MIGRATIONS,
    Migration,
    get_current_version,
    get_migration_history,
    get_target_version,
    run_migrations,
)

pytestmark = [
    allure.epic("Usage Stats"),
    allure.feature("Schema Migrations"),
]


def _table_names(engine: sa.engine.Engine) -> set[str]:
    return set(sa.inspect(engine).get_table_names())


def _create_notes(op: Operations) -> None:
    op.create_table("notes", sa.Column("id", sa.Text, primary_key=True))


def _half_applied(op: Operations) -> None:
    op.create_table("drafts", sa.Column("id", sa.Text, primary_key=True))
    op.add_column("notes", sa.Column("body", sa.Text))
    raise RuntimeError("boom")


def test_builtin_migrations_create_stats_schema(tmp_path: Path) -> None:
    engine = build_sqlite_engine(db_path=tmp_path / "stats.db", busy_timeout_ms=1_000)
    try:
        applied = run_migrations(engine)

        assert applied == [1, 2, 3]
        assert get_target_version() == len(MIGRATIONS) == 3
        assert {"query_events", "auto_run_sessions", "auto_run_tasks", "session_lifecycle"} <= _table_names(
            engine,
        )
        columns = {column["name"] for column in sa.inspect(engine).get_columns("query_events")}
        assert "is_remote" in columns
        assert run_migrations(engine) == []
    finally:
        engine.dispose()


def test_failed_step_rolls_back_and_is_logged(tmp_path: Path) -> None:
    engine = build_sqlite_engine(db_path=tmp_path / "stats.db", busy_timeout_ms=1_000)
    steps = [
        Migration(1, "Create notes", _create_notes),
        Migration(2, "Broken step", _half_applied),
    ]
    try:
        with pytest.raises(MigrationError, match="Migration v2 failed: boom") as error:
            run_migrations(engine, steps)
        assert error.value.version == 2

        with engine.connect() as connection:
            assert get_current_version(connection) == 1
        assert "drafts" not in _table_names(engine)
        columns = {column["name"] for column in sa.inspect(engine).get_columns("notes")}
        assert columns == {"id"}

        history = get_migration_history(engine)
        assert [(record.version, record.status) for record in history] == [
            (1, "success"),
            (2, "failed"),
        ]
        assert history[1].error_message == "boom"
    finally:
        engine.dispose()


def test_retry_after_fix_marks_step_successful(tmp_path: Path) -> None:
    engine = build_sqlite_engine(db_path=tmp_path / "stats.db", busy_timeout_ms=1_000)
    try:
        with pytest.raises(MigrationError):
            run_migrations(engine, [Migration(1, "Broken", lambda op: _half_applied(op))])

        assert run_migrations(engine, [Migration(1, "Create notes", _create_notes)]) == [1]
        [record] = get_migration_history(engine)
        assert record.status == "success"
        assert record.description == "Create notes"
        assert record.error_message is None
    finally:
        engine.dispose()
