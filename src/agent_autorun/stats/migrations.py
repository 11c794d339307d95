"""Forward-only schema migrations for the stats database.

Each step runs inside one transaction together with its ``_migrations`` log
row and the ``PRAGMA user_version`` bump, so a failing step leaves the
previous schema untouched.  Steps are expressed with Alembic's
``Operations`` API bound to the step's connection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import sqlalchemy as sa
from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from agent_autorun.errors import MigrationError
from agent_autorun.stats.common import now_ms
from agent_autorun.stats.models import MigrationRecord
from agent_autorun.stats.tables import MigrationRow

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Migration:
    """One schema version step."""

    version: int
    description: str
    apply: Callable[[Operations], None]


def _v1_initial_schema(op: Operations) -> None:
    op.create_table(
        "query_events",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("session_id", sa.Text, nullable=False),
        sa.Column("agent_type", sa.Text, nullable=False),
        sa.Column("source", sa.Text, nullable=False),
        sa.Column("start_time", sa.Integer, nullable=False),
        sa.Column("duration", sa.Integer, nullable=False),
        sa.Column("project_path", sa.Text),
        sa.Column("tab_id", sa.Text),
        sa.CheckConstraint("source IN ('user', 'auto')", name="ck_query_source"),
    )
    op.create_table(
        "auto_run_sessions",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("session_id", sa.Text, nullable=False),
        sa.Column("agent_type", sa.Text, nullable=False),
        sa.Column("document_path", sa.Text),
        sa.Column("start_time", sa.Integer, nullable=False),
        sa.Column("duration", sa.Integer, nullable=False),
        sa.Column("tasks_total", sa.Integer),
        sa.Column("tasks_completed", sa.Integer),
        sa.Column("project_path", sa.Text),
    )
    op.create_table(
        "auto_run_tasks",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column(
            "auto_run_session_id",
            sa.Text,
            sa.ForeignKey("auto_run_sessions.id"),
            nullable=False,
        ),
        sa.Column("session_id", sa.Text, nullable=False),
        sa.Column("agent_type", sa.Text, nullable=False),
        sa.Column("task_index", sa.Integer, nullable=False),
        sa.Column("task_content", sa.Text),
        sa.Column("start_time", sa.Integer, nullable=False),
        sa.Column("duration", sa.Integer, nullable=False),
        sa.Column("success", sa.Integer, nullable=False),
        sa.CheckConstraint("success IN (0, 1)", name="ck_task_success"),
    )
    op.create_index("idx_query_start_time", "query_events", ["start_time"])
    op.create_index("idx_query_agent_type", "query_events", ["agent_type"])
    op.create_index("idx_query_source", "query_events", ["source"])
    op.create_index("idx_query_session", "query_events", ["session_id"])
    op.create_index("idx_query_project_path", "query_events", ["project_path"])
    op.create_index("idx_query_agent_time", "query_events", ["agent_type", "start_time"])
    op.create_index("idx_auto_session_start", "auto_run_sessions", ["start_time"])
    op.create_index("idx_task_auto_session", "auto_run_tasks", ["auto_run_session_id"])
    op.create_index("idx_task_start", "auto_run_tasks", ["start_time"])


def _v2_remote_flag(op: Operations) -> None:
    op.add_column("query_events", sa.Column("is_remote", sa.Integer))
    op.create_index("idx_query_is_remote", "query_events", ["is_remote"])


def _v3_session_lifecycle(op: Operations) -> None:
    op.create_table(
        "session_lifecycle",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("session_id", sa.Text, nullable=False, unique=True),
        sa.Column("agent_type", sa.Text, nullable=False),
        sa.Column("project_path", sa.Text),
        sa.Column("created_at", sa.Integer, nullable=False),
        sa.Column("closed_at", sa.Integer),
        sa.Column("duration", sa.Integer),
        sa.Column("is_remote", sa.Integer),
    )
    op.create_index("idx_session_created_at", "session_lifecycle", ["created_at"])
    op.create_index("idx_session_agent_type", "session_lifecycle", ["agent_type"])


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "Initial schema: query_events, auto_run_sessions, auto_run_tasks", _v1_initial_schema),
    Migration(2, "Add is_remote column to query_events", _v2_remote_flag),
    Migration(3, "Add session_lifecycle table", _v3_session_lifecycle),
)


def get_target_version(migrations: Sequence[Migration] = MIGRATIONS) -> int:
    return max((migration.version for migration in migrations), default=0)


def get_current_version(connection: Connection) -> int:
    return int(connection.exec_driver_sql("PRAGMA user_version").scalar() or 0)


def ensure_migrations_table(engine: Engine) -> None:
    with engine.begin() as connection:
        MigrationRow.__table__.create(connection, checkfirst=True)  # type: ignore[attr-defined]


def run_migrations(engine: Engine, migrations: Sequence[Migration] = MIGRATIONS) -> list[int]:
    """Apply pending migrations in version order and return the applied versions."""

    ensure_migrations_table(engine)
    with engine.connect() as connection:
        current = get_current_version(connection)

    pending = sorted(
        (migration for migration in migrations if migration.version > current),
        key=lambda migration: migration.version,
    )
    if not pending:
        logger.debug("Stats schema is up to date at v%s", current)
        return []

    applied: list[int] = []
    for migration in pending:
        logger.info("Applying stats migration v%s: %s", migration.version, migration.description)
        try:
            with engine.begin() as connection:
                migration.apply(Operations(MigrationContext.configure(connection)))
                _write_log_row(connection, migration, status=STATUS_SUCCESS)
                connection.exec_driver_sql(f"PRAGMA user_version = {int(migration.version)}")
        except Exception as error:
            logger.error(
                "Stats migration v%s failed and was rolled back: %s",
                migration.version,
                error,
            )
            _record_failure(engine, migration, error)
            raise MigrationError(migration.version, str(error)) from error
        applied.append(migration.version)

    logger.info("Stats schema migrated from v%s to v%s", current, applied[-1])
    return applied


def get_migration_history(engine: Engine) -> list[MigrationRecord]:
    with Session(engine) as session:
        rows = session.exec(select(MigrationRow).order_by(MigrationRow.version)).all()
    return [
        MigrationRecord(
            version=row.version,
            description=row.description,
            applied_at=row.applied_at,
            status=row.status,
            error_message=row.error_message,
        )
        for row in rows
    ]


def _write_log_row(
    connection: Connection,
    migration: Migration,
    *,
    status: str,
    error_message: str | None = None,
) -> None:
    table = MigrationRow.__table__  # type: ignore[attr-defined]
    values = {
        "version": migration.version,
        "description": migration.description,
        "applied_at": now_ms(),
        "status": status,
        "error_message": error_message,
    }
    statement = sqlite_insert(table).values(**values)
    statement = statement.on_conflict_do_update(
        index_elements=[table.c.version],
        set_={key: statement.excluded[key] for key in values if key != "version"},
    )
    connection.execute(statement)


def _record_failure(engine: Engine, migration: Migration, error: Exception) -> None:
    try:
        with engine.begin() as connection:
            _write_log_row(
                connection,
                migration,
                status=STATUS_FAILED,
                error_message=str(error),
            )
    except SQLAlchemyError:
        logger.exception("Could not record failure of stats migration v%s", migration.version)
