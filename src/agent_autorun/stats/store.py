"""SQLModel-backed usage stats store."""

from __future__ import annotations

import csv
import io
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, delete, select

from agent_autorun.errors import RetentionValidationError, StoreNotInitializedError
from agent_autorun.stats import migrations
from agent_autorun.stats.aggregations import get_aggregated_stats
from agent_autorun.stats.common import (
    build_sqlite_engine,
    connect_sqlite_with_policy,
    generate_id,
    now_ms,
)
from agent_autorun.stats.models import (
    DAY_MS,
    AutoRunSession,
    AutoRunTask,
    ClearResult,
    MigrationRecord,
    QueryEvent,
    QueryEventFilters,
    QuerySource,
    SessionLifecycleEvent,
    StatsAggregation,
    StatsTimeRange,
    VacuumCheck,
    VacuumResult,
)
from agent_autorun.stats.paths import normalize_path
from agent_autorun.stats.tables import (
    AutoRunSessionRow,
    AutoRunTaskRow,
    MetaRow,
    QueryEventRow,
    SessionLifecycleRow,
)

logger = logging.getLogger(__name__)

DEFAULT_VACUUM_THRESHOLD_BYTES = 100 * 1024 * 1024
LAST_VACUUM_KEY = "last_vacuum_at"
CSV_HEADERS = (
    "id",
    "sessionId",
    "agentType",
    "source",
    "startTime",
    "duration",
    "projectPath",
    "tabId",
    "isRemote",
)
_UPDATABLE_SESSION_FIELDS = ("duration", "tasks_total", "tasks_completed", "document_path")


class StatsStore:
    """Durable store of usage facts with versioned schema and maintenance."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        vacuum_threshold_bytes: int = DEFAULT_VACUUM_THRESHOLD_BYTES,
    ) -> None:
        self._db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.vacuum_threshold_bytes = vacuum_threshold_bytes
        self._engine: Engine | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    # Lifecycle

    def initialize(self) -> None:
        """Open the database, recover from corruption, migrate and compact if needed."""

        if self._engine is not None:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        if self._db_path.exists() and not self._file_passes_integrity_check():
            backup_path = self._move_corrupt_database()
            logger.warning(
                "Stats database failed integrity check; moved to %s and recreating",
                backup_path,
            )

        engine = build_sqlite_engine(db_path=self._db_path, busy_timeout_ms=self.busy_timeout_ms)
        try:
            with engine.begin() as connection:
                MetaRow.__table__.create(connection, checkfirst=True)  # type: ignore[attr-defined]
            migrations.run_migrations(engine)
        except Exception:
            engine.dispose()
            raise

        self._engine = engine
        logger.info("Stats database initialized at %s", self._db_path)

        check = self.vacuum_if_needed()
        if check.result is not None and not check.result.success:
            logger.warning("Compaction on open failed: %s", check.result.error)

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        logger.info("Stats database closed")

    def is_ready(self) -> bool:
        return self._engine is not None

    def database_size(self) -> int:
        try:
            return self._db_path.stat().st_size
        except OSError:
            return 0

    # Inserts and updates

    def insert_query_event(self, event: QueryEvent) -> str:
        engine = self._require_engine()
        event_id = event.id or generate_id()
        with Session(engine) as session:
            session.add(
                QueryEventRow(
                    id=event_id,
                    session_id=event.session_id,
                    agent_type=event.agent_type,
                    source=QuerySource(event.source).value,
                    start_time=event.start_time,
                    duration=event.duration,
                    project_path=normalize_path(event.project_path),
                    tab_id=event.tab_id,
                    is_remote=event.is_remote,
                ),
            )
            session.commit()
        logger.debug("Recorded query event %s for session %s", event_id, event.session_id)
        return event_id

    def insert_auto_run_session(self, run: AutoRunSession) -> str:
        engine = self._require_engine()
        run_id = run.id or generate_id()
        with Session(engine) as session:
            session.add(
                AutoRunSessionRow(
                    id=run_id,
                    session_id=run.session_id,
                    agent_type=run.agent_type,
                    document_path=normalize_path(run.document_path),
                    start_time=run.start_time,
                    duration=run.duration,
                    tasks_total=run.tasks_total,
                    tasks_completed=run.tasks_completed,
                    project_path=normalize_path(run.project_path),
                ),
            )
            session.commit()
        logger.debug("Recorded auto-run session %s", run_id)
        return run_id

    def update_auto_run_session(self, run_id: str, **fields: Any) -> bool:
        """Apply the provided terminal fields; return False when nothing matched."""

        engine = self._require_engine()
        unknown = set(fields) - set(_UPDATABLE_SESSION_FIELDS)
        if unknown:
            raise TypeError(f"Unsupported auto-run session fields: {sorted(unknown)}")
        values = {key: value for key, value in fields.items() if value is not None}
        if "document_path" in values:
            values["document_path"] = normalize_path(values["document_path"])
        if not values:
            return False

        with Session(engine) as session:
            result = session.exec(
                update(AutoRunSessionRow)
                .where(col(AutoRunSessionRow.id) == run_id)
                .values(**values),
            )
            session.commit()
            changed = result.rowcount > 0
        logger.debug("Updated auto-run session %s: %s", run_id, changed)
        return changed

    def insert_auto_run_task(self, task: AutoRunTask) -> str:
        engine = self._require_engine()
        task_id = task.id or generate_id()
        with Session(engine) as session:
            session.add(
                AutoRunTaskRow(
                    id=task_id,
                    auto_run_session_id=task.auto_run_session_id,
                    session_id=task.session_id,
                    agent_type=task.agent_type,
                    task_index=task.task_index,
                    task_content=task.task_content,
                    start_time=task.start_time,
                    duration=task.duration,
                    success=task.success,
                ),
            )
            session.commit()
        logger.debug("Recorded auto-run task %s (index %s)", task_id, task.task_index)
        return task_id

    def record_session_created(self, event: SessionLifecycleEvent) -> str:
        engine = self._require_engine()
        event_id = event.id or generate_id()
        with Session(engine) as session:
            session.add(
                SessionLifecycleRow(
                    id=event_id,
                    session_id=event.session_id,
                    agent_type=event.agent_type,
                    project_path=normalize_path(event.project_path),
                    created_at=event.created_at,
                    is_remote=event.is_remote,
                ),
            )
            session.commit()
        logger.debug("Recorded session created: %s", event.session_id)
        return event_id

    def record_session_closed(self, session_id: str, closed_at: int) -> bool:
        engine = self._require_engine()
        with Session(engine) as session:
            row = session.exec(
                select(SessionLifecycleRow).where(SessionLifecycleRow.session_id == session_id),
            ).one_or_none()
            if row is None:
                logger.debug("Session not found for closure: %s", session_id)
                return False
            row.closed_at = closed_at
            row.duration = closed_at - row.created_at
            session.add(row)
            session.commit()
            logger.debug("Recorded session closed: %s, duration: %sms", session_id, row.duration)
        return True

    # Queries

    def get_query_events(
        self,
        time_range: StatsTimeRange | str,
        filters: QueryEventFilters | None = None,
    ) -> list[QueryEvent]:
        engine = self._require_engine()
        statement = select(QueryEventRow).where(
            col(QueryEventRow.start_time) >= _cutoff(time_range),
        )
        if filters is not None:
            if filters.agent_type:
                statement = statement.where(QueryEventRow.agent_type == filters.agent_type)
            if filters.source:
                statement = statement.where(
                    QueryEventRow.source == QuerySource(filters.source).value,
                )
            if filters.project_path:
                statement = statement.where(
                    QueryEventRow.project_path == normalize_path(filters.project_path),
                )
            if filters.session_id:
                statement = statement.where(QueryEventRow.session_id == filters.session_id)
        statement = statement.order_by(col(QueryEventRow.start_time).desc())

        with Session(engine) as session:
            rows = session.exec(statement).all()
        return [_to_query_event(row) for row in rows]

    def get_auto_run_sessions(self, time_range: StatsTimeRange | str) -> list[AutoRunSession]:
        engine = self._require_engine()
        with Session(engine) as session:
            rows = session.exec(
                select(AutoRunSessionRow)
                .where(col(AutoRunSessionRow.start_time) >= _cutoff(time_range))
                .order_by(col(AutoRunSessionRow.start_time).desc()),
            ).all()
        return [
            AutoRunSession(
                id=row.id,
                session_id=row.session_id,
                agent_type=row.agent_type,
                document_path=row.document_path,
                start_time=row.start_time,
                duration=row.duration,
                tasks_total=row.tasks_total,
                tasks_completed=row.tasks_completed,
                project_path=row.project_path,
            )
            for row in rows
        ]

    def get_auto_run_tasks(self, auto_run_session_id: str) -> list[AutoRunTask]:
        engine = self._require_engine()
        with Session(engine) as session:
            rows = session.exec(
                select(AutoRunTaskRow)
                .where(AutoRunTaskRow.auto_run_session_id == auto_run_session_id)
                .order_by(col(AutoRunTaskRow.task_index).asc()),
            ).all()
        return [
            AutoRunTask(
                id=row.id,
                auto_run_session_id=row.auto_run_session_id,
                session_id=row.session_id,
                agent_type=row.agent_type,
                task_index=row.task_index,
                task_content=row.task_content,
                start_time=row.start_time,
                duration=row.duration,
                success=bool(row.success),
            )
            for row in rows
        ]

    def get_session_lifecycle_events(
        self,
        time_range: StatsTimeRange | str,
    ) -> list[SessionLifecycleEvent]:
        engine = self._require_engine()
        with Session(engine) as session:
            rows = session.exec(
                select(SessionLifecycleRow)
                .where(col(SessionLifecycleRow.created_at) >= _cutoff(time_range))
                .order_by(col(SessionLifecycleRow.created_at).desc()),
            ).all()
        return [
            SessionLifecycleEvent(
                id=row.id,
                session_id=row.session_id,
                agent_type=row.agent_type,
                project_path=row.project_path,
                created_at=row.created_at,
                closed_at=row.closed_at,
                duration=row.duration,
                is_remote=row.is_remote,
            )
            for row in rows
        ]

    def get_aggregated_stats(self, time_range: StatsTimeRange | str) -> StatsAggregation:
        engine = self._require_engine()
        with Session(engine) as session:
            return get_aggregated_stats(session, cutoff_ms=_cutoff(time_range))

    def export_to_csv(self, time_range: StatsTimeRange | str) -> str:
        """Render query events as CSV with every value double-quoted."""

        events = self.get_query_events(time_range)
        buffer = io.StringIO()
        buffer.write(",".join(CSV_HEADERS) + "\n")
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        for event in events:
            writer.writerow(
                (
                    event.id,
                    event.session_id,
                    event.agent_type,
                    event.source.value,
                    _iso_from_ms(event.start_time),
                    event.duration,
                    event.project_path or "",
                    event.tab_id or "",
                    "" if event.is_remote is None else str(event.is_remote).lower(),
                ),
            )
        return buffer.getvalue().rstrip("\n")

    # Maintenance

    def vacuum(self) -> VacuumResult:
        if self._engine is None:
            return VacuumResult(success=False, error="Database not initialized")

        try:
            connection = connect_sqlite_with_policy(
                db_path=self._db_path,
                busy_timeout_ms=self.busy_timeout_ms,
            )
            try:
                connection.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                size_before = self.database_size()
                logger.info("Starting VACUUM (current size: %.2f MB)", size_before / 1024 / 1024)
                connection.execute("VACUUM")
                connection.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            finally:
                connection.close()
        except sqlite3.Error as error:
            logger.error("VACUUM failed: %s", error)
            return VacuumResult(success=False, error=str(error))

        size_after = self.database_size()
        bytes_freed = max(0, size_before - size_after)
        logger.info(
            "VACUUM completed: %.2f MB -> %.2f MB (freed %.2f MB)",
            size_before / 1024 / 1024,
            size_after / 1024 / 1024,
            bytes_freed / 1024 / 1024,
        )
        self._set_meta(LAST_VACUUM_KEY, str(now_ms()))
        return VacuumResult(success=True, bytes_freed=bytes_freed)

    def vacuum_if_needed(self, threshold_bytes: int | None = None) -> VacuumCheck:
        """Compact when the file reaches the threshold; a threshold <= 0 always compacts."""

        threshold = self.vacuum_threshold_bytes if threshold_bytes is None else threshold_bytes
        size = self.database_size()
        if threshold > 0 and size < threshold:
            logger.debug(
                "Database size (%.2f MB) below vacuum threshold (%.2f MB), skipping VACUUM",
                size / 1024 / 1024,
                threshold / 1024 / 1024,
            )
            return VacuumCheck(vacuumed=False, database_size=size)

        logger.info(
            "Database size (%.2f MB) reached vacuum threshold (%.2f MB), running VACUUM",
            size / 1024 / 1024,
            threshold / 1024 / 1024,
        )
        return VacuumCheck(vacuumed=True, database_size=size, result=self.vacuum())

    def last_vacuum_at(self) -> int | None:
        value = self._get_meta(LAST_VACUUM_KEY)
        return int(value) if value is not None else None

    def clear_old_data(self, older_than_days: int) -> ClearResult:
        """Delete rows older than ``older_than_days`` in one transaction."""

        if older_than_days <= 0:
            raise RetentionValidationError(older_than_days)
        engine = self._require_engine()
        cutoff = now_ms() - older_than_days * DAY_MS

        try:
            with Session(engine) as session:
                old_sessions = select(AutoRunSessionRow.id).where(
                    col(AutoRunSessionRow.start_time) < cutoff,
                )
                deleted_tasks = session.exec(
                    delete(AutoRunTaskRow).where(
                        col(AutoRunTaskRow.auto_run_session_id).in_(old_sessions),
                    ),
                ).rowcount
                deleted_sessions = session.exec(
                    delete(AutoRunSessionRow).where(col(AutoRunSessionRow.start_time) < cutoff),
                ).rowcount
                deleted_events = session.exec(
                    delete(QueryEventRow).where(col(QueryEventRow.start_time) < cutoff),
                ).rowcount
                deleted_lifecycle = session.exec(
                    delete(SessionLifecycleRow).where(col(SessionLifecycleRow.created_at) < cutoff),
                ).rowcount
                session.commit()
        except Exception as error:
            logger.error("Failed to clear old stats data: %s", error)
            return ClearResult(success=False, error=str(error))

        logger.info(
            "Cleared stats older than %s days: %s query events, %s auto-run sessions, "
            "%s auto-run tasks, %s session lifecycle rows",
            older_than_days,
            deleted_events,
            deleted_sessions,
            deleted_tasks,
            deleted_lifecycle,
        )
        return ClearResult(
            success=True,
            deleted_query_events=deleted_events,
            deleted_auto_run_sessions=deleted_sessions,
            deleted_auto_run_tasks=deleted_tasks,
            deleted_session_lifecycle=deleted_lifecycle,
        )

    def check_integrity(self) -> bool:
        engine = self._require_engine()
        with engine.connect() as connection:
            rows = connection.exec_driver_sql("PRAGMA integrity_check").all()
        return [tuple(row) for row in rows] == [("ok",)]

    def backup_database(self, destination: Path | None = None) -> Path:
        """Copy the live database with SQLite's online backup API."""

        self._require_engine()
        target = destination or self._db_path.with_name(
            f"{self._db_path.name}.backup.{now_ms()}",
        )
        source = connect_sqlite_with_policy(db_path=self._db_path, busy_timeout_ms=self.busy_timeout_ms)
        try:
            copy = sqlite3.connect(target)
            try:
                source.backup(copy)
            finally:
                copy.close()
        finally:
            source.close()
        logger.info("Backed up stats database to %s", target)
        return target

    # Migrations introspection

    def get_migration_history(self) -> list[MigrationRecord]:
        return migrations.get_migration_history(self._require_engine())

    def get_current_version(self) -> int:
        with self._require_engine().connect() as connection:
            return migrations.get_current_version(connection)

    def get_target_version(self) -> int:
        return migrations.get_target_version()

    def has_pending_migrations(self) -> bool:
        return self.get_current_version() < self.get_target_version()

    # Internals

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise StoreNotInitializedError()
        return self._engine

    def _get_meta(self, key: str) -> str | None:
        with Session(self._require_engine()) as session:
            row = session.get(MetaRow, key)
            return row.value if row is not None else None

    def _set_meta(self, key: str, value: str) -> None:
        with Session(self._require_engine()) as session:
            row = session.get(MetaRow, key)
            if row is None:
                row = MetaRow(key=key, value=value)
            else:
                row.value = value
            session.add(row)
            session.commit()

    def _file_passes_integrity_check(self) -> bool:
        try:
            connection = sqlite3.connect(self._db_path)
        except sqlite3.Error:
            return False
        try:
            rows = connection.execute("PRAGMA integrity_check").fetchall()
        except sqlite3.DatabaseError as error:
            logger.error("Stats database integrity check failed: %s", error)
            return False
        finally:
            connection.close()
        if rows != [("ok",)]:
            logger.error("Stats database integrity check reported: %s", rows[:5])
            return False
        return True

    def _move_corrupt_database(self) -> Path:
        backup_path = self._db_path.with_name(f"{self._db_path.name}.backup.{now_ms()}")
        self._db_path.replace(backup_path)
        for suffix in ("-wal", "-shm"):
            Path(f"{self._db_path}{suffix}").unlink(missing_ok=True)
        return backup_path


def _cutoff(time_range: StatsTimeRange | str) -> int:
    return StatsTimeRange(time_range).cutoff_ms(now_ms())


def _iso_from_ms(value: int) -> str:
    stamp = datetime.fromtimestamp(value / 1000, tz=UTC)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _to_query_event(row: QueryEventRow) -> QueryEvent:
    return QueryEvent(
        id=row.id,
        session_id=row.session_id,
        agent_type=row.agent_type,
        source=QuerySource(row.source),
        start_time=row.start_time,
        duration=row.duration,
        project_path=row.project_path,
        tab_id=row.tab_id,
        is_remote=row.is_remote,
    )
