"""SQLModel ORM tables for the stats database.

Data tables are created by :mod:`agent_autorun.stats.migrations`; the
bookkeeping tables ``_migrations`` and ``_meta`` are created from these
definitions before migrations run.
"""

from __future__ import annotations

from sqlalchemy import CheckConstraint, Column, ForeignKey, Integer, Text
from sqlmodel import Field, SQLModel


class QueryEventRow(SQLModel, table=True):
    __tablename__ = "query_events"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    session_id: str
    agent_type: str
    source: str
    start_time: int
    duration: int
    project_path: str | None = None
    tab_id: str | None = None
    is_remote: bool | None = None


class AutoRunSessionRow(SQLModel, table=True):
    __tablename__ = "auto_run_sessions"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    session_id: str
    agent_type: str
    document_path: str | None = None
    start_time: int
    duration: int
    tasks_total: int | None = None
    tasks_completed: int | None = None
    project_path: str | None = None


class AutoRunTaskRow(SQLModel, table=True):
    __tablename__ = "auto_run_tasks"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    auto_run_session_id: str = Field(
        sa_column=Column(Text, ForeignKey("auto_run_sessions.id"), nullable=False),
    )
    session_id: str
    agent_type: str
    task_index: int
    task_content: str | None = None
    start_time: int
    duration: int
    success: bool


class SessionLifecycleRow(SQLModel, table=True):
    __tablename__ = "session_lifecycle"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    session_id: str = Field(unique=True)
    agent_type: str
    project_path: str | None = None
    created_at: int
    closed_at: int | None = None
    duration: int | None = None
    is_remote: bool | None = None


class MigrationRow(SQLModel, table=True):
    __tablename__ = "_migrations"  # type: ignore[bad-override]
    __table_args__ = (CheckConstraint("status IN ('success', 'failed')", name="ck_migration_status"),)

    version: int = Field(sa_column=Column(Integer, primary_key=True, autoincrement=False))
    description: str
    applied_at: int
    status: str
    error_message: str | None = None


class MetaRow(SQLModel, table=True):
    __tablename__ = "_meta"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str
