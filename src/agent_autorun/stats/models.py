"""Domain models for usage stats records, queries and maintenance results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

DAY_MS = 24 * 60 * 60 * 1000


class QuerySource(str, Enum):
    """Origin of one agent invocation."""

    USER = "user"
    AUTO = "auto"


class StatsTimeRange(str, Enum):
    """Look-back windows recognized by stats queries."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"

    def cutoff_ms(self, now: int) -> int:
        """Return the inclusive lower bound of the window ending at ``now``."""

        if self is StatsTimeRange.ALL:
            return 0
        return now - _RANGE_DAYS[self] * DAY_MS


_RANGE_DAYS = {
    StatsTimeRange.DAY: 1,
    StatsTimeRange.WEEK: 7,
    StatsTimeRange.MONTH: 30,
    StatsTimeRange.YEAR: 365,
}


@dataclass(slots=True)
class QueryEvent:
    """One agent invocation."""

    session_id: str
    agent_type: str
    source: QuerySource
    start_time: int
    duration: int
    project_path: str | None = None
    tab_id: str | None = None
    is_remote: bool | None = None
    id: str | None = None


@dataclass(slots=True)
class AutoRunSession:
    """Aggregate outcome of one playbook run."""

    session_id: str
    agent_type: str
    start_time: int
    duration: int = 0
    document_path: str | None = None
    tasks_total: int | None = None
    tasks_completed: int | None = None
    project_path: str | None = None
    id: str | None = None


@dataclass(slots=True)
class AutoRunTask:
    """Outcome of one playbook task, owned by an :class:`AutoRunSession`."""

    auto_run_session_id: str
    session_id: str
    agent_type: str
    task_index: int
    start_time: int
    duration: int
    success: bool
    task_content: str | None = None
    id: str | None = None


@dataclass(slots=True)
class SessionLifecycleEvent:
    """Creation and closure of one agent session."""

    session_id: str
    agent_type: str
    created_at: int
    project_path: str | None = None
    closed_at: int | None = None
    duration: int | None = None
    is_remote: bool | None = None
    id: str | None = None


@dataclass(slots=True)
class QueryEventFilters:
    """Optional equality filters for query event listing."""

    agent_type: str | None = None
    source: QuerySource | None = None
    project_path: str | None = None
    session_id: str | None = None


@dataclass(slots=True)
class VacuumResult:
    """Outcome of one compaction pass."""

    success: bool
    bytes_freed: int = 0
    error: str | None = None


@dataclass(slots=True)
class VacuumCheck:
    """Outcome of a threshold-gated compaction check."""

    vacuumed: bool
    database_size: int
    result: VacuumResult | None = None


@dataclass(slots=True)
class ClearResult:
    """Row counts removed by a retention pass."""

    success: bool
    deleted_query_events: int = 0
    deleted_auto_run_sessions: int = 0
    deleted_auto_run_tasks: int = 0
    deleted_session_lifecycle: int = 0
    error: str | None = None


@dataclass(slots=True)
class MigrationRecord:
    """One row of the migrations log."""

    version: int
    description: str
    applied_at: int
    status: str
    error_message: str | None = None


@dataclass(slots=True)
class CountDuration:
    count: int
    duration: int


@dataclass(slots=True)
class DayTotals:
    date: str
    count: int
    duration: int


@dataclass(slots=True)
class DayCount:
    date: str
    count: int


@dataclass(slots=True)
class HourTotals:
    hour: int
    count: int
    duration: int


@dataclass(slots=True)
class StatsAggregation:
    """Dashboard totals over one time range."""

    total_queries: int = 0
    total_duration: int = 0
    avg_duration: int = 0
    by_agent: dict[str, CountDuration] = field(default_factory=dict)
    by_source: dict[str, int] = field(
        default_factory=lambda: {QuerySource.USER.value: 0, QuerySource.AUTO.value: 0},
    )
    by_location: dict[str, int] = field(default_factory=lambda: {"local": 0, "remote": 0})
    by_day: list[DayTotals] = field(default_factory=list)
    by_hour: list[HourTotals] = field(default_factory=list)
    by_agent_by_day: dict[str, list[DayTotals]] = field(default_factory=dict)
    total_sessions: int = 0
    sessions_by_agent: dict[str, int] = field(default_factory=dict)
    sessions_by_day: list[DayCount] = field(default_factory=list)
    avg_session_duration: int = 0
