"""Usage stats persistence: store, migrations, aggregations and recorder."""

from agent_autorun.stats.models import (
    AutoRunSession,
    AutoRunTask,
    ClearResult,
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
from agent_autorun.stats.recorder import RecordAttempt, RecordState, RetryPolicy, StatsRecorder
from agent_autorun.stats.store import StatsStore

__all__ = [
    "AutoRunSession",
    "AutoRunTask",
    "ClearResult",
    "QueryEvent",
    "QueryEventFilters",
    "QuerySource",
    "RecordAttempt",
    "RecordState",
    "RetryPolicy",
    "SessionLifecycleEvent",
    "StatsAggregation",
    "StatsRecorder",
    "StatsStore",
    "StatsTimeRange",
    "VacuumCheck",
    "VacuumResult",
    "normalize_path",
]
