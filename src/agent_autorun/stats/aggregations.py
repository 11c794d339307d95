"""Dashboard aggregations over the stats tables."""

from __future__ import annotations

from sqlalchemy import Integer, cast, distinct, func
from sqlmodel import Session, col, select

from agent_autorun.stats.models import (
    CountDuration,
    DayCount,
    DayTotals,
    HourTotals,
    StatsAggregation,
)
from agent_autorun.stats.tables import QueryEventRow, SessionLifecycleRow


def _local_day(epoch_ms_column):
    return func.date(epoch_ms_column // 1000, "unixepoch", "localtime")


def get_aggregated_stats(session: Session, *, cutoff_ms: int) -> StatsAggregation:
    """Compute every dashboard aggregate for rows at or after ``cutoff_ms``."""

    result = StatsAggregation()
    in_range = col(QueryEventRow.start_time) >= cutoff_ms
    duration_sum = func.coalesce(func.sum(QueryEventRow.duration), 0)

    count, total_duration = session.exec(
        select(func.count(), duration_sum).select_from(QueryEventRow).where(in_range),
    ).one()
    result.total_queries = int(count)
    result.total_duration = int(total_duration)
    result.avg_duration = (
        round(result.total_duration / result.total_queries) if result.total_queries else 0
    )

    for agent_type, agent_count, agent_duration in session.exec(
        select(QueryEventRow.agent_type, func.count(), duration_sum)
        .where(in_range)
        .group_by(QueryEventRow.agent_type),
    ).all():
        result.by_agent[agent_type] = CountDuration(count=int(agent_count), duration=int(agent_duration))

    for source, source_count in session.exec(
        select(QueryEventRow.source, func.count()).where(in_range).group_by(QueryEventRow.source),
    ).all():
        result.by_source[source] = int(source_count)

    for is_remote, location_count in session.exec(
        select(QueryEventRow.is_remote, func.count())
        .where(in_range)
        .group_by(QueryEventRow.is_remote),
    ).all():
        # Rows written before the remote flag existed count as local.
        location = "remote" if is_remote else "local"
        result.by_location[location] += int(location_count)

    day = _local_day(col(QueryEventRow.start_time)).label("day")
    for date, day_count, day_duration in session.exec(
        select(day, func.count(), duration_sum).where(in_range).group_by(day).order_by(day),
    ).all():
        result.by_day.append(DayTotals(date=date, count=int(day_count), duration=int(day_duration)))

    for agent_type, date, day_count, day_duration in session.exec(
        select(QueryEventRow.agent_type, day, func.count(), duration_sum)
        .where(in_range)
        .group_by(QueryEventRow.agent_type, day)
        .order_by(QueryEventRow.agent_type, day),
    ).all():
        result.by_agent_by_day.setdefault(agent_type, []).append(
            DayTotals(date=date, count=int(day_count), duration=int(day_duration)),
        )

    hour = cast(
        func.strftime("%H", col(QueryEventRow.start_time) // 1000, "unixepoch", "localtime"),
        Integer,
    ).label("hour")
    for hour_value, hour_count, hour_duration in session.exec(
        select(hour, func.count(), duration_sum).where(in_range).group_by(hour).order_by(hour),
    ).all():
        result.by_hour.append(
            HourTotals(hour=int(hour_value), count=int(hour_count), duration=int(hour_duration)),
        )

    result.total_sessions = int(
        session.exec(
            select(func.count(distinct(QueryEventRow.session_id))).where(in_range),
        ).one(),
    )

    lifecycle_in_range = col(SessionLifecycleRow.created_at) >= cutoff_ms
    avg_session = session.exec(
        select(func.coalesce(func.avg(SessionLifecycleRow.duration), 0)).where(
            lifecycle_in_range,
            col(SessionLifecycleRow.duration).is_not(None),
        ),
    ).one()
    result.avg_session_duration = round(float(avg_session))

    for agent_type, session_count in session.exec(
        select(SessionLifecycleRow.agent_type, func.count())
        .where(lifecycle_in_range)
        .group_by(SessionLifecycleRow.agent_type),
    ).all():
        result.sessions_by_agent[agent_type] = int(session_count)

    created_day = _local_day(col(SessionLifecycleRow.created_at)).label("day")
    for date, session_count in session.exec(
        select(created_day, func.count())
        .where(lifecycle_in_range)
        .group_by(created_day)
        .order_by(created_day),
    ).all():
        result.sessions_by_day.append(DayCount(date=date, count=int(session_count)))

    return result
