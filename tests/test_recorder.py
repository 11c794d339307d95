from __future__ import annotations

import logging

import allure
import pytest

from agent_autorun.stats import (
    QueryEvent,
    QuerySource,
    RecordAttempt,
    RecordState,
    RetryPolicy,
    SessionLifecycleEvent,
    StatsRecorder,
    StatsStore,
)
from agent_autorun.stats.common import now_ms

pytestmark = [
    allure.epic("Usage Stats"),
    allure.feature("Recorder"),
]


class _FlakyStore:
    """Store double failing a fixed number of inserts before succeeding."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def is_ready(self) -> bool:
        return True

    def insert_query_event(self, event: QueryEvent) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("database is locked")
        return "event-1"


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _event() -> QueryEvent:
    return QueryEvent(
        session_id="sess-1",
        agent_type="codex",
        source=QuerySource.USER,
        start_time=now_ms(),
        duration=1200,
    )


def test_retry_policy_delays_grow_linearly() -> None:
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.1)

    assert policy.next_delay(1) == pytest.approx(0.1)
    assert policy.next_delay(2) == pytest.approx(0.2)
    assert policy.next_delay(3) is None


def test_record_attempt_states() -> None:
    attempt = RecordAttempt(RetryPolicy(max_attempts=2))

    attempt.begin()
    assert attempt.state is RecordState.ATTEMPTING
    assert attempt.fail(RuntimeError("x")) is not None
    assert attempt.state is RecordState.WAITING
    attempt.begin()
    assert attempt.fail(RuntimeError("y")) is None
    assert attempt.state is RecordState.EXHAUSTED
    assert attempt.attempts == 2


@pytest.mark.asyncio
async def test_retries_then_succeeds() -> None:
    store = _FlakyStore(failures=2)
    sleep = _SleepRecorder()
    notifications: list[None] = []
    recorder = StatsRecorder(
        lambda: store,
        sleep=sleep,
        on_stats_updated=lambda: notifications.append(None),
    )

    result = await recorder.record_query_event(_event())

    assert result == "event-1"
    assert store.calls == 3
    assert sleep.delays == pytest.approx([0.1, 0.2])
    assert len(notifications) == 1


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(caplog: pytest.LogCaptureFixture) -> None:
    store = _FlakyStore(failures=10)
    sleep = _SleepRecorder()
    notifications: list[None] = []
    recorder = StatsRecorder(
        lambda: store,
        sleep=sleep,
        on_stats_updated=lambda: notifications.append(None),
    )

    with caplog.at_level(logging.WARNING, logger="agent_autorun.stats.recorder"):
        result = await recorder.record_query_event(_event())

    assert result is None
    assert store.calls == 3
    assert notifications == []
    errors = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "after 3 attempts" in errors[0].getMessage()
    assert "session_id=sess-1" in errors[0].getMessage()
    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 2


@pytest.mark.asyncio
async def test_skips_when_store_unavailable(tmp_path) -> None:
    sleep = _SleepRecorder()
    unopened = StatsStore(tmp_path / "never-opened.db")

    assert await StatsRecorder(lambda: None, sleep=sleep).record_query_event(_event()) is None
    assert await StatsRecorder(lambda: unopened, sleep=sleep).record_query_event(_event()) is None
    assert sleep.delays == []
    assert not (tmp_path / "never-opened.db").exists()


@pytest.mark.asyncio
async def test_listener_errors_do_not_fail_recording(store: StatsStore) -> None:
    def _boom() -> None:
        raise RuntimeError("listener broke")

    recorder = StatsRecorder(lambda: store, on_stats_updated=_boom)

    event_id = await recorder.record_query_event(_event())

    assert event_id is not None
    assert [event.id for event in store.get_query_events("all")] == [event_id]


@pytest.mark.asyncio
async def test_session_lifecycle_through_recorder(store: StatsStore) -> None:
    recorder = StatsRecorder(lambda: store)
    created_at = now_ms() - 5_000

    await recorder.record_session_created(
        SessionLifecycleEvent(session_id="sess-9", agent_type="aider", created_at=created_at),
    )
    closed = await recorder.record_session_closed("sess-9", created_at + 4_000, agent_type="aider")
    missing = await recorder.record_session_closed("sess-unknown", created_at)

    assert closed is True
    assert missing is False
    [lifecycle] = store.get_session_lifecycle_events("day")
    assert lifecycle.duration == 4_000


@pytest.mark.asyncio
async def test_drain_waits_for_scheduled_records(store: StatsStore) -> None:
    recorder = StatsRecorder(lambda: store)

    for _ in range(3):
        recorder.schedule(recorder.record_query_event(_event()))
    await recorder.drain()

    assert recorder.pending_count == 0
    assert len(store.get_query_events("all")) == 3
