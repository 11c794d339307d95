"""Fire-and-forget stats recording with bounded retry.

Store writes are attempted up to ``max_attempts`` times with a linearly
growing delay.  A store that is not ready is skipped silently; a record
whose attempts are exhausted is dropped with an error log.  Callers on the
hot path never see persistence errors.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from agent_autorun.stats.models import (
    AutoRunSession,
    AutoRunTask,
    QueryEvent,
    SessionLifecycleEvent,
)
from agent_autorun.stats.store import StatsStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

StoreGetter = Callable[[], StatsStore | None]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded linear backoff: ``base_delay * attempt`` after each failure."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.1

    def next_delay(self, attempt: int) -> float | None:
        """Delay before the attempt after ``attempt``; ``None`` when exhausted."""

        if attempt >= self.max_attempts:
            return None
        return self.base_delay_seconds * attempt


class RecordState(str, Enum):
    ATTEMPTING = "attempting"
    WAITING = "waiting"
    EXHAUSTED = "exhausted"
    SUCCEEDED = "succeeded"


class RecordAttempt:
    """State of one record being written through the retry loop."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self.state = RecordState.ATTEMPTING
        self.attempts = 0
        self.last_error: BaseException | None = None

    def begin(self) -> None:
        self.state = RecordState.ATTEMPTING
        self.attempts += 1

    def succeed(self) -> None:
        self.state = RecordState.SUCCEEDED

    def fail(self, error: BaseException) -> float | None:
        """Register a failure and return the delay before retrying, if any."""

        self.last_error = error
        delay = self.policy.next_delay(self.attempts)
        self.state = RecordState.EXHAUSTED if delay is None else RecordState.WAITING
        return delay


class StatsRecorder:
    """Write usage facts to the store without blocking or failing the caller."""

    def __init__(
        self,
        get_store: StoreGetter,
        *,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
        on_stats_updated: Callable[[], None] | None = None,
    ) -> None:
        self._get_store = get_store
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._on_stats_updated = on_stats_updated
        self._pending: set[asyncio.Task[Any]] = set()

    async def record_query_event(self, event: QueryEvent) -> str | None:
        result = await self._record(
            lambda store: store.insert_query_event(event),
            kind="query event",
            session_id=event.session_id,
            agent_type=event.agent_type,
        )
        if result is not None:
            logger.debug(
                "Recorded query event id=%s session=%s agent=%s source=%s duration=%sms",
                result,
                event.session_id,
                event.agent_type,
                event.source.value,
                event.duration,
            )
        return result

    async def record_auto_run_start(self, run: AutoRunSession) -> str | None:
        return await self._record(
            lambda store: store.insert_auto_run_session(run),
            kind="auto-run session",
            session_id=run.session_id,
            agent_type=run.agent_type,
        )

    async def record_auto_run_task(self, task: AutoRunTask) -> str | None:
        return await self._record(
            lambda store: store.insert_auto_run_task(task),
            kind="auto-run task",
            session_id=task.session_id,
            agent_type=task.agent_type,
        )

    async def record_auto_run_end(
        self,
        run_id: str,
        *,
        session_id: str,
        agent_type: str,
        duration: int,
        tasks_completed: int,
    ) -> bool | None:
        return await self._record(
            lambda store: store.update_auto_run_session(
                run_id,
                duration=duration,
                tasks_completed=tasks_completed,
            ),
            kind="auto-run session update",
            session_id=session_id,
            agent_type=agent_type,
        )

    async def record_session_created(self, event: SessionLifecycleEvent) -> str | None:
        return await self._record(
            lambda store: store.record_session_created(event),
            kind="session lifecycle",
            session_id=event.session_id,
            agent_type=event.agent_type,
        )

    async def record_session_closed(
        self,
        session_id: str,
        closed_at: int,
        *,
        agent_type: str = "unknown",
    ) -> bool | None:
        return await self._record(
            lambda store: store.record_session_closed(session_id, closed_at),
            kind="session closure",
            session_id=session_id,
            agent_type=agent_type,
        )

    def schedule(self, coro: Awaitable[T]) -> asyncio.Task[T]:
        """Run ``coro`` in the background, keeping a reference until it finishes."""

        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait until every scheduled recording has finished."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _record(
        self,
        operation: Callable[[StatsStore], T],
        *,
        kind: str,
        session_id: str,
        agent_type: str,
    ) -> T | None:
        store = self._get_store()
        if store is None or not store.is_ready():
            return None

        attempt = RecordAttempt(self.policy)
        while True:
            attempt.begin()
            try:
                result = operation(store)
            except Exception as error:
                delay = attempt.fail(error)
                if delay is None:
                    logger.error(
                        "Failed to record %s after %s attempts: session_id=%s agent_type=%s error=%s",
                        kind,
                        attempt.attempts,
                        session_id,
                        agent_type,
                        error,
                    )
                    return None
                logger.warning(
                    "Stats DB insert failed for %s (attempt %s/%s), retrying in %.0fms: %s",
                    kind,
                    attempt.attempts,
                    self.policy.max_attempts,
                    delay * 1000,
                    error,
                )
                await self._sleep(delay)
                continue

            attempt.succeed()
            self._notify()
            return result

    def _notify(self) -> None:
        if self._on_stats_updated is None:
            return
        try:
            self._on_stats_updated()
        except Exception:
            logger.exception("Stats update listener failed")
