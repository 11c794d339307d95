"""Playbook execution engine.

A run turns an ordered task list into a lazy, single-use stream of
:class:`RunEvent` values.  Tasks execute strictly one after another; the
cancellation signal is checked between tasks, and stats recording is
scheduled in the background so it never holds up the event stream.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from agent_autorun.agents.spawn_config import SpawnConfig, SpawnConfigResolver
from agent_autorun.engine.models import (
    ContinuationPolicy,
    PlaybookRun,
    RunEvent,
    RunOptions,
    RunPhase,
    StopReason,
)
from agent_autorun.errors import LaunchError
from agent_autorun.launcher.base import AgentCommand, LaunchOutcome, ProcessHandle, ProcessLauncher
from agent_autorun.launcher.cli_launcher import check_command_template, default_command_template
from agent_autorun.playbooks.history import RunHistory
from agent_autorun.playbooks.models import AgentSession, PlaybookTask, TaskState
from agent_autorun.stats.common import now_ms
from agent_autorun.stats.models import AutoRunSession, AutoRunTask, QueryEvent, QuerySource
from agent_autorun.stats.recorder import StatsRecorder

logger = logging.getLogger(__name__)


class PlaybookEngine:
    """Create playbook executions bound to one resolver and launcher."""

    def __init__(
        self,
        resolver: SpawnConfigResolver,
        launcher: ProcessLauncher,
        recorder: StatsRecorder | None = None,
        *,
        history: RunHistory | None = None,
        command_templates: dict[str, str] | None = None,
    ) -> None:
        self.resolver = resolver
        self.launcher = launcher
        self.recorder = recorder
        self.history = history
        self.command_templates = command_templates or {}

    def start(
        self,
        session: AgentSession,
        playbook_name: str,
        tasks: list[PlaybookTask],
        options: RunOptions | None = None,
    ) -> PlaybookExecution:
        """Prepare a run; nothing executes until its events are consumed."""

        run_options = options or RunOptions()
        command_template = run_options.command_template or default_command_template(
            session.agent_type,
            self.command_templates,
        )
        spawn_config = self.resolver.resolve(session.agent_type, session.remote)
        command_head = check_command_template(
            command_template,
            spawn_config,
            remote=session.remote,
            os_name=self.resolver.os_name,
        )
        run = PlaybookRun(
            agent_type=session.agent_type,
            session_id=session.id,
            playbook_name=playbook_name,
            tasks=tasks,
            dry_run=run_options.dry_run,
            write_history=run_options.write_history,
        )
        return PlaybookExecution(
            engine=self,
            run=run,
            session=session,
            options=run_options,
            command_template=command_template,
            spawn_config=spawn_config,
            command_head=command_head,
        )


class PlaybookExecution:
    """One playbook run: a single-use event stream plus a cancellation signal."""

    def __init__(
        self,
        *,
        engine: PlaybookEngine,
        run: PlaybookRun,
        session: AgentSession,
        options: RunOptions,
        command_template: str,
        spawn_config: SpawnConfig,
        command_head: str,
    ) -> None:
        self.run = run
        self.session = session
        self.options = options
        self.command_head = command_head
        self._engine = engine
        self._command_template = command_template
        self._spawn_config = spawn_config
        self._cancel_requested = asyncio.Event()
        self._consumed = False
        self._session_insert: asyncio.Task[str | None] | None = None
        self._current_handle: ProcessHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> None:
        """Stop dispatching new tasks; the task in flight is allowed to finish."""

        if not self._cancel_requested.is_set():
            logger.info("Cancellation requested for playbook %s", self.run.playbook_name)
        self._cancel_requested.set()

    async def terminate_current_task(self) -> None:
        """Kill the agent process of the task in flight, if any."""

        handle = self._current_handle
        if handle is not None:
            await handle.terminate()

    def events(self) -> AsyncIterator[RunEvent]:
        if self._consumed:
            raise RuntimeError("Playbook run events can only be consumed once; start a new run.")
        self._consumed = True
        return self._run_events()

    async def wait_for_recordings(self) -> None:
        """Wait for background stats writes scheduled by this run."""

        if self._engine.recorder is not None:
            await self._engine.recorder.drain()

    @property
    def _recording(self) -> bool:
        return (
            self._engine.recorder is not None
            and self.run.write_history
            and not self.run.dry_run
        )

    async def _run_events(self) -> AsyncIterator[RunEvent]:
        run = self.run
        run.start_time_ms = now_ms()
        started = time.monotonic()
        total = run.tasks_total
        logger.info(
            "Starting playbook %s: agent=%s session=%s tasks=%s dry_run=%s",
            run.playbook_name,
            run.agent_type.value,
            run.session_id,
            total,
            run.dry_run,
        )

        recorder = self._engine.recorder if self._recording else None
        if recorder is not None:
            self._schedule_session_insert(recorder)

        for task in run.tasks:
            if self._cancel_requested.is_set():
                run.stop_reason = StopReason.CANCELLED
                break

            if run.dry_run:
                task.state = TaskState.SKIPPED
                yield RunEvent(
                    phase=RunPhase.TASK_START,
                    task_index=task.index,
                    message=f"Would run task {task.index + 1}: {task.document.name}",
                    percent=_percent(task.index, total),
                    dry_run=True,
                    tasks_completed=run.tasks_completed,
                    tasks_total=total,
                )
                continue

            yield RunEvent(
                phase=RunPhase.TASK_START,
                task_index=task.index,
                message=f"Running task {task.index + 1}/{total}: {task.document.name}",
                percent=_percent(task.index, total),
                tasks_completed=run.tasks_completed,
                tasks_total=total,
            )

            task.state = TaskState.RUNNING
            task.started_at_ms = now_ms()
            outcome = await self._execute(task, self._spawn_config)
            task.duration_ms = outcome.duration_ms

            if outcome.success:
                task.state = TaskState.SUCCEEDED
                run.mark_task_completed()
                if recorder is not None:
                    self._schedule_task_records(recorder, task, success=True)
                yield RunEvent(
                    phase=RunPhase.TASK_COMPLETE,
                    task_index=task.index,
                    message=f"Completed task {task.index + 1}/{total}: {task.document.name}",
                    percent=_percent(task.index + 1, total),
                    duration_ms=outcome.duration_ms,
                    tasks_completed=run.tasks_completed,
                    tasks_total=total,
                )
                continue

            task.state = TaskState.FAILED
            task.error = outcome.error or "Task failed"
            if recorder is not None:
                self._schedule_task_records(recorder, task, success=False)
            logger.warning(
                "Playbook task %s failed: %s",
                task.index,
                task.error,
            )
            yield RunEvent(
                phase=RunPhase.TASK_FAILED,
                task_index=task.index,
                message=f"Task {task.index + 1}/{total} failed: {task.document.name}",
                percent=_percent(task.index + 1, total),
                duration_ms=outcome.duration_ms,
                error=task.error,
                tasks_completed=run.tasks_completed,
                tasks_total=total,
            )
            if self.options.continuation_policy is ContinuationPolicy.ABORT:
                run.stop_reason = StopReason.ABORTED
                break

        if run.stop_reason is None:
            run.stop_reason = StopReason.COMPLETED
        run.duration_ms = int((time.monotonic() - started) * 1000)

        if recorder is not None:
            self._schedule_session_update(recorder)
        history = self._engine.history
        if run.write_history and not run.dry_run and history is not None:
            self._append_history(history)

        logger.info(
            "Playbook %s finished: %s/%s tasks completed, stop_reason=%s, duration=%sms",
            run.playbook_name,
            run.tasks_completed,
            total,
            run.stop_reason.value,
            run.duration_ms,
        )
        yield RunEvent(
            phase=RunPhase.RUN_COMPLETE,
            message=_completion_message(run),
            percent=_percent(run.tasks_completed, total),
            duration_ms=run.duration_ms,
            tasks_completed=run.tasks_completed,
            tasks_total=total,
            dry_run=True if run.dry_run else None,
            stop_reason=run.stop_reason,
        )

    async def _execute(self, task: PlaybookTask, spawn_config: SpawnConfig) -> LaunchOutcome:
        command = AgentCommand(
            agent_type=self.run.agent_type,
            command_template=self._command_template,
            prompt=task.prompt,
            timeout_seconds=task.timeout_seconds,
        )
        try:
            handle = await self._engine.launcher.spawn(
                spawn_config,
                command,
                self.session.cwd,
                self.session.remote,
            )
        except LaunchError as error:
            logger.error("Could not launch agent for task %s: %s", task.index, error)
            return LaunchOutcome(success=False, duration_ms=0, exit_code=None, error=str(error))

        self._current_handle = handle
        try:
            return await handle.wait()
        except asyncio.CancelledError:
            await handle.terminate()
            raise
        except Exception as error:
            logger.exception("Agent process for task %s failed unexpectedly", task.index)
            return LaunchOutcome(success=False, duration_ms=0, exit_code=None, error=str(error))
        finally:
            self._current_handle = None

    # Recording

    def _schedule_session_insert(self, recorder: StatsRecorder) -> None:
        run = self.run
        self._session_insert = recorder.schedule(
            recorder.record_auto_run_start(
                AutoRunSession(
                    session_id=run.session_id,
                    agent_type=run.agent_type.value,
                    start_time=run.start_time_ms,
                    duration=0,
                    document_path=self.options.document_path
                    or _as_str(self.session.auto_run_folder),
                    tasks_total=run.tasks_total,
                    tasks_completed=0,
                    project_path=self.options.project_path or _as_str(self.session.cwd),
                ),
            ),
        )

    def _schedule_task_records(self, recorder: StatsRecorder, task: PlaybookTask, *, success: bool) -> None:
        run = self.run
        started_at = task.started_at_ms or now_ms()
        duration = task.duration_ms or 0

        recorder.schedule(
            recorder.record_query_event(
                QueryEvent(
                    session_id=run.session_id,
                    agent_type=run.agent_type.value,
                    source=QuerySource.AUTO,
                    start_time=started_at,
                    duration=duration,
                    project_path=self.options.project_path or _as_str(self.session.cwd),
                    is_remote=bool(self.session.remote and self.session.remote.enabled),
                ),
            ),
        )

        async def _write_task() -> None:
            auto_run_id = await self._stored_session_id()
            if auto_run_id is None:
                logger.warning("Skipping task %s record: auto-run session was not stored", task.index)
                return
            await recorder.record_auto_run_task(
                AutoRunTask(
                    auto_run_session_id=auto_run_id,
                    session_id=run.session_id,
                    agent_type=run.agent_type.value,
                    task_index=task.index,
                    task_content=task.document.name,
                    start_time=started_at,
                    duration=duration,
                    success=success,
                ),
            )

        recorder.schedule(_write_task())

    def _schedule_session_update(self, recorder: StatsRecorder) -> None:
        run = self.run

        async def _write_end() -> None:
            auto_run_id = await self._stored_session_id()
            if auto_run_id is None:
                return
            await recorder.record_auto_run_end(
                auto_run_id,
                session_id=run.session_id,
                agent_type=run.agent_type.value,
                duration=run.duration_ms,
                tasks_completed=run.tasks_completed,
            )

        recorder.schedule(_write_end())

    async def _stored_session_id(self) -> str | None:
        if self._session_insert is None:
            return None
        return await asyncio.shield(self._session_insert)

    def _append_history(self, history: RunHistory) -> None:
        run = self.run
        try:
            history.append(
                {
                    "session_id": run.session_id,
                    "agent_type": run.agent_type.value,
                    "playbook": run.playbook_name,
                    "started_at": datetime.fromtimestamp(run.start_time_ms / 1000, tz=UTC).isoformat(),
                    "duration_ms": run.duration_ms,
                    "tasks_total": run.tasks_total,
                    "tasks_completed": run.tasks_completed,
                    "stop_reason": run.stop_reason.value if run.stop_reason else None,
                    "tasks": [
                        {
                            "index": task.index,
                            "document": task.document.name,
                            "state": task.state.value,
                            "duration_ms": task.duration_ms,
                            "error": task.error,
                        }
                        for task in run.tasks
                    ],
                },
            )
        except OSError as error:
            logger.warning("Could not append run history to %s: %s", history.path, error)


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return int(done * 100 / total)


def _as_str(value: object | None) -> str | None:
    return str(value) if value is not None else None


def _completion_message(run: PlaybookRun) -> str:
    summary = f"{run.tasks_completed}/{run.tasks_total} tasks completed"
    if run.dry_run:
        return f"Dry run finished: {run.tasks_total} tasks would run"
    if run.stop_reason is StopReason.CANCELLED:
        return f"Run cancelled: {summary}"
    if run.stop_reason is StopReason.ABORTED:
        return f"Run aborted after task failure: {summary}"
    return f"Run complete: {summary}"
