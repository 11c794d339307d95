"""Controllers for agent-autorun CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from agent_autorun.agents.spawn_config import ShellOverrideContext, SpawnConfigResolver
from agent_autorun.config import Settings
from agent_autorun.engine import (
    ContinuationPolicy,
    PlaybookEngine,
    PlaybookExecution,
    RunEvent,
    RunOptions,
    RunPhase,
)
from agent_autorun.errors import AutorunError, ConfigurationError
from agent_autorun.launcher import CliProcessLauncher
from agent_autorun.playbooks import PlaybookCatalog, RunHistory
from agent_autorun.stats import RetryPolicy, StatsRecorder, StatsStore, StatsTimeRange

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]


@dataclass(slots=True)
class RunPlaybookCommand:
    """CLI inputs for playbook execution."""

    agent: str
    playbook: str
    dry_run: bool
    write_history: bool
    json_output: bool
    continue_on_failure: bool = True
    catalog_path: Path | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class RunPlaybookResult:
    """Outcome of a playbook command for exit-code mapping."""

    success: bool
    error_code: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class StatsShowCommand:
    """CLI inputs for stats summary."""

    db_path: Path | None
    time_range: str


@dataclass(slots=True)
class StatsExportCommand:
    """CLI inputs for CSV export."""

    db_path: Path | None
    time_range: str
    output: Path | None


@dataclass(slots=True)
class StatsClearCommand:
    """CLI inputs for retention clearing."""

    db_path: Path | None
    days: int


@dataclass(slots=True)
class StatsMaintenanceCommand:
    """CLI inputs for vacuum and migration inspection."""

    db_path: Path | None


class PlaybookCliController:
    """Coordinates playbook command execution."""

    def run_playbook(self, command: RunPlaybookCommand, emit: LineSink) -> RunPlaybookResult:
        try:
            settings = _load_settings(command.db_path)
            catalog = PlaybookCatalog.load(command.catalog_path or settings.catalog_path)
            session = catalog.resolve_session(command.agent)
            playbook = catalog.resolve_playbook(session.id, command.playbook)
            tasks = catalog.load_tasks(
                session,
                playbook,
                timeout_seconds=settings.launcher.task_timeout_seconds,
            )
        except ConfigurationError as error:
            return self._fail(command, emit, str(error), error.code)

        if not command.json_output:
            emit(f"Running playbook: {playbook.name}")
            emit(f"Agent: {session.name} ({session.agent_type.value})")
            emit(f"Documents: {len(tasks)}")
            if command.dry_run:
                emit("Dry run mode - no changes will be made")
            emit("")

        store: StatsStore | None = None
        recorder = StatsRecorder(
            lambda: store,
            policy=RetryPolicy(
                max_attempts=settings.recorder.max_attempts,
                base_delay_seconds=settings.recorder.base_delay_seconds,
            ),
        )
        resolver = SpawnConfigResolver(
            ShellOverrideContext(lambda: settings.launcher.custom_shell_path),
        )
        engine = PlaybookEngine(
            resolver,
            CliProcessLauncher(),
            recorder,
            history=RunHistory(settings.history_path),
            command_templates=settings.launcher.command_templates,
        )

        try:
            execution = engine.start(
                session,
                playbook.name,
                tasks,
                RunOptions(
                    dry_run=command.dry_run,
                    write_history=command.write_history,
                    continuation_policy=(
                        ContinuationPolicy.CONTINUE
                        if command.continue_on_failure
                        else ContinuationPolicy.ABORT
                    ),
                ),
            )
            remote = session.remote
            if not command.dry_run and not (remote is not None and remote.enabled):
                _require_agent_binary(execution.command_head)
            if command.write_history and not command.dry_run:
                store = _open_store_for_recording(settings)
            asyncio.run(_consume(execution, emit, json_output=command.json_output))
        except ConfigurationError as error:
            return self._fail(command, emit, str(error), error.code)
        except Exception as error:
            logger.exception("Playbook run failed")
            return self._fail(command, emit, f"Failed to run playbook: {error}", "EXECUTION_ERROR")
        finally:
            if store is not None:
                store.close()

        return RunPlaybookResult(success=True)

    def _fail(
        self,
        command: RunPlaybookCommand,
        emit: LineSink,
        message: str,
        code: str,
    ) -> RunPlaybookResult:
        if command.json_output:
            emit(json.dumps(error_payload(message, code)))
        return RunPlaybookResult(success=False, error_code=code, error_message=message)


class StatsCliController:
    """Coordinates stats command execution."""

    def show(self, command: StatsShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        time_range = StatsTimeRange(command.time_range)
        with _store(settings) as store:
            stats = store.get_aggregated_stats(time_range)

        lines = [
            f"Stats for range={time_range.value} db={settings.stats.db_path}",
            f"Queries: total={stats.total_queries} duration_ms={stats.total_duration} "
            f"avg_ms={stats.avg_duration}",
            f"Sources: user={stats.by_source.get('user', 0)} auto={stats.by_source.get('auto', 0)}",
            f"Location: local={stats.by_location['local']} remote={stats.by_location['remote']}",
            f"Sessions: total={stats.total_sessions} avg_session_ms={stats.avg_session_duration}",
        ]
        if stats.by_agent:
            lines.append("By agent:")
            for agent_type, totals in sorted(stats.by_agent.items()):
                lines.append(f"  {agent_type}: count={totals.count} duration_ms={totals.duration}")
        if stats.by_day:
            lines.append("By day:")
            for day in stats.by_day:
                lines.append(f"  {day.date}: count={day.count} duration_ms={day.duration}")
        return lines

    def export(self, command: StatsExportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            csv_text = store.export_to_csv(StatsTimeRange(command.time_range))

        if command.output is None:
            return [csv_text]
        command.output.parent.mkdir(parents=True, exist_ok=True)
        command.output.write_text(csv_text, "utf-8")
        rows = max(0, len(csv_text.splitlines()) - 1)
        return [f"Exported {rows} query events to {command.output}"]

    def clear(self, command: StatsClearCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            result = store.clear_old_data(command.days)

        if not result.success:
            raise AutorunError(f"Failed to clear stats: {result.error}")
        return [
            f"Cleared data older than {command.days} days: "
            f"query_events={result.deleted_query_events} "
            f"auto_run_sessions={result.deleted_auto_run_sessions} "
            f"auto_run_tasks={result.deleted_auto_run_tasks} "
            f"session_lifecycle={result.deleted_session_lifecycle}",
        ]

    def vacuum(self, command: StatsMaintenanceCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            result = store.vacuum()
            size = store.database_size()

        if not result.success:
            raise AutorunError(f"VACUUM failed: {result.error}")
        return [f"VACUUM completed: freed_bytes={result.bytes_freed} size_bytes={size}"]

    def migrations(self, command: StatsMaintenanceCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            history = store.get_migration_history()
            current = store.get_current_version()
            target = store.get_target_version()

        lines = [f"Schema version: current={current} target={target}"]
        for record in history:
            applied_at = datetime.fromtimestamp(record.applied_at / 1000, tz=UTC).isoformat()
            line = f"  v{record.version} {record.status} at {applied_at}: {record.description}"
            if record.error_message:
                line += f" (error: {record.error_message})"
            lines.append(line)
        return lines


def error_payload(message: str, code: str) -> dict[str, str]:
    return {
        "type": "error",
        "message": message,
        "code": code,
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }


def format_run_event(event: RunEvent) -> str:
    """Human-readable one-line rendering of a run event."""

    if event.phase is RunPhase.TASK_START:
        prefix = "[dry-run]" if event.dry_run else "[start]"
        return f"{prefix} {event.message}"
    if event.phase is RunPhase.TASK_COMPLETE:
        return f"[done] {event.message} ({_seconds(event.duration_ms)})"
    if event.phase is RunPhase.TASK_FAILED:
        return f"[failed] {event.message}: {event.error}"
    return (
        f"[complete] {event.message} in {_seconds(event.duration_ms)} "
        f"(stop_reason={event.stop_reason.value if event.stop_reason else 'completed'})"
    )


async def _consume(execution: PlaybookExecution, emit: LineSink, *, json_output: bool) -> None:
    with _signal_handlers(execution):
        async for event in execution.events():
            emit(json.dumps(event.to_dict()) if json_output else format_run_event(event))
        await execution.wait_for_recordings()


@contextmanager
def _signal_handlers(execution: PlaybookExecution) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s; finishing the current task and stopping", name)
        execution.cancel()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _load_settings(db_path: Path | None) -> Settings:
    try:
        settings = Settings.from_env(db_path=db_path)
        settings.validate()
    except ValueError as error:
        raise ConfigurationError(f"Invalid settings: {error}", code="INVALID_SETTINGS") from error
    return settings


def _require_agent_binary(executable: str) -> None:
    if shutil.which(executable) is None:
        raise ConfigurationError(
            f"Agent executable not found on PATH: {executable}",
            code="AGENT_NOT_FOUND_ON_PATH",
        )


def _open_store_for_recording(settings: Settings) -> StatsStore | None:
    store = StatsStore(
        settings.stats.db_path,
        busy_timeout_ms=settings.stats.busy_timeout_ms,
        vacuum_threshold_bytes=settings.stats.vacuum_threshold_bytes,
    )
    try:
        store.initialize()
    except Exception:
        logger.exception("Stats store unavailable; run will not be recorded")
        return None
    return store


@contextmanager
def _store(settings: Settings) -> Iterator[StatsStore]:
    store = StatsStore(
        settings.stats.db_path,
        busy_timeout_ms=settings.stats.busy_timeout_ms,
        vacuum_threshold_bytes=settings.stats.vacuum_threshold_bytes,
    )
    try:
        store.initialize()
        yield store
    finally:
        store.close()


def _seconds(duration_ms: int | None) -> str:
    return f"{(duration_ms or 0) / 1000:.1f}s"
