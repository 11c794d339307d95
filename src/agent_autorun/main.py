"""CLI entrypoint for agent-autorun."""

from pathlib import Path

import rich_click as click

from agent_autorun import __version__
from agent_autorun.config import Settings
from agent_autorun.controllers import (
    PlaybookCliController,
    RunPlaybookCommand,
    StatsCliController,
    StatsClearCommand,
    StatsExportCommand,
    StatsMaintenanceCommand,
    StatsShowCommand,
)
from agent_autorun.errors import AutorunError
from agent_autorun.logging_config import configure_logging
from agent_autorun.stats import StatsTimeRange

click.rich_click.USE_MARKDOWN = True
PLAYBOOK_CONTROLLER = PlaybookCliController()
STATS_CONTROLLER = StatsCliController()
TIME_RANGES = [time_range.value for time_range in StatsTimeRange]


@click.group()
@click.version_option(version=__version__, prog_name="agent-autorun")
@click.option(
    "--log-level",
    default=None,
    help="Log level for stderr output. Defaults to AGENT_AUTORUN_LOG_LEVEL or INFO.",
)
def agent_autorun(log_level: str | None) -> None:
    """Run agent playbooks and inspect usage stats."""

    configure_logging(log_level or Settings.from_env().log_level)


@agent_autorun.command("run-playbook")
@click.option("--agent", required=True, help="Agent session id or unique id prefix.")
@click.option("--playbook", required=True, help="Playbook id or unique id prefix.")
@click.option("--dry-run", is_flag=True, default=False, help="Show what would run without executing.")
@click.option(
    "--history/--no-history",
    default=True,
    show_default=True,
    help="Record the run in usage stats and run history.",
)
@click.option("--json", "json_output", is_flag=True, default=False, help="Emit JSON lines.")
@click.option(
    "--continue-on-failure/--stop-on-failure",
    default=True,
    show_default=True,
    help="Keep running remaining tasks after a task fails.",
)
@click.option(
    "--catalog-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Playbook catalog JSON path.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Stats SQLite DB path.")
def run_playbook(  # noqa: PLR0913
    agent: str,
    playbook: str,
    dry_run: bool,
    history: bool,
    json_output: bool,
    continue_on_failure: bool,
    catalog_path: Path | None,
    db_path: Path | None,
) -> None:
    """Run every document of a playbook against an agent, in order."""

    result = PLAYBOOK_CONTROLLER.run_playbook(
        RunPlaybookCommand(
            agent=agent,
            playbook=playbook,
            dry_run=dry_run,
            write_history=history,
            json_output=json_output,
            continue_on_failure=continue_on_failure,
            catalog_path=catalog_path,
            db_path=db_path,
        ),
        click.echo,
    )
    if result.success:
        return
    if json_output:
        click.get_current_context().exit(1)
    raise click.ClickException(result.error_message or "Playbook run failed.")


@agent_autorun.group()
def stats() -> None:
    """Usage stats commands."""


@stats.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--range",
    "time_range",
    type=click.Choice(TIME_RANGES),
    default=StatsTimeRange.WEEK.value,
    show_default=True,
    help="Time window for aggregation.",
)
def stats_show(db_path: Path | None, time_range: str) -> None:
    """Show aggregated usage stats for a time window."""

    _run_lines(lambda: STATS_CONTROLLER.show(StatsShowCommand(db_path=db_path, time_range=time_range)))


@stats.command("export")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--range",
    "time_range",
    type=click.Choice(TIME_RANGES),
    default=StatsTimeRange.ALL.value,
    show_default=True,
    help="Time window to export.",
)
@click.option(
    "--output",
    type=click.Path(path_type=Path),
    default=None,
    help="Write CSV to this file instead of stdout.",
)
def stats_export(db_path: Path | None, time_range: str, output: Path | None) -> None:
    """Export query events as CSV."""

    _run_lines(
        lambda: STATS_CONTROLLER.export(
            StatsExportCommand(db_path=db_path, time_range=time_range, output=output),
        ),
    )


@stats.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--days", type=int, required=True, help="Delete data older than this many days.")
def stats_clear(db_path: Path | None, days: int) -> None:
    """Delete usage stats older than a number of days."""

    _run_lines(lambda: STATS_CONTROLLER.clear(StatsClearCommand(db_path=db_path, days=days)))


@stats.command("vacuum")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats_vacuum(db_path: Path | None) -> None:
    """Compact the stats database."""

    _run_lines(lambda: STATS_CONTROLLER.vacuum(StatsMaintenanceCommand(db_path=db_path)))


@stats.command("migrations")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats_migrations(db_path: Path | None) -> None:
    """Show schema version and the migrations log."""

    _run_lines(lambda: STATS_CONTROLLER.migrations(StatsMaintenanceCommand(db_path=db_path)))


def _run_lines(producer) -> None:
    try:
        lines = producer()
    except AutorunError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_autorun()
