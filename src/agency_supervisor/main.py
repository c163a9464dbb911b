"""CLI entrypoint for agency-supervisor."""

import logging
from pathlib import Path

import rich_click as click

from agency_supervisor import __version__
from agency_supervisor.supervisor.controllers import (
    HistoryListCommand,
    HistoryStatsCommand,
    RunCardCommand,
    StateCommand,
    SupervisorCliController,
)
from agency_supervisor.supervisor.coordinator import SupervisorCoordinatorError
from agency_supervisor.supervisor.models import KNOWN_FLOWS, RunStatus
from agency_supervisor.supervisor.pipeline import BUILTIN_PIPELINES

click.rich_click.USE_MARKDOWN = True
SUPERVISOR_CONTROLLER = SupervisorCliController()

_STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Supervisor state directory (defaults to AGENCY_SUPERVISOR_STATE_DIR or .agency).",
)


@click.group()
@click.version_option(version=__version__, prog_name="agency-supervisor")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def agency_supervisor(log_level: str) -> None:
    """Supervise agent runs for task cards."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


@agency_supervisor.command("run")
@click.argument("card_key")
@click.option("--flow", type=click.Choice(KNOWN_FLOWS), default=None, help="Flow to start at.")
@click.option(
    "--pipeline",
    type=click.Choice(sorted(BUILTIN_PIPELINES)),
    default=None,
    help="Pipeline kind; suggested from --flow when omitted.",
)
@click.option(
    "--root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Cards root directory (informational; echoed in the run output).",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=3600.0,
    show_default=True,
    help="Seconds to wait for the pipeline before canceling it.",
)
@click.option(
    "--worker-arg",
    "worker_args",
    multiple=True,
    help="Extra argument passed to every worker process. Can be repeated.",
)
@_STATE_DIR_OPTION
def run(  # noqa: PLR0913
    card_key: str,
    flow: str | None,
    pipeline: str | None,
    root: Path | None,
    timeout: float,
    worker_args: tuple[str, ...],
    state_dir: Path | None,
) -> None:
    """Run one card through its pipeline and wait for the result."""

    try:
        result = SUPERVISOR_CONTROLLER.run_card(
            RunCardCommand(
                state_dir=state_dir,
                card_key=card_key,
                flow=flow,
                pipeline=pipeline,
                root=root,
                timeout_seconds=timeout,
                worker_args=worker_args,
            ),
        )
    except (SupervisorCoordinatorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Pipeline did not complete.")


@agency_supervisor.group()
def state() -> None:
    """Persisted supervisor state."""


@state.command("show")
@_STATE_DIR_OPTION
def state_show(state_dir: Path | None) -> None:
    """Show active runs, queued cards and failure counts."""

    _emit_lines(SUPERVISOR_CONTROLLER.state_show(StateCommand(state_dir=state_dir)))


@state.command("clear")
@_STATE_DIR_OPTION
def state_clear(state_dir: Path | None) -> None:
    """Delete the persisted state file."""

    _emit_lines(SUPERVISOR_CONTROLLER.state_clear(StateCommand(state_dir=state_dir)))


@state.command("clear-stale")
@_STATE_DIR_OPTION
@click.option(
    "--timeout",
    type=click.IntRange(min=1),
    default=None,
    help="Stale threshold in seconds (defaults to AGENCY_SUPERVISOR_STALE_RUN_SECONDS).",
)
def state_clear_stale(state_dir: Path | None, timeout: int | None) -> None:
    """Remove active runs that started before the stale threshold."""

    _emit_lines(
        SUPERVISOR_CONTROLLER.state_clear_stale(
            StateCommand(state_dir=state_dir, stale_timeout_seconds=timeout),
        ),
    )


@agency_supervisor.group()
def history() -> None:
    """Run history reports."""


@history.command("list")
@_STATE_DIR_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of runs to print.",
)
@click.option("--flow", type=click.Choice(KNOWN_FLOWS), default=None, help="Flow filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in RunStatus]),
    default=None,
    help="Status filter.",
)
@click.option("--card", "card_contains", default=None, help="Card key substring filter.")
def history_list(
    state_dir: Path | None,
    limit: int,
    flow: str | None,
    status: str | None,
    card_contains: str | None,
) -> None:
    """List recent runs, most recent first."""

    _emit_lines(
        SUPERVISOR_CONTROLLER.history_list(
            HistoryListCommand(
                state_dir=state_dir,
                limit=limit,
                flow=flow,
                status=status,
                card_contains=card_contains,
            ),
        ),
    )


@history.command("stats")
@_STATE_DIR_OPTION
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=None,
    help="Only count runs completed in this window.",
)
@click.option("--flow", type=click.Choice(KNOWN_FLOWS), default=None, help="Flow filter.")
def history_stats(state_dir: Path | None, hours: int | None, flow: str | None) -> None:
    """Show aggregated run metrics."""

    _emit_lines(
        SUPERVISOR_CONTROLLER.history_stats(
            HistoryStatsCommand(state_dir=state_dir, hours=hours, flow=flow),
        ),
    )


@agency_supervisor.command("pipelines")
def pipelines() -> None:
    """List pipeline kinds and their flows."""

    _emit_lines(SUPERVISOR_CONTROLLER.pipelines())


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agency_supervisor()
