"""CLI entrypoint for reqflow."""

import logging
import sys
from pathlib import Path

import rich_click as click

from reqflow import __version__
from reqflow.orchestrator.control import FORCED_EXIT_CODE, MODE_ALIASES, ForcedStop
from reqflow.orchestrator.controllers import (
    ROOT_LOGGER_NAME,
    ComprehensiveCommand,
    DeliverCommand,
    DeliveryCliController,
    IntakeCommand,
    StatusCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DeliveryCliController()
logger = logging.getLogger(ROOT_LOGGER_NAME)

_AGENTS_ROOT_OPTION = click.option(
    "--agents-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding agent scripts and config (default: REQFLOW_AGENTS_ROOT or CWD).",
)


@click.group()
@click.version_option(version=__version__, prog_name="reqflow")
def reqflow() -> None:
    """File-backed requirement delivery orchestrator.

    Work items are Markdown files; each queue is a folder under the
    requirements root. Agents move files, the runner checks where they landed.
    """


@reqflow.command("deliver")
@_AGENTS_ROOT_OPTION
@click.option(
    "--mode",
    type=click.Choice(sorted(MODE_ALIASES), case_sensitive=False),
    default=None,
    help="Delivery mode; defaults to `loops.delivery_mode` from config.",
)
@click.option("--once", is_flag=True, default=False, help="Run a single cycle and exit.")
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Start under-filled bundles without waiting for the starvation counter.",
)
@click.option(
    "--verbose/--no-verbose",
    default=False,
    show_default=True,
    help="Show INFO logs. Press `v` at runtime to toggle.",
)
@click.option("--min-bundle", type=click.IntRange(min=1), default=None, help="Minimum bundle.")
@click.option(
    "--max-bundle",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum bundle; raised to --min-bundle when smaller.",
)
def deliver(  # noqa: PLR0913
    agents_root: Path | None,
    mode: str | None,
    once: bool,
    force: bool,
    verbose: bool,
    min_bundle: int | None,
    max_bundle: int | None,
) -> None:
    """Run the delivery loop.

    Keys on a TTY: `v` toggles verbose, `s` prints queue depths, `q` stops.
    A second stop request exits immediately with code 130.
    """

    _configure_logging()
    _run(
        lambda: CONTROLLER.deliver(
            DeliverCommand(
                agents_root=agents_root,
                mode=mode,
                once=once,
                force=force,
                verbose=verbose,
                min_bundle=min_bundle,
                max_bundle=max_bundle,
            ),
        ),
    )


@reqflow.command("intake")
@_AGENTS_ROOT_OPTION
@click.option("--once", is_flag=True, default=False, help="Run a single intake cycle and exit.")
def intake(agents_root: Path | None, once: bool) -> None:
    """Run the planning loop over clarification, input, refinement, and backlog."""

    _configure_logging()
    _run(lambda: CONTROLLER.intake(IntakeCommand(agents_root=agents_root, once=once)))


@reqflow.command("status")
@_AGENTS_ROOT_OPTION
def status(agents_root: Path | None) -> None:
    """Print queue depths and the active pause, if any."""

    _run(lambda: CONTROLLER.status(StatusCommand(agents_root=agents_root)))


@reqflow.group()
def pause() -> None:
    """Global pause commands."""


@pause.command("show")
@_AGENTS_ROOT_OPTION
def pause_show(agents_root: Path | None) -> None:
    """Show the active global pause."""

    _run(lambda: CONTROLLER.pause_show(StatusCommand(agents_root=agents_root)))


@pause.command("clear")
@_AGENTS_ROOT_OPTION
def pause_clear(agents_root: Path | None) -> None:
    """Clear the global pause so stages run again."""

    _run(lambda: CONTROLLER.pause_clear(StatusCommand(agents_root=agents_root)))


@reqflow.command("comprehensive")
@_AGENTS_ROOT_OPTION
@click.option("--force", is_flag=True, default=False, help="Run even if released already passed.")
@click.option(
    "--non-mutating",
    is_flag=True,
    default=False,
    help="Record verdicts without routing released items.",
)
def comprehensive(agents_root: Path | None, force: bool, non_mutating: bool) -> None:
    """Run the comprehensive regression over the released queue once."""

    _configure_logging()
    _run(
        lambda: CONTROLLER.comprehensive(
            ComprehensiveCommand(
                agents_root=agents_root,
                force=force,
                non_mutating=non_mutating,
            ),
        ),
    )


def _run(action) -> None:
    try:
        lines = action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    except (ForcedStop, KeyboardInterrupt):
        click.echo("Forced stop.", err=True)
        sys.exit(FORCED_EXIT_CODE)
    except Exception as error:
        logger.exception("Unhandled error")
        raise click.ClickException(f"Unhandled error: {error}") from error
    _emit_lines(lines)


def _configure_logging() -> None:
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    reqflow()
