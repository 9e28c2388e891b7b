"""popfwd command-line interface.

What:
  Provide the Typer entry point that runs one complete forwarding cycle:
  load configuration, open the history store, drain every mailbox, and exit
  with a status the scheduler can act on.

Why:
  popfwd is invoked by an external timer (cron, supercronic, a systemd timer).
  Each invocation must be self-contained and report failure through its exit
  code without the scheduler having to parse logs.

How:
  Resolve the configuration with :func:`load_runtime_config`, build a JSON
  logger at the configured level, load :class:`HistoryStore`, then hand over to
  the orchestrator assembled by :func:`popfwd._wiring.build_orchestrator`.

Interfaces:
  ``app`` (Typer application), ``run``, ``main``.

Invariants & Safety:
  - Exit ``0`` only when the run finished with zero errors; ``1`` on a
    configuration failure, an unreadable state file, or any mailbox or message
    error.
  - ``--version`` is eager: it prints and exits before configuration is read.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from . import __version__
from ._wiring import build_orchestrator
from .config.loader import ConfigLoadError, load_runtime_config
from .state.history import HistoryStore, PersistError
from .utils.logging import get_logger


app = typer.Typer(
    help="Forward mail from POP3 mailboxes to a single destination account.",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"popfwd {__version__}")
        raise typer.Exit()


@app.command()
def run(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file (default: $POPFWD_CONFIG_PATH or /etc/popfwd/config.yml).",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Run one fetch, dedupe, and forward cycle over every configured mailbox.

    What:
      Forward every message not yet recorded in the history store, then exit.

    How:
      Configuration errors are printed to stderr. Everything after the logger
      exists is reported as JSON lines on stdout.
    """

    try:
        runtime = load_runtime_config(config)
    except ConfigLoadError as exc:
        typer.echo(f"Error loading configuration: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    logger = get_logger("popfwd", level=runtime.log_level)
    logger.info(
        "popfwd starting",
        version=__version__,
        mailboxes=len(runtime.mailboxes),
        destination=runtime.destination.email,
    )

    try:
        history = HistoryStore.load(
            runtime.state_path,
            logger=get_logger("popfwd.state", level=runtime.log_level),
        )
    except PersistError as exc:
        logger.error("failed to initialize state tracker", error=str(exc))
        raise typer.Exit(code=1) from exc

    orchestrator = build_orchestrator(runtime, history=history, logger=logger)
    result = orchestrator.run(runtime.mailboxes)
    if not result.ok:
        logger.error(
            "run completed with errors",
            error=f"completed with {result.errors} errors",
            forwarded=result.forwarded,
        )
        raise typer.Exit(code=1)

    logger.info("popfwd finished successfully", forwarded=result.forwarded)


def main() -> None:
    """Execute the Typer application entry point."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
