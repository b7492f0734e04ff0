"""CLI entrypoint for command-dispatch."""

import logging
from pathlib import Path

import rich_click as click

from command_dispatch import __version__
from command_dispatch.controllers import (
    CommandDispatchCliController,
    CoordinatorServeCommand,
    InspectCommand,
    ListCommandsCommand,
    ReconcileCommand,
    SubmitCommand,
    WorkerServeCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CommandDispatchCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="command-dispatch")
def command_dispatch() -> None:
    """Command dispatch CLI."""


@command_dispatch.group()
def coordinator() -> None:
    """Coordinator service commands."""


@coordinator.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind address. Defaults to COMMAND_DISPATCH_HOST.")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help="Bind port. Defaults to COMMAND_DISPATCH_PORT.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def coordinator_serve(
    db_path: Path | None,
    host: str | None,
    port: int | None,
    log_level: str,
) -> None:
    """Run the coordinator HTTP service.

    The crash-recovery sweep runs before the first request is accepted.
    """

    _configure_logging(log_level)
    CONTROLLER.serve_coordinator(
        CoordinatorServeCommand(
            db_path=db_path,
            host=host,
            port=port,
            log_level=log_level,
        ),
    )


@coordinator.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def coordinator_reconcile(db_path: Path | None, log_level: str) -> None:
    """Run one reconciliation sweep over RUNNING commands and exit."""

    _configure_logging(log_level)
    _emit_lines(CONTROLLER.reconcile(ReconcileCommand(db_path=db_path)))


@command_dispatch.group()
def worker() -> None:
    """Worker service commands."""


@worker.command("serve")
@click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Execution log SQLite DB path.",
)
@click.option("--host", default=None, help="Bind address.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
@click.option(
    "--agent-count",
    type=click.IntRange(min=0),
    default=None,
    help="Number of agents to activate. Clamped to the pool size.",
)
@click.option(
    "--random-failures",
    is_flag=True,
    default=False,
    help="Hard-exit the process at random before executing commands.",
)
@click.option(
    "--kill-after",
    "kill_after_ms",
    type=click.IntRange(min=1),
    default=None,
    help="Hard-exit the process after this many milliseconds.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def worker_serve(  # noqa: PLR0913
    db_path: Path | None,
    host: str | None,
    port: int | None,
    agent_count: int | None,
    random_failures: bool,
    kill_after_ms: int | None,
    log_level: str,
) -> None:
    """Run the worker HTTP service and its agent poll loops."""

    _configure_logging(log_level)
    CONTROLLER.serve_worker(
        WorkerServeCommand(
            db_path=db_path,
            host=host,
            port=port,
            agent_count=agent_count,
            random_failures=random_failures,
            kill_after_ms=kill_after_ms,
            log_level=log_level,
        ),
    )


@command_dispatch.group()
def commands() -> None:
    """Command queue inspection and submission."""


@commands.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "command_type",
    required=True,
    help="Command type, for example DELAY or HTTP_GET_JSON.",
)
@click.option("--payload", default="{}", show_default=True, help="JSON object payload.")
@click.option(
    "--idempotent/--not-idempotent",
    "is_idempotent",
    default=False,
    show_default=True,
    help="Whether the command may be re-executed after an agent crash.",
)
def commands_submit(
    db_path: Path | None,
    command_type: str,
    payload: str,
    is_idempotent: bool,
) -> None:
    """Submit a command directly into the coordinator store."""

    try:
        lines = CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                command_type=command_type,
                payload=payload,
                is_idempotent=is_idempotent,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@commands.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("command_id")
def commands_status(db_path: Path | None, command_id: str) -> None:
    """Show the current status, result, and error of one command."""

    _emit_lines(CONTROLLER.status(InspectCommand(db_path=db_path, command_id=command_id)))


@commands.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", default=None, help="Filter by PENDING, RUNNING, COMPLETED or FAILED.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
)
def commands_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List commands, newest first."""

    try:
        lines = CONTROLLER.list_commands(
            ListCommandsCommand(db_path=db_path, status=status, limit=limit),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@commands.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("command_id")
def commands_inspect(db_path: Path | None, command_id: str) -> None:
    """Show one command with its transition history."""

    _emit_lines(CONTROLLER.inspect(InspectCommand(db_path=db_path, command_id=command_id)))


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    command_dispatch()
