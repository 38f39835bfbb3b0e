"""Command-line bootstrap for the worker process."""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Sequence
from contextlib import suppress

import click
import typer
from loguru import logger

from fnworker.config import WorkerIdentity, WorkerSettings, get_settings
from fnworker.errors import ConfigurationError, TransportError
from fnworker.logging_utils import configure_logging
from fnworker.runtime import SessionController

EXIT_USAGE = 1
EXIT_FATAL = 2

# Newer typer releases run a bundled copy of click; take the usage error base
# and Abort from typer itself so both layouts are caught.
_CLICK_ERRORS = tuple(
    {click.ClickException, next(base for base in typer.BadParameter.__mro__ if base.__name__ == "ClickException")}
)
_ABORTS = tuple({click.Abort, typer.Abort})

# -h is the host, so help is only reachable as --help.
app = typer.Typer(
    name="fnworker",
    help="Language worker for a function host.",
    add_completion=False,
    context_settings={"help_option_names": ["--help"]},
)


@app.command()
def run(
    host: str = typer.Option(..., "--host", "-h", help="Hostname or IP of the functions host"),
    port: int = typer.Option(..., "--port", "-p", min=1, max=65535, help="TCP port of the functions host"),
    worker_id: str = typer.Option(..., "--workerId", "-w", help="Worker identity sent in StartStream"),
    request_id: str = typer.Option(..., "--requestId", "-q", help="Id correlating the initial request"),
) -> None:
    """Connect to the host and serve function invocations until terminated."""
    try:
        settings = get_settings()
    except ConfigurationError as exc:
        typer.echo(f"Error: invalid worker settings: {exc}", err=True)
        raise typer.Exit(EXIT_USAGE) from exc

    configure_logging(settings.log_level, settings.log_format)
    identity = WorkerIdentity(worker_id=worker_id, request_id=request_id, host=host, port=port)
    try:
        code = asyncio.run(serve(identity, settings))
    except TransportError as exc:
        logger.critical("worker.transport_failed endpoint={} error={}", identity.endpoint, exc)
        raise typer.Exit(EXIT_FATAL) from exc
    except Exception as exc:
        logger.opt(exception=exc).critical("worker.fatal endpoint={}", identity.endpoint)
        raise typer.Exit(EXIT_FATAL) from exc
    raise typer.Exit(code)


async def serve(identity: WorkerIdentity, settings: WorkerSettings) -> int:
    session = SessionController(identity, settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, session.request_termination)
    try:
        return await session.run()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            with suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)


def main(argv: Sequence[str] | None = None) -> None:
    """Console entry point. Usage errors exit 1, fatal errors exit 2."""
    command = typer.main.get_command(app)
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        code = command.main(args=args, prog_name="fnworker", standalone_mode=False)
    except _CLICK_ERRORS as exc:
        exc.show()
        sys.exit(EXIT_USAGE)
    except _ABORTS:
        typer.echo("Aborted!", err=True)
        sys.exit(EXIT_FATAL)
    sys.exit(code or 0)
