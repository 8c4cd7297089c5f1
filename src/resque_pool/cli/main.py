import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from resque_pool.config import get_settings, write_example_settings
from resque_pool.config_sources import FileOrHashSource
from resque_pool.environment import EnvironmentResolver
from resque_pool.errors import ConfigLoadError
from resque_pool.logging.log_paths import get_main_log_path
from resque_pool.pool import Pool

# Shared console for CLI output - uses stderr to avoid mixing with JSON output
cli_console = Console(file=sys.stderr)

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(log_level_name: str, console_logging: bool = True, log_file: Path | None = None):
    """Configure logging for resque-pool.

    Logs always go to a rotating file in the system-appropriate log directory.
    Console logging goes to stderr via Rich.

    Args:
        log_level_name: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console_logging: If True, also log to console via Rich
        log_file: Log file path; defaults to the platform log file
    """
    log_level = logging.getLevelName(log_level_name.upper())
    log_file = log_file or get_main_log_path()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    # File handler with rotation (10 MB max, keep 3 backups)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(process)d - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.addHandler(file_handler)

    if console_logging:
        console_handler = RichHandler(
            console=cli_console,
            rich_tracebacks=True,
            show_path=False,
        )
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)

    root_logger.setLevel(logging.DEBUG)  # Let handlers filter
    logging.getLogger("resque_pool").setLevel(log_level)


def write_pidfile(pidfile: Path) -> None:
    """Write our pid to ``pidfile``, refusing if another pool is running.

    Raises:
        click.ClickException: If the pidfile names a running process
    """
    if pidfile.exists():
        try:
            other_pid = int(pidfile.read_text().strip())
        except ValueError:
            other_pid = None

        if other_pid is not None and other_pid != os.getpid() and _pid_alive(other_pid):
            raise click.ClickException(
                f"Another resque-pool is running (pid {other_pid}, pidfile {pidfile})"
            )
        logger.warning(f"Removing stale pidfile {pidfile}")

    pidfile.parent.mkdir(parents=True, exist_ok=True)
    pidfile.write_text(f"{os.getpid()}\n")


def _pid_alive(pid: int) -> bool:
    try:
        # Signal 0 only checks that the process exists
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Set the logging level (default: from settings).",
)
@click.option(
    "--console-log/--no-console-log",
    default=None,
    help="Log to stderr in addition to the log file.",
)
@click.pass_context
def cli(ctx, log_level, console_log):
    """Keep a configured number of queue workers running."""
    settings = get_settings()
    if log_level is not None:
        settings.logging.log_level = log_level.upper()
    if console_log is not None:
        settings.logging.console_logging = console_log

    ctx.ensure_object(dict)
    ctx.obj["SETTINGS"] = settings


@cli.command()
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Pool configuration file (default: $RESQUE_POOL_CONFIG or resque-pool.yml).",
)
@click.option(
    "-E",
    "--environment",
    help="Environment whose configuration section applies (overrides RACK_ENV/RESQUE_ENV).",
)
@click.option("--worker-command", help="Command that runs one worker (queue names are appended).")
@click.option(
    "-p",
    "--pidfile",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the supervisor's pid to this file.",
)
@click.option(
    "--drain-timeout",
    type=click.FloatRange(min=0, min_open=True),
    help="Seconds to wait for workers on graceful shutdown before killing them.",
)
@click.pass_context
def run(ctx, config_path, environment, worker_command, pidfile, drain_timeout):
    """Start the workers and supervise them until shut down.

    \b
    Signals:
        HUP         reload the configuration and adjust the workers
        QUIT, INT   stop all workers gracefully, exit when they are done
        TERM        kill all workers and exit immediately
        WINCH       stop all workers but keep running (HUP restarts them)
        USR1, USR2, CONT  forwarded to all workers
    """
    settings = ctx.obj["SETTINGS"]
    if config_path is not None:
        settings.supervisor.config_path = str(config_path)
    if environment is not None:
        settings.supervisor.environment = environment
    if worker_command is not None:
        settings.workers.command = worker_command
    if pidfile is not None:
        settings.supervisor.pidfile = str(pidfile)
    if drain_timeout is not None:
        settings.supervisor.drain_timeout = drain_timeout

    setup_logging(settings.logging.log_level, settings.logging.console_logging)

    try:
        pool = Pool.create_configured(settings)
    except ConfigLoadError as e:
        raise click.ClickException(str(e)) from e

    pidfile_path = Path(settings.supervisor.pidfile) if settings.supervisor.pidfile else None
    if pidfile_path is not None:
        write_pidfile(pidfile_path)

    try:
        logger.info(f"resque-pool started (pid {os.getpid()})")
        pool.run()
    finally:
        if pidfile_path is not None:
            pidfile_path.unlink(missing_ok=True)


@cli.command(name="show-config")
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Pool configuration file (default: $RESQUE_POOL_CONFIG or resque-pool.yml).",
)
@click.option("-E", "--environment", help="Environment whose configuration section applies.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format",
)
@click.pass_context
def show_config(ctx, config_path, environment, output_format):
    """Print the worker counts for the active environment.

    Examples:
        resque-pool show-config
        resque-pool show-config -E production --format=json
    """
    settings = ctx.obj["SETTINGS"]
    path = config_path or settings.supervisor.config_path
    source = FileOrHashSource(path)
    resolved_environment = EnvironmentResolver(
        environment or settings.supervisor.environment
    ).resolve()

    try:
        config = source.retrieve_config(resolved_environment)
    except ConfigLoadError as e:
        raise click.ClickException(str(e)) from e

    if output_format == "json":
        click.echo(
            json.dumps(
                {"environment": resolved_environment, "source": source.describe(), "workers": config},
                indent=2,
            )
        )
        return

    table = Table(title=f"Workers ({resolved_environment or 'no environment'}, {source.describe()})")
    table.add_column("Queues")
    table.add_column("Workers", justify="right")
    for queue_spec, count in config.items():
        table.add_row(queue_spec, str(count))
    Console().print(table)

    if not config:
        click.echo("No workers configured")


@cli.command(name="init-settings")
@click.option(
    "--location",
    type=click.Choice(["user", "project", "system"]),
    default="project",
    help="Where to write the settings file.",
)
def init_settings(location):
    """Write an example settings file."""
    try:
        path = write_example_settings(location)
    except PermissionError as e:
        raise click.ClickException(f"Cannot write settings file: {e}") from e
    click.echo(f"Created settings file: {path}")


if __name__ == "__main__":
    cli()
