"""Shared utilities for pgrename CLI commands."""
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click

from ..config import MigrationConfig, load_config
from ..db import PostgresDatabase
from ..migrations.manager import MigrationManager
from ..run_log import LOG_FORMAT, LOGGER_NAME

# Verbosity levels
VERBOSITY_QUIET = 0
VERBOSITY_NORMAL = 1
VERBOSITY_VERBOSE = 2

_CONSOLE_LEVELS = {
    VERBOSITY_QUIET: logging.ERROR,
    VERBOSITY_NORMAL: logging.WARNING,
    VERBOSITY_VERBOSE: logging.DEBUG,
}


def should_print(verbosity: int, message_level: int) -> bool:
    """Determine if a message should be printed based on verbosity settings.

    Args:
        verbosity: Current verbosity level (0=quiet, 1=normal, 2=verbose).
        message_level: Minimum verbosity level required for this message.

    Returns:
        True if the message should be printed, False otherwise.
    """
    return verbosity >= message_level


def echo_verbose(message: str, verbosity: int) -> None:
    """Print a message only in verbose mode."""
    if should_print(verbosity, VERBOSITY_VERBOSE):
        click.echo(message, err=False)


def echo_normal(message: str, verbosity: int) -> None:
    """Print a message in normal and verbose modes."""
    if should_print(verbosity, VERBOSITY_NORMAL):
        click.echo(message, err=False)


def echo_quiet(message: str, verbosity: int) -> None:
    """Print a critical message that should always be shown (even in quiet mode).

    Args:
        message: The critical message to print.
        verbosity: Current verbosity level (unused, but kept for consistency).
    """
    click.echo(message, err=False)


@contextmanager
def console_logging(verbosity: int) -> Iterator[logging.Handler]:
    """Mirror the pgrename logger on stderr for the duration of a command.

    Warnings and errors are shown by default, everything with --verbose,
    errors only with --quiet.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(_CONSOLE_LEVELS.get(verbosity, logging.WARNING))
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    root = logging.getLogger(LOGGER_NAME)
    root.addHandler(handler)
    try:
        yield handler
    finally:
        root.removeHandler(handler)


def get_config(ctx: click.Context, **overrides) -> MigrationConfig:
    """Load the config for this invocation and apply CLI flag overrides.

    Priority: CLI flags > environment > config file > defaults.
    """
    config = load_config(ctx.obj.get('config_path'))
    return config.with_overrides(database_url=ctx.obj.get('database_url'), **overrides)


def connect_database(config: MigrationConfig) -> PostgresDatabase:
    """Open the connection every component of the run shares."""
    return PostgresDatabase.connect(config.require_database_url())


def build_manager(config: MigrationConfig, db, run_id: str) -> MigrationManager:
    """Construct the MigrationManager for one CLI invocation."""
    return MigrationManager(db, config, run_id=run_id)


def format_path(path: Optional[Path]) -> str:
    return click.style(str(path), fg="cyan") if path else "-"
