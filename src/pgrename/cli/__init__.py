"""pgrename CLI - PostgreSQL table rename migrations

This module provides a modular CLI structure for pgrename commands:
- migrate.py: migrate, rollback
- monitoring.py: inspect, history, backups
- common.py: shared utilities
"""
from pathlib import Path
import click

from .. import __version__
from .migrate import migrate_group
from .monitoring import monitoring_group


@click.group()
@click.version_option(version=__version__, prog_name="pgrename")
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              envvar='PGRENAME_CONFIG',
              help='YAML config file (default: ./pgrename.yaml if present)')
@click.option('--database-url', default=None, envvar='DATABASE_URL',
              help='PostgreSQL connection string')
@click.option('--verbose', '-v', is_flag=True, default=False,
              help='Enable verbose output')
@click.option('--quiet', '-q', is_flag=True, default=False,
              help='Suppress non-essential output')
@click.pass_context
def cli(ctx, config_path, database_url, verbose, quiet):
    """pgrename - safe PostgreSQL table renames

    Renames PascalCase tables to snake_case inside one transaction, with a
    backup first and an audited rollback.

    \b
    Key Commands:
        inspect           Show pending, applied and conflicting renames
        migrate           Run the migration (--dry-run to plan only)
        rollback          Restore the original table names
        history           Show the migration audit trail
        backups           List database backups

    \b
    Examples:
        pgrename inspect
        pgrename migrate --dry-run
        pgrename migrate
        pgrename rollback --yes
    """
    from .common import VERBOSITY_QUIET, VERBOSITY_NORMAL, VERBOSITY_VERBOSE

    ctx.ensure_object(dict)

    # Validate mutually exclusive flags
    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    # Set verbosity level
    if quiet:
        ctx.obj['verbosity'] = VERBOSITY_QUIET
    elif verbose:
        ctx.obj['verbosity'] = VERBOSITY_VERBOSE
    else:
        ctx.obj['verbosity'] = VERBOSITY_NORMAL

    ctx.obj['config_path'] = Path(config_path) if config_path else None
    ctx.obj['database_url'] = database_url


# Register migration commands (migrate, rollback)
cli.add_command(migrate_group.commands['migrate'])
cli.add_command(migrate_group.commands['rollback'])

# Register read-only commands (inspect, history, backups)
cli.add_command(monitoring_group.commands['inspect'])
cli.add_command(monitoring_group.commands['history'])
cli.add_command(monitoring_group.commands['backups'])


def main():
    """Entry point for the CLI."""
    cli()


__all__ = [
    '__version__',
    'cli',
    'main',
]
