"""Migration commands for pgrename CLI: migrate, rollback."""
import logging
import sys
from typing import Optional

import click
import psycopg

from ..errors import MigrationError, MigrationLocked, PlanChanged
from ..migrations.planner import MigrationPlan
from ..migrations.rollback import RollbackResult
from ..migrations.verifier import VerificationReport
from ..run_log import RunLog

# Local CLI imports
from .common import (
    build_manager,
    connect_database,
    console_logging,
    echo_normal,
    echo_quiet,
    echo_verbose,
    format_path,
    get_config,
)

logger = logging.getLogger(__name__)


@click.group()
def migrate_group():
    """Migration commands."""
    pass


def _interactive() -> bool:
    return sys.stdin.isatty()


def _fail(error: Exception, verbosity: int, run_log: Optional[RunLog] = None,
          hint: Optional[str] = None) -> None:
    """Print the error summary and exit 1."""
    echo_quiet(click.style(f"Error: {error}", fg="red"), verbosity)
    if hint:
        echo_quiet(click.style(hint, fg="yellow"), verbosity)
    if run_log is not None:
        echo_quiet(f"Log: {format_path(run_log.path)}", verbosity)
    sys.exit(1)


def _print_plan(plan: Optional[MigrationPlan], verbosity: int) -> None:
    if plan is None:
        return
    if plan.is_empty:
        return
    echo_normal(f"\n{click.style('Planned steps:', bold=True)}", verbosity)
    for index, step in enumerate(plan.steps, start=1):
        echo_normal(f"  {index:2}. {step.describe()}", verbosity)
    if plan.skipped:
        echo_verbose(f"  Skipped (not found): {', '.join(plan.skipped)}", verbosity)


def _print_verification(report: Optional[VerificationReport], verbosity: int) -> None:
    if report is None:
        return
    echo_normal(f"\n{click.style('Verification:', bold=True)}", verbosity)
    for table in report.checked:
        if table in report.row_counts:
            echo_normal(f"  {click.style('✓', fg='green')} {table}: "
                        f"{report.row_counts[table]} records", verbosity)
        elif table in report.unqueryable:
            echo_normal(f"  {click.style('✗', fg='red')} {table}: "
                        f"{report.unqueryable[table]}", verbosity)
        else:
            echo_normal(f"  {click.style('✗', fg='red')} {table}: missing", verbosity)


def _print_rollback(result: RollbackResult, verbosity: int, dry_run: bool = False) -> None:
    _print_plan(result.plan, verbosity)
    if result.columns_for_review:
        echo_normal(click.style("\n⚠ Columns left in place, review manually:", fg="yellow"),
                    verbosity)
        for review in result.columns_for_review:
            echo_normal(f"  {review}", verbosity)
    if dry_run:
        echo_normal(click.style("\nDry run complete: no changes were made", fg="cyan"), verbosity)
        return
    _print_verification(result.verification, verbosity)
    if result.execution is not None:
        echo_quiet(click.style(
            f"\n✓ Rollback committed ({len(result.execution.statements)} statements, "
            f"{result.execution.duration_ms} ms)", fg="green", bold=True), verbosity)


@migrate_group.command("migrate")
@click.option('--dry-run', is_flag=True, default=False,
              help='Plan and report only; nothing is written')
@click.option('--no-backup', is_flag=True, default=False,
              help='Skip the pg_dump backup (discouraged)')
@click.option('--expected-database', default=None,
              help='Database the connection must point at')
@click.pass_context
def migrate(ctx, dry_run: bool, no_backup: bool, expected_database: Optional[str]) -> None:
    """Rename tables to snake_case.

    \b
    Steps:
        1. Check database state (expected database, no conflicts)
        2. Create a pg_dump backup
        3. Apply every rename in one transaction
        4. Verify the renamed tables

    \b
    Examples:
        pgrename migrate --dry-run
        pgrename migrate
    """
    verbosity = ctx.obj['verbosity']
    try:
        config = get_config(ctx, expected_database=expected_database)
    except MigrationError as e:
        _fail(e, verbosity)

    run_log = RunLog(config.log_dir)
    with run_log, console_logging(verbosity):
        logger.info("Starting table rename migration (run %s)", run_log.run_id)
        echo_normal(click.style("Table Rename Migration", fg="cyan", bold=True), verbosity)
        echo_normal("=" * 50, verbosity)
        if dry_run:
            echo_normal(click.style("DRY RUN MODE - No changes will be made", fg="yellow"),
                        verbosity)
        if no_backup and not dry_run:
            echo_quiet(click.style("⚠ --no-backup: migrating without a backup is discouraged",
                                   fg="yellow"), verbosity)

        try:
            with connect_database(config) as db:
                manager = build_manager(config, db, run_log.run_id)
                result = manager.migrate(dry_run=dry_run, backup=not no_backup)
                _print_plan(result.plan, verbosity)

                if result.superseded:
                    echo_quiet(click.style(
                        "✓ Nothing to migrate: another run applied the renames first",
                        fg="green"), verbosity)
                elif result.noop:
                    echo_quiet(click.style(
                        "✓ Nothing to migrate: all tables are already renamed", fg="green"),
                        verbosity)
                elif dry_run:
                    echo_normal(click.style(
                        f"\nDry run complete: {len(result.plan)} steps planned", fg="cyan"),
                        verbosity)
                else:
                    if result.backup is not None:
                        echo_normal(f"\nBackup: {format_path(result.backup.path)}", verbosity)
                    _print_verification(result.verification, verbosity)

                    if result.warning is None:
                        echo_quiet(click.style("\n✓ Migration completed", fg="green", bold=True),
                                   verbosity)
                        echo_normal("Next: point the application's queries at the new "
                                    "table names", verbosity)
                    else:
                        echo_quiet(click.style(f"\n⚠ {result.warning}", fg="yellow"), verbosity)
                        if _interactive() and click.confirm("Roll back now?", default=False):
                            rollback_result = manager.rollback()
                            _print_rollback(rollback_result, verbosity)
                        else:
                            echo_quiet("Run `pgrename rollback` to restore the original names",
                                       verbosity)
        except (MigrationError, psycopg.Error) as e:
            logger.error("Migration failed: %s", e)
            # Nothing was changed by this run in these cases
            if dry_run or isinstance(e, (MigrationLocked, PlanChanged)):
                hint = None
            else:
                hint = "Consider running `pgrename rollback` if needed"
            _fail(e, verbosity, run_log, hint)

    echo_normal(f"Log: {format_path(run_log.path)}", verbosity)


@migrate_group.command("rollback")
@click.option('--dry-run', is_flag=True, default=False,
              help='Plan and report only; nothing is written')
@click.option('--yes', '-y', is_flag=True, default=False,
              help='Do not ask for confirmation')
@click.option('--expected-database', default=None,
              help='Database the connection must point at')
@click.pass_context
def rollback(ctx, dry_run: bool, yes: bool, expected_database: Optional[str]) -> None:
    """Restore the original table names.

    Compatibility columns are never dropped; they are listed for manual
    review instead.

    \b
    Examples:
        pgrename rollback --dry-run
        pgrename rollback --yes
    """
    verbosity = ctx.obj['verbosity']
    try:
        config = get_config(ctx, expected_database=expected_database)
    except MigrationError as e:
        _fail(e, verbosity)

    if not dry_run and not yes:
        click.confirm("Restore the original table names?", default=False, abort=True)

    run_log = RunLog(config.log_dir)
    with run_log, console_logging(verbosity):
        logger.info("Starting table rename rollback (run %s)", run_log.run_id)
        echo_normal(click.style("Table Rename Rollback", fg="cyan", bold=True), verbosity)
        echo_normal("=" * 50, verbosity)
        if dry_run:
            echo_normal(click.style("DRY RUN MODE - No changes will be made", fg="yellow"),
                        verbosity)

        try:
            with connect_database(config) as db:
                manager = build_manager(config, db, run_log.run_id)
                result = manager.rollback(dry_run=dry_run)
                _print_rollback(result, verbosity, dry_run=dry_run)
        except (MigrationError, psycopg.Error) as e:
            logger.error("Rollback failed: %s", e)
            _fail(e, verbosity, run_log)

    echo_normal(f"Log: {format_path(run_log.path)}", verbosity)
