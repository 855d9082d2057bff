"""Read-only commands for pgrename CLI: inspect, history, backups."""
import sys

import click
import psycopg

from ..audit_log import SEVERITY_ERROR, SEVERITY_WARNING, reconstruct_state
from ..errors import MigrationError
from ..migrations.backup import BackupCoordinator
from ..run_log import new_run_id

# Local CLI imports
from .common import (
    build_manager,
    connect_database,
    echo_normal,
    echo_quiet,
    echo_verbose,
    format_path,
    get_config,
)

_SEVERITY_COLORS = {SEVERITY_WARNING: "yellow", SEVERITY_ERROR: "red"}


@click.group()
def monitoring_group():
    """Read-only commands."""
    pass


@monitoring_group.command("inspect")
@click.pass_context
def inspect(ctx) -> None:
    """Analyze the live schema against the rename mappings.

    Shows the mapped tables with their foreign-key references, indexes and
    constraints, and which renames are pending, applied or conflicting.
    Nothing is written.
    """
    verbosity = ctx.obj['verbosity']
    try:
        config = get_config(ctx)
        with connect_database(config) as db:
            report = build_manager(config, db, new_run_id()).inspect()
    except (MigrationError, psycopg.Error) as e:
        echo_quiet(click.style(f"Error: Inspection failed: {e}", fg="red"), verbosity)
        sys.exit(1)

    echo_normal(click.style("Schema Inspection", fg="cyan", bold=True), verbosity)
    echo_normal("=" * 50, verbosity)
    db_color = "green" if report.database == config.expected_database else "red"
    echo_normal(f"\nDatabase: {click.style(report.database, fg=db_color)} "
                f"(expected {config.expected_database})", verbosity)

    snapshot = report.snapshot
    echo_normal(f"\n{click.style('Mapped tables:', bold=True)}", verbosity)
    if not report.mapped_tables:
        echo_normal("  (none found)", verbosity)
    for name in report.mapped_tables:
        refs = snapshot.referenced_counts.get(name, 0)
        rows = snapshot.estimated_rows.get(name, 0)
        echo_normal(f"  {name:32} referenced by {refs} FKs, ~{rows} rows", verbosity)
        descriptor = snapshot.tables[name]
        echo_verbose(f"    indexes: {', '.join(snapshot.indexes_of(name)) or '-'}", verbosity)
        echo_verbose(f"    constraints: {', '.join(snapshot.constraint_names(name)) or '-'}",
                     verbosity)
        echo_verbose(f"    triggers: {'yes' if descriptor.has_triggers else 'no'}, "
                     f"row security: {'yes' if descriptor.row_security_enabled else 'no'}",
                     verbosity)

    status = report.status
    echo_normal(f"\n{click.style('Renames:', bold=True)}", verbosity)
    for label in status.pending:
        echo_normal(f"  {click.style('pending   ', fg='cyan')} {label}", verbosity)
    for label in status.applied:
        echo_normal(f"  {click.style('applied   ', fg='green')} {label}", verbosity)
    for label in status.conflicting:
        echo_normal(f"  {click.style('CONFLICT  ', fg='red')} {label}", verbosity)
    for label in status.absent:
        echo_verbose(f"  {'absent    '} {label}", verbosity)

    if status.conflicting:
        echo_quiet(click.style("\nOverall: CONFLICTS DETECTED ⚠", fg="red", bold=True), verbosity)
    elif status.pending:
        echo_quiet(click.style(f"\nOverall: {len(status.pending)} renames pending",
                               fg="cyan", bold=True), verbosity)
    else:
        echo_quiet(click.style("\nOverall: up to date ✓", fg="green", bold=True), verbosity)


@monitoring_group.command("history")
@click.option('--limit', '-n', type=int, default=20, help='Number of records to show')
@click.pass_context
def history(ctx, limit: int) -> None:
    """Show migration audit records, newest first."""
    verbosity = ctx.obj['verbosity']
    try:
        config = get_config(ctx)
        with connect_database(config) as db:
            records = build_manager(config, db, new_run_id()).history(limit)
    except (MigrationError, psycopg.Error) as e:
        echo_quiet(click.style(f"Error: Failed to read history: {e}", fg="red"), verbosity)
        sys.exit(1)

    if not records:
        echo_normal("No migration records found", verbosity)
        return

    echo_normal(click.style("Migration History", fg="cyan", bold=True), verbosity)
    echo_normal("=" * 50, verbosity)
    for record in records:
        color = _SEVERITY_COLORS.get(record.severity)
        action = click.style(record.action, fg=color) if color else record.action
        echo_normal(f"  {record.timestamp.isoformat()}  {action}  run {record.run_id or '-'}",
                    verbosity)
        for key in ("tables_renamed", "tables_restored", "columns_added", "error"):
            if record.metadata.get(key):
                echo_verbose(f"    {key}: {record.metadata[key]}", verbosity)

    state = reconstruct_state(records)
    if state is not None:
        echo_quiet(f"\nLast run state: {click.style(state.value, bold=True)}", verbosity)


@monitoring_group.command("backups")
@click.pass_context
def backups(ctx) -> None:
    """List pg_dump backups, newest first."""
    verbosity = ctx.obj['verbosity']
    try:
        config = get_config(ctx)
    except MigrationError as e:
        echo_quiet(click.style(f"Error: {e}", fg="red"), verbosity)
        sys.exit(1)

    coordinator = BackupCoordinator(config.database_url or "", config.backup_dir)
    found = coordinator.list_backups()
    if not found:
        echo_normal(f"No backups in {format_path(config.backup_dir)}", verbosity)
        return
    for info in found:
        size = f"{info.size_bytes / 1024:.1f} KB"
        echo_normal(f"  {info.created_at:%Y-%m-%d %H:%M:%S}  {size:>12}  "
                    f"{format_path(info.path)}", verbosity)
        if info.run_id:
            echo_verbose(f"    run {info.run_id}", verbosity)
