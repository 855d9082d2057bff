"""
Migration Manager for pgrename

Runs one migration end to end:
ConflictGuard -> MigrationPlanner -> BackupCoordinator ->
TransactionalExecutor -> Verifier, with AuditLogger records at every phase
transition. Rollback goes through RollbackEngine.

Planning is read-only and happens before the backup, so a run with nothing
to do never dumps the database.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..audit_log import (
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    AuditAction,
    AuditLogger,
    AuditRecord,
    AuditSink,
    PostgresAuditSink,
    reconstruct_state,
)
from ..config import MigrationConfig
from ..errors import MigrationError, VerificationWarning
from ..run_log import new_run_id
from .backup import BackupCoordinator, BackupInfo
from .executor import ExecutionResult, MigrationState, TransactionalExecutor
from .guard import ConflictGuard, MappingStatus, classify
from .inspector import SchemaInspector, SchemaSnapshot
from .planner import FORWARD, MigrationPlan, MigrationPlanner
from .registry import MappingRegistry
from .rollback import RollbackEngine, RollbackResult
from .verifier import VerificationReport, Verifier

logger = logging.getLogger(__name__)

MIGRATION_TYPE = "table_rename"


@dataclass
class MigrationResult:
    """Outcome of a forward run."""
    run_id: str
    dry_run: bool = False
    state: MigrationState = MigrationState.NOT_STARTED
    plan: Optional[MigrationPlan] = None
    backup: Optional[BackupInfo] = None
    execution: Optional[ExecutionResult] = None
    verification: Optional[VerificationReport] = None
    warning: Optional[VerificationWarning] = None

    @property
    def noop(self) -> bool:
        return self.plan is not None and self.plan.is_empty

    @property
    def superseded(self) -> bool:
        """A concurrent run applied the plan while this one waited."""
        return self.execution is not None and self.execution.superseded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "state": self.state.value,
            "plan": self.plan.to_dict() if self.plan else None,
            "backup": self.backup.to_dict() if self.backup else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "warning": str(self.warning) if self.warning else None,
        }


@dataclass
class InspectionReport:
    """Read-only analysis of the live schema against the mapping table."""
    database: str
    status: MappingStatus
    snapshot: SchemaSnapshot
    mapped_tables: List[str] = field(default_factory=list)


class MigrationManager:
    """
    Migration Manager - orchestrates forward runs and rollbacks

    Pattern: Every collaborator is injected; defaults are built from config
    Lifetime: One per CLI invocation (one run id)

    Example:
        manager = MigrationManager(db, config)
        result = manager.migrate(dry_run=True)
        for step in result.plan:
            print(step.describe())
    """

    def __init__(self, db, config: MigrationConfig,
                 registry: Optional[MappingRegistry] = None,
                 audit_sink: Optional[AuditSink] = None,
                 backup: Optional[BackupCoordinator] = None,
                 run_id: Optional[str] = None):
        """
        Initialize Migration Manager.

        Args:
            db: Database seam (PostgresDatabase or a test double)
            config: Run configuration
            registry: Mapping table (default: from config)
            audit_sink: Audit destination (default: the audit table)
            backup: Backup coordinator (default: pg_dump against database_url)
            run_id: Run identifier (default: freshly generated)
        """
        self.db = db
        self.config = config
        self.registry = registry or MappingRegistry.from_config(config)
        self.run_id = run_id or new_run_id()
        self.audit = AuditLogger(
            audit_sink or PostgresAuditSink(db, config.audit_table, config.schema),
            self.run_id,
        )
        self._backup = backup
        self.inspector = SchemaInspector(db, config.schema)
        self.guard = ConflictGuard(self.inspector, config.expected_database)
        self.executor: Optional[TransactionalExecutor] = None

    @property
    def backup(self) -> BackupCoordinator:
        if self._backup is None:
            self._backup = BackupCoordinator(
                self.config.require_database_url(),
                self.config.backup_dir,
                pg_dump_path=self.config.pg_dump_path,
                timeout=self.config.backup_timeout,
            )
        return self._backup

    @property
    def lock_key(self) -> str:
        return f"pgrename:{self.config.lock_name}"

    def executor_for(self, largest_rows: int = 0,
                     revalidate: Optional[Callable[[], MigrationPlan]] = None) -> TransactionalExecutor:
        """Fresh executor with timeouts scaled to the largest table."""
        return TransactionalExecutor(
            self.db,
            schema=self.config.schema,
            lock_key=self.lock_key,
            lock_timeout=self.config.lock_timeout,
            statement_timeout=self.config.transaction_timeout(largest_rows),
            revalidate=revalidate,
        )

    def verifier(self) -> Verifier:
        return Verifier(
            self.db,
            self.config.schema,
            lock_timeout=self.config.lock_timeout,
            statement_timeout=self.config.statement_timeout,
        )

    def _inspected_tables(self) -> List[str]:
        names = self.registry.source_names() + self.registry.target_names()
        names += [c.table for c in self.registry.columns if c.table not in names]
        return names

    # ==================== Read-only ====================

    def inspect(self) -> InspectionReport:
        """Analyze the live schema; never raises on conflicts."""
        snapshot = self.inspector.snapshot(self._inspected_tables())
        mapped = [
            name for name in self._inspected_tables() if snapshot.has_table(name)
        ]
        return InspectionReport(
            database=self.inspector.database_name(),
            status=classify(self.registry, set(snapshot.tables)),
            snapshot=snapshot,
            mapped_tables=mapped,
        )

    def plan(self) -> MigrationPlan:
        """
        Safety checks, then the forward plan.

        Raises:
            WrongDatabase: If connected to another database
            TargetAlreadyExists: If a target sits next to its source
        """
        logger.info("Step 1: Checking database state...")
        return self._current_plan()

    def _current_plan(self) -> MigrationPlan:
        self.guard.check(self.registry)
        snapshot = self.inspector.snapshot(self._inspected_tables())
        return MigrationPlanner(self.registry, direction=FORWARD).plan(snapshot)

    def expected_tables(self) -> List[str]:
        """Targets of every mapping that is pending or already applied."""
        tables = self.inspector.table_names()
        return [
            m.target for m in self.registry.tables
            if m.source in tables or m.target in tables
        ]

    def history(self, limit: int = 50) -> List[AuditRecord]:
        return self.audit.history(limit)

    def last_state(self) -> Optional[MigrationState]:
        return reconstruct_state(self.audit.history(limit=200))

    # ==================== Forward ====================

    def migrate(self, dry_run: bool = False, backup: bool = True) -> MigrationResult:
        """
        Run the forward migration.

        Args:
            dry_run: Plan and report only; no backup, DDL or audit rows
            backup: Dump the database first (disable only with --no-backup)

        Returns:
            MigrationResult; a verification problem is reported in
            result.warning, the migration stays committed

        Raises:
            MigrationError: Any fatal error (safety, backup, execution)
        """
        result = MigrationResult(run_id=self.run_id, dry_run=dry_run)
        executor = None
        try:
            plan = self.plan()
            result.plan = plan
            executor = self.executor = self.executor_for(plan.largest_rows, self._current_plan)
            executor.prepare(plan)
            result.state = executor.state
        except MigrationError:
            result.state = MigrationState.FAILED
            if executor is not None:
                executor.fail()
            raise

        for index, step in enumerate(plan.steps, start=1):
            logger.info("  %d. %s", index, step.describe())

        if plan.is_empty:
            logger.info("Nothing to migrate: all mapped tables are already renamed")
            return result

        if dry_run:
            logger.info("Step 3: DRY RUN - Skipping migration execution")
            return result

        self.audit.record(AuditAction.START, {
            "migration_type": MIGRATION_TYPE,
            "database": self.config.expected_database,
            **plan.summary(),
        }, SEVERITY_INFO)

        try:
            if backup:
                logger.info("Step 2: Creating backup...")
                result.backup = self.backup.create_backup(self.run_id)
                logger.info("Backup saved to: %s", result.backup.path)
            else:
                logger.warning("Skipping backup (--no-backup): migrating from an unbacked state")

            logger.info("Step 3: Executing migration...")
            result.execution = executor.execute()
        except MigrationError as e:
            executor.fail()
            result.state = executor.state
            logger.error("Migration failed: %s", e)
            logger.error("Consider running the rollback script")
            self.audit.record(AuditAction.FAIL, {
                "direction": FORWARD,
                "error": e.to_dict(),
                "backup": str(result.backup.path) if result.backup else None,
            }, SEVERITY_ERROR)
            raise

        result.state = executor.state
        if result.superseded:
            logger.info("Another run applied the renames first; this run changed nothing")

        logger.info("Step 4: Verifying migration...")
        result.verification = self.verifier().verify(self.expected_tables())
        result.warning = result.verification.warning()
        if result.warning:
            logger.warning("Migration verification failed! %s", result.warning)
            logger.warning("Consider running the rollback script if needed")

        self.audit.record(AuditAction.COMPLETE, {
            "migration_type": MIGRATION_TYPE,
            "tables_renamed": [] if result.superseded else plan.summary()["tables_renamed"],
            "columns_added": [] if result.superseded else plan.added_columns(),
            "objects_renamed": [] if result.superseded else plan.object_renames(),
            "superseded": result.superseded,
            "statements": len(result.execution.statements),
            "duration_ms": result.execution.duration_ms,
            "backup": str(result.backup.path) if result.backup else None,
            "verification": result.verification.to_dict(),
        }, SEVERITY_WARNING if result.warning else SEVERITY_INFO)

        logger.info("Migration process completed!")
        return result

    # ==================== Rollback ====================

    def rollback(self, dry_run: bool = False) -> RollbackResult:
        """
        Restore the original names.

        Expected tables come from the latest forward COMPLETE record; when
        none is readable, the targets of all required mappings are expected.

        Raises:
            WrongDatabase, RollbackTargetMissing, TargetAlreadyExists,
            MigrationLocked, ExecutionFailed
        """
        self.guard.check_database()

        completion = self.audit.last_forward_completion()
        expected = None
        if completion is not None:
            expected = [
                pair.split("->", 1)[1]
                for pair in completion.metadata.get("tables_renamed", [])
            ] or None

        engine = RollbackEngine(
            self.db,
            self.registry,
            self.executor_for,
            schema=self.config.schema,
            audit=None if dry_run else self.audit,
            verifier=self.verifier(),
        )
        result = engine.rollback(
            expected_targets=expected,
            added_by_migration=self.audit.recorded_column_additions(),
            renamed_objects=self.audit.recorded_object_renames(),
            dry_run=dry_run,
        )

        if not dry_run and self.executor is not None and self.executor.state is MigrationState.VERIFIED:
            self.executor.machine.advance(MigrationState.ROLLED_BACK)
        return result
