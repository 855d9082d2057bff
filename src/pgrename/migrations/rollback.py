"""
Rollback Engine for pgrename

Undoes a forward migration by planning the inverted mapping table (source
and target swapped, declaration order reversed) and applying it with the
same transactional mechanics as the forward run.

Compatibility columns are never dropped. A column that exists now may have
existed before the migration, so the engine only reports the columns for
manual review.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..audit_log import SEVERITY_ERROR, SEVERITY_WARNING, AuditAction
from ..errors import MigrationError, RollbackTargetMissing, TargetAlreadyExists
from .executor import ExecutionResult, TransactionalExecutor
from .guard import classify
from .inspector import SchemaInspector, SchemaSnapshot
from .planner import ROLLBACK, MigrationPlan, MigrationPlanner
from .registry import MappingRegistry
from .verifier import VerificationReport, Verifier

logger = logging.getLogger(__name__)


@dataclass
class ColumnReview:
    """A compatibility column left in place by a rollback."""
    table: str
    column: str
    added_by_migration: Optional[bool] = None  # None: unknown

    def __str__(self) -> str:
        if self.added_by_migration is None:
            origin = "origin unknown"
        elif self.added_by_migration:
            origin = "added by a recorded migration"
        else:
            origin = "not added by a recorded migration"
        return f"{self.table}.{self.column} ({origin})"

    def to_dict(self) -> Dict[str, object]:
        return {
            "table": self.table,
            "column": self.column,
            "added_by_migration": self.added_by_migration,
        }


@dataclass
class RollbackResult:
    plan: MigrationPlan
    columns_for_review: List[ColumnReview] = field(default_factory=list)
    execution: Optional[ExecutionResult] = None
    verification: Optional[VerificationReport] = None


class RollbackEngine:
    """
    Rollback Engine - inverse plan, same transaction mechanics

    Example:
        engine = RollbackEngine(db, registry, executor_factory)
        result = engine.rollback(expected_targets=["users", "chat_sessions"])
        for review in result.columns_for_review:
            print(f"Review column {review}")
    """

    def __init__(self, db, registry: MappingRegistry, executor_factory,
                 schema: str = "public", audit=None, verifier: Optional[Verifier] = None):
        """
        Initialize Rollback Engine.

        Args:
            db: Database seam
            registry: The forward mapping table
            executor_factory: Callable returning a fresh TransactionalExecutor
            schema: Schema the tables live in
            audit: AuditLogger for ROLLBACK_START/COMPLETE records (optional)
            verifier: Post-commit Verifier (default: one with its own timeouts)
        """
        self.db = db
        self.registry = registry
        self.inverse = registry.inverted()
        self.executor_factory = executor_factory
        self.schema = schema
        self.audit = audit
        self.verifier = verifier or Verifier(db, schema)
        self.inspector = SchemaInspector(db, schema)

    def check(self, expected_targets: Optional[Sequence[str]] = None) -> None:
        """
        Confirm that the migrated names are the current names.

        Args:
            expected_targets: Tables the forward run produced; defaults to
                              the targets of all required mappings

        Raises:
            RollbackTargetMissing: If an expected table is not present
            TargetAlreadyExists: If an original name is already taken
        """
        tables = self.inspector.table_names()
        expected = list(expected_targets) if expected_targets else self.registry.required_targets()
        missing = [t for t in expected if t not in tables]
        if missing:
            logger.error("Tables not found for rollback: %s", ", ".join(missing))
            raise RollbackTargetMissing(missing)

        status = classify(self.inverse, tables)
        if status.conflicting:
            logger.error("Original table names already taken: %s", ", ".join(status.conflicting))
            raise TargetAlreadyExists(status.conflicting)
        if not status.pending:
            raise RollbackTargetMissing(self.registry.target_names())

    def plan(self, renamed_objects: Optional[Sequence[str]] = None
             ) -> Tuple[MigrationPlan, SchemaSnapshot]:
        """
        Inverse plan plus the snapshot it was built from.

        Args:
            renamed_objects: Current names of the sequences, constraints and
                             indexes forward runs renamed. Only these are
                             renamed back; None falls back to the prefix rule.
        """
        names = (self.inverse.source_names() + self.inverse.target_names()
                 + [c.table for c in self.registry.columns])
        snapshot = self.inspector.snapshot(names)
        planner = MigrationPlanner(
            self.inverse,
            direction=ROLLBACK,
            reference_order=False,
            include_columns=False,
            only_objects=set(renamed_objects) if renamed_objects is not None else None,
        )
        return planner.plan(snapshot), snapshot

    def columns_for_review(self, snapshot: SchemaSnapshot,
                           added_by_migration: Optional[Sequence[str]] = None) -> List[ColumnReview]:
        """
        Compatibility columns still present on the migrated tables.

        Args:
            snapshot: Snapshot taken before the rollback runs
            added_by_migration: "table.column" entries recorded as added by
                                forward runs; None when no record is readable
        """
        recorded = set(added_by_migration) if added_by_migration is not None else None
        reviews = []
        for addition in self.registry.columns:
            if not snapshot.has_column(addition.table, addition.column):
                continue
            restored = self.inverse.target_for(addition.table) or addition.table
            flag = None
            if recorded is not None:
                flag = f"{addition.table}.{addition.column}" in recorded
            reviews.append(ColumnReview(restored, addition.column, flag))
        return reviews

    def rollback(self, expected_targets: Optional[Sequence[str]] = None,
                 added_by_migration: Optional[Sequence[str]] = None,
                 dry_run: bool = False,
                 renamed_objects: Optional[Sequence[str]] = None) -> RollbackResult:
        """
        Restore the original names.

        Args:
            expected_targets: Tables that must exist before rolling back
            added_by_migration: Columns recorded as added by forward runs
            dry_run: Plan only; nothing is executed
            renamed_objects: Objects recorded as renamed by forward runs

        Returns:
            RollbackResult

        Raises:
            RollbackTargetMissing: If migrated tables are missing
            TargetAlreadyExists: If an original name is already taken
            MigrationLocked: If another run holds the lock
            ExecutionFailed: If any step fails; nothing was committed
        """
        self.check(expected_targets)
        plan, snapshot = self.plan(renamed_objects)
        result = RollbackResult(
            plan=plan,
            columns_for_review=self.columns_for_review(snapshot, added_by_migration),
        )
        for review in result.columns_for_review:
            logger.warning("Column left in place, manual review needed: %s", review)

        if dry_run:
            logger.info("DRY RUN - Skipping rollback execution")
            return result

        self._record(AuditAction.ROLLBACK_START, {
            "rollback_type": "inverse_table_rename",
            "reason": "Manual rollback requested",
            **plan.summary(),
        }, SEVERITY_WARNING)

        executor: TransactionalExecutor = self.executor_factory(plan.largest_rows)
        executor.prepare(plan)
        try:
            result.execution = executor.execute()
        except MigrationError as e:
            self._record(AuditAction.FAIL, {"direction": ROLLBACK, "error": e.to_dict()},
                         SEVERITY_ERROR)
            raise

        result.verification = self.verifier.verify(plan.target_tables())
        self._record(AuditAction.ROLLBACK_COMPLETE, {
            "rollback_type": "inverse_table_rename",
            "tables_restored": [f"{s}->{t}" for s, t in plan.table_renames()],
            "columns_for_review": [r.to_dict() for r in result.columns_for_review],
            "verification": result.verification.to_dict(),
            "duration_ms": result.execution.duration_ms,
        }, SEVERITY_WARNING)
        return result

    def _record(self, action, metadata, severity) -> None:
        if self.audit is not None:
            self.audit.record(action, metadata, severity)
