"""
Migration Planner for pgrename

Turns the static mapping table plus a live schema snapshot into an ordered
MigrationPlan. Only objects that actually exist are planned; absent sources
are skipped and recorded, which is what makes repeated runs idempotent.

Ordering:
1. Table renames, most-referenced table first, ties in declaration order
2. Sequence, constraint and index renames, per table in the same order
3. Column additions, then backfills
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .inspector import SchemaSnapshot
from .registry import MappingKind, MappingRegistry, RenameMapping
from .steps import (
    AddColumn,
    BackfillColumn,
    MigrationStep,
    RenameConstraint,
    RenameIndex,
    RenameSequence,
    RenameTable,
    StepKind,
)

logger = logging.getLogger(__name__)

FORWARD = "forward"
ROLLBACK = "rollback"


@dataclass
class MigrationPlan:
    """Ordered steps for one run, plus what was skipped while planning."""
    direction: str = FORWARD
    steps: List[MigrationStep] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    largest_rows: int = 0

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    @property
    def is_empty(self) -> bool:
        return not self.steps

    def steps_of(self, kind: StepKind) -> List[MigrationStep]:
        return [s for s in self.steps if s.kind is kind]

    def table_renames(self) -> List[Tuple[str, str]]:
        return [(s.source, s.target) for s in self.steps_of(StepKind.RENAME_TABLE)]

    def target_tables(self) -> List[str]:
        return [target for _, target in self.table_renames()]

    def added_columns(self) -> List[str]:
        return [f"{s.table}.{s.column}" for s in self.steps_of(StepKind.ADD_COLUMN)]

    def object_renames(self) -> List[str]:
        """Sequence, constraint and index renames as "old->new"."""
        kinds = (StepKind.RENAME_SEQUENCE, StepKind.RENAME_CONSTRAINT, StepKind.RENAME_INDEX)
        return [f"{s.source}->{s.target}" for s in self.steps if s.kind in kinds]

    def validate_order(self) -> None:
        """
        Check that steps never go back to an earlier phase.

        Raises:
            ValueError: If a table rename follows an index/constraint rename,
                        or a rename follows a column addition
        """
        phase = -1
        for step in self.steps:
            if step.kind.phase < phase:
                raise ValueError(f"Plan step out of order: {step.describe()}")
            phase = step.kind.phase

    def summary(self) -> Dict[str, Any]:
        """Counts per operation, for logs and audit metadata."""
        counts: Dict[str, int] = {}
        for step in self.steps:
            counts[step.kind.value] = counts.get(step.kind.value, 0) + 1
        return {
            "direction": self.direction,
            "operations": counts,
            "tables_renamed": [f"{s}->{t}" for s, t in self.table_renames()],
            "skipped": list(self.skipped),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data["steps"] = [s.to_dict() for s in self.steps]
        return data


class MigrationPlanner:
    """
    Migration Planner - mapping table + snapshot -> MigrationPlan

    Example:
        planner = MigrationPlanner(registry)
        plan = planner.plan(snapshot)
        for step in plan:
            print(step.describe())
    """

    def __init__(self, registry: MappingRegistry, direction: str = FORWARD,
                 reference_order: bool = True, include_columns: bool = True,
                 only_objects: Optional[Set[str]] = None):
        """
        Initialize Migration Planner.

        Args:
            registry: Mapping table to plan
            direction: FORWARD or ROLLBACK, recorded on the plan
            reference_order: Order table renames by incoming foreign keys
                             (most referenced first); when False the
                             declaration order is used as is
            include_columns: Plan the registry's column additions
            only_objects: When given, only sequences, constraints and indexes
                          with these names are renamed; the prefix rule
                          alone would also catch objects that already had
                          the new prefix
        """
        self.registry = registry
        self.direction = direction
        self.reference_order = reference_order
        self.include_columns = include_columns
        self.only_objects = only_objects

    def _ordered_tables(self, snapshot: SchemaSnapshot) -> List[RenameMapping]:
        present = []
        for mapping in self.registry.tables:
            if snapshot.has_table(mapping.source):
                present.append(mapping)
            else:
                logger.info("Skipping %s: source table not found", mapping.source)
        if self.reference_order:
            # sorted() is stable, so declaration order breaks ties
            present = sorted(
                present,
                key=lambda m: -snapshot.referenced_counts.get(m.source, 0),
            )
        return present

    def plan(self, snapshot: SchemaSnapshot) -> MigrationPlan:
        plan = MigrationPlan(direction=self.direction)
        tables = self._ordered_tables(snapshot)
        planned_sources = {m.source for m in tables}
        plan.skipped = [m.source for m in self.registry.tables if m.source not in planned_sources]

        for mapping in tables:
            plan.steps.append(RenameTable(mapping.source, mapping.target))

        for mapping in tables:
            plan.steps.extend(self._dependent_renames(mapping, snapshot))

        if self.include_columns:
            plan.steps.extend(self._column_steps(tables, snapshot, plan))

        involved = [m.source for m in tables]
        plan.largest_rows = snapshot.largest_rows(involved)
        plan.validate_order()

        logger.info(
            "Planned %d %s steps (%d tables, %d skipped)",
            len(plan.steps), self.direction, len(tables), len(plan.skipped),
        )
        return plan

    def _allowed(self, name: str) -> bool:
        return self.only_objects is None or name in self.only_objects

    def _dependent_renames(self, mapping: RenameMapping,
                           snapshot: SchemaSnapshot) -> List[MigrationStep]:
        """Sequence, constraint and index renames for one renamed table."""
        source, target = mapping.source, mapping.target
        old_prefix, new_prefix = f"{source}_", f"{target}_"
        steps: List[MigrationStep] = []

        explicit: Dict[Tuple[MappingKind, str], str] = {
            (m.kind, m.source): m.target for m in self.registry.extras_for(source)
        }

        sequence = f"{source}_id_seq"
        if sequence in snapshot.sequences and self._allowed(sequence):
            steps.append(RenameSequence(sequence, f"{target}_id_seq"))

        constraint_names = snapshot.constraint_names(source)
        for name in constraint_names:
            new_name = explicit.get((MappingKind.CONSTRAINT, name))
            if new_name is None and name.startswith(old_prefix):
                new_name = new_prefix + name[len(old_prefix):]
            if new_name and new_name != name and self._allowed(name):
                steps.append(RenameConstraint(target, name, new_name))

        # Indexes backing a constraint are renamed together with it
        backed: Set[str] = set(constraint_names)
        for name in snapshot.indexes_of(source):
            if name in backed:
                continue
            new_name = explicit.get((MappingKind.INDEX, name))
            if new_name is None and name.startswith(old_prefix):
                new_name = new_prefix + name[len(old_prefix):]
            if new_name and new_name != name and self._allowed(name):
                steps.append(RenameIndex(target, name, new_name))

        return steps

    def _column_steps(self, tables: List[RenameMapping], snapshot: SchemaSnapshot,
                      plan: MigrationPlan) -> List[MigrationStep]:
        """AddColumn/BackfillColumn steps against the post-rename tables."""
        # Post-rename table name -> name whose columns are in the snapshot
        column_source: Dict[str, str] = {m.target: m.source for m in tables}
        for mapping in self.registry.tables:
            if mapping.target not in column_source and snapshot.has_table(mapping.target):
                column_source[mapping.target] = mapping.target

        additions: List[MigrationStep] = []
        backfills: List[MigrationStep] = []
        for addition in self.registry.columns:
            origin = column_source.get(addition.table)
            if origin is None:
                if not snapshot.has_table(addition.table):
                    plan.skipped.append(f"{addition.table}.{addition.column}")
                    logger.info("Skipping column %s.%s: table not found",
                                addition.table, addition.column)
                    continue
                origin = addition.table
            existing = snapshot.columns_of(origin)
            if addition.column in existing:
                continue
            additions.append(AddColumn(addition.table, addition.column,
                                       addition.column_type, addition.default))
            if addition.backfill_from and addition.backfill_from in existing:
                backfills.append(BackfillColumn(addition.table, addition.column,
                                                addition.backfill_from))
        return additions + backfills
