"""
Schema Inspector for pgrename

Read-only snapshot of the tables, indexes, constraints, sequences and
columns a migration touches. Snapshots are built fresh per invocation and
discarded after planning.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableDescriptor:
    """A table as reported by pg_tables."""
    name: str
    schema: str
    has_indexes: bool = False
    has_triggers: bool = False
    row_security_enabled: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "schema": self.schema,
            "has_indexes": self.has_indexes,
            "has_triggers": self.has_triggers,
            "row_security_enabled": self.row_security_enabled,
        }


@dataclass
class SchemaSnapshot:
    """Point-in-time view of one schema, limited to the inspected tables."""
    schema: str
    tables: Dict[str, TableDescriptor] = field(default_factory=dict)
    indexes: Dict[str, List[str]] = field(default_factory=dict)
    constraints: Dict[str, List[Tuple[str, str]]] = field(default_factory=dict)
    columns: Dict[str, List[str]] = field(default_factory=dict)
    sequences: Set[str] = field(default_factory=set)
    referenced_counts: Dict[str, int] = field(default_factory=dict)
    estimated_rows: Dict[str, int] = field(default_factory=dict)

    def has_table(self, name: str) -> bool:
        return name in self.tables

    def indexes_of(self, table: str) -> List[str]:
        return self.indexes.get(table, [])

    def constraint_names(self, table: str) -> List[str]:
        return [name for name, _ in self.constraints.get(table, [])]

    def columns_of(self, table: str) -> List[str]:
        return self.columns.get(table, [])

    def has_column(self, table: str, column: str) -> bool:
        return column in self.columns.get(table, [])

    def largest_rows(self, tables: Iterable[str]) -> int:
        return max((self.estimated_rows.get(t, 0) for t in tables), default=0)


class SchemaInspector:
    """
    Schema Inspector - read-only catalog queries

    Pattern: Wraps the database seam, never mutates
    Lifetime: Created per invocation

    Example:
        inspector = SchemaInspector(db, "public")
        snapshot = inspector.snapshot(["User", "users"])
        if snapshot.has_table("User"):
            print(snapshot.indexes_of("User"))
    """

    def __init__(self, db, schema: str = "public"):
        self.db = db
        self.schema = schema

    def database_name(self) -> str:
        return self.db.current_database()

    def list_tables(self) -> List[TableDescriptor]:
        return [
            TableDescriptor(
                name=row["name"],
                schema=row["schema"],
                has_indexes=bool(row["has_indexes"]),
                has_triggers=bool(row["has_triggers"]),
                row_security_enabled=bool(row["row_security_enabled"]),
            )
            for row in self.db.list_tables(self.schema)
        ]

    def table_names(self) -> Set[str]:
        return {t.name for t in self.list_tables()}

    def snapshot(self, tables: Optional[Iterable[str]] = None) -> SchemaSnapshot:
        """
        Build a snapshot of the schema.

        Args:
            tables: Table names whose indexes, constraints and columns are
                    loaded. All tables are listed regardless; details are
                    only fetched for these (all tables when None).

        Returns:
            SchemaSnapshot
        """
        descriptors = {t.name: t for t in self.list_tables()}
        wanted = set(descriptors) if tables is None else set(tables) & set(descriptors)

        snapshot = SchemaSnapshot(schema=self.schema, tables=descriptors)
        snapshot.sequences = set(self.db.list_sequences(self.schema))
        snapshot.referenced_counts = dict(self.db.referenced_counts(self.schema))

        for name in sorted(wanted):
            snapshot.indexes[name] = list(self.db.list_indexes(self.schema, name))
            snapshot.constraints[name] = list(self.db.list_constraints(self.schema, name))
            snapshot.columns[name] = list(self.db.list_columns(self.schema, name))
            snapshot.estimated_rows[name] = self.db.estimated_rows(self.schema, name)

        logger.debug(
            "Snapshot of schema %s: %d tables, %d inspected",
            self.schema, len(descriptors), len(wanted),
        )
        return snapshot
