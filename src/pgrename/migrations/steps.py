"""
Migration Steps

Typed DDL operations a migration plan is made of. Every step renders its
own statement through psycopg.sql so that identifiers are always quoted by
the driver; no SQL text is built by string interpolation.

Pattern:
- Each step is an immutable dataclass with a `kind`
- render() produces the psycopg.sql.Composed statement for a schema
- describe() produces a one-line human-readable summary for logs
"""

import re
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict

from psycopg import sql


class StepKind(str, Enum):
    """Operation tags, in the order they must appear in a plan."""
    RENAME_TABLE = "RenameTable"
    RENAME_SEQUENCE = "RenameSequence"
    RENAME_CONSTRAINT = "RenameConstraint"
    RENAME_INDEX = "RenameIndex"
    ADD_COLUMN = "AddColumn"
    BACKFILL_COLUMN = "BackfillColumn"

    @property
    def phase(self) -> int:
        """Plan phase: tables, then indexes/constraints, then columns."""
        return _PHASES[self]


_PHASES = {
    StepKind.RENAME_TABLE: 0,
    StepKind.RENAME_SEQUENCE: 1,
    StepKind.RENAME_CONSTRAINT: 1,
    StepKind.RENAME_INDEX: 1,
    StepKind.ADD_COLUMN: 2,
    StepKind.BACKFILL_COLUMN: 3,
}

# Column types are emitted verbatim, so only plain type names are accepted:
# TEXT, BOOLEAN, INTEGER, VARCHAR(255), NUMERIC(10, 2), TEXT[], ...
_COLUMN_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*(\(\s*\d+(\s*,\s*\d+)?\s*\))?(\[\])?$")


def validate_column_type(column_type: str) -> str:
    """Return the column type if it is a plain SQL type name.

    Raises:
        ValueError: If the type contains anything but a type name,
                    an optional precision and an optional array suffix.
    """
    if not isinstance(column_type, str) or not _COLUMN_TYPE_RE.match(column_type.strip()):
        raise ValueError(f"Invalid column type: {column_type!r}")
    return column_type.strip()


@dataclass(frozen=True)
class MigrationStep:
    """Base class for plan steps."""

    kind = None  # type: StepKind

    def render(self, schema: str) -> sql.Composed:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for audit metadata."""
        data = asdict(self)
        data["operation"] = self.kind.value
        return data

    def __str__(self) -> str:
        return self.describe()


@dataclass(frozen=True)
class RenameTable(MigrationStep):
    source: str
    target: str

    kind = StepKind.RENAME_TABLE

    def render(self, schema: str) -> sql.Composed:
        return sql.SQL("ALTER TABLE {} RENAME TO {}").format(
            sql.Identifier(schema, self.source), sql.Identifier(self.target)
        )

    def describe(self) -> str:
        return f"rename table {self.source} -> {self.target}"


@dataclass(frozen=True)
class RenameSequence(MigrationStep):
    source: str
    target: str

    kind = StepKind.RENAME_SEQUENCE

    def render(self, schema: str) -> sql.Composed:
        return sql.SQL("ALTER SEQUENCE {} RENAME TO {}").format(
            sql.Identifier(schema, self.source), sql.Identifier(self.target)
        )

    def describe(self) -> str:
        return f"rename sequence {self.source} -> {self.target}"


@dataclass(frozen=True)
class RenameConstraint(MigrationStep):
    # Table name as it is when the step runs (after the table rename)
    table: str
    source: str
    target: str

    kind = StepKind.RENAME_CONSTRAINT

    def render(self, schema: str) -> sql.Composed:
        return sql.SQL("ALTER TABLE {} RENAME CONSTRAINT {} TO {}").format(
            sql.Identifier(schema, self.table),
            sql.Identifier(self.source),
            sql.Identifier(self.target),
        )

    def describe(self) -> str:
        return f"rename constraint {self.table}.{self.source} -> {self.target}"


@dataclass(frozen=True)
class RenameIndex(MigrationStep):
    table: str
    source: str
    target: str

    kind = StepKind.RENAME_INDEX

    def render(self, schema: str) -> sql.Composed:
        return sql.SQL("ALTER INDEX {} RENAME TO {}").format(
            sql.Identifier(schema, self.source), sql.Identifier(self.target)
        )

    def describe(self) -> str:
        return f"rename index {self.source} -> {self.target}"


@dataclass(frozen=True)
class AddColumn(MigrationStep):
    table: str
    column: str
    column_type: str
    default: Any = None

    kind = StepKind.ADD_COLUMN

    def __post_init__(self):
        validate_column_type(self.column_type)

    def render(self, schema: str) -> sql.Composed:
        statement = sql.SQL("ALTER TABLE {} ADD COLUMN IF NOT EXISTS {} {}").format(
            sql.Identifier(schema, self.table),
            sql.Identifier(self.column),
            sql.SQL(validate_column_type(self.column_type)),
        )
        if self.default is not None:
            statement = statement + sql.SQL(" DEFAULT {}").format(sql.Literal(self.default))
        return statement

    def describe(self) -> str:
        text = f"add column {self.table}.{self.column} {self.column_type}"
        if self.default is not None:
            text += f" default {self.default!r}"
        return text


@dataclass(frozen=True)
class BackfillColumn(MigrationStep):
    table: str
    column: str
    source_column: str

    kind = StepKind.BACKFILL_COLUMN

    def render(self, schema: str) -> sql.Composed:
        return sql.SQL("UPDATE {} SET {} = {} WHERE {} IS NOT NULL").format(
            sql.Identifier(schema, self.table),
            sql.Identifier(self.column),
            sql.Identifier(self.source_column),
            sql.Identifier(self.source_column),
        )

    def describe(self) -> str:
        return f"backfill {self.table}.{self.column} from {self.source_column}"
