"""
Mapping Registry for pgrename

Holds the static, ordered rename mapping table and the compatibility
columns added after the renames.

Features:
- Declaration order is preserved (it is the planner's tie-break)
- Validation: no duplicate sources/targets, no chained renames
- Inversion for rollback (swap source/target, reverse order)
- Loading overrides from the YAML config
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ConfigError
from .steps import validate_column_type


class MappingKind(str, Enum):
    TABLE = "Table"
    INDEX = "Index"
    CONSTRAINT = "Constraint"


@dataclass(frozen=True)
class RenameMapping:
    """One rename; the inverse is the same mapping with source/target swapped."""
    source: str
    target: str
    kind: MappingKind = MappingKind.TABLE
    # Owning table (source name) for index and constraint mappings
    table: Optional[str] = None
    # Required tables must exist as targets before a rollback may run
    required: bool = True

    def inverse(self, table: Optional[str] = None) -> "RenameMapping":
        return RenameMapping(
            source=self.target,
            target=self.source,
            kind=self.kind,
            table=table,
            required=self.required,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass(frozen=True)
class ColumnAddition:
    """A compatibility column added to a renamed (target) table."""
    table: str
    column: str
    column_type: str
    default: Any = None
    backfill_from: Optional[str] = None

    def __post_init__(self):
        validate_column_type(self.column_type)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Identity table first: every other mapped table references it.
DEFAULT_TABLE_MAPPINGS = [
    RenameMapping("User", "users"),
    RenameMapping("AssistantFolder", "chat_folders"),
    RenameMapping("AssistantChatSession", "chat_sessions"),
    RenameMapping("AssistantChatMessage", "chat_messages"),
    RenameMapping("AssistantConversation", "assistant_conversation_legacy", required=False),
    RenameMapping("AssistantMessage", "assistant_message_legacy", required=False),
]

DEFAULT_CONSTRAINT_MAPPINGS = [
    RenameMapping(
        "AssistantFolder_userId_name_key",
        "chat_folders_userId_name_key",
        kind=MappingKind.CONSTRAINT,
        table="AssistantFolder",
    ),
]

DEFAULT_COLUMN_ADDITIONS = [
    ColumnAddition("users", "role", "TEXT", default="USER"),
    ColumnAddition("chat_folders", "color", "TEXT"),
    ColumnAddition("chat_folders", "description", "TEXT"),
    ColumnAddition("chat_folders", "isDefault", "BOOLEAN", default=False),
    ColumnAddition("chat_folders", "sessionCount", "INTEGER", default=0),
    ColumnAddition("chat_sessions", "title", "TEXT", default="Untitled Session",
                   backfill_from="sessionName"),
    ColumnAddition("chat_sessions", "isActive", "BOOLEAN", default=True),
    ColumnAddition("chat_sessions", "folderId", "TEXT"),
    ColumnAddition("chat_messages", "role", "TEXT"),
]


class MappingRegistry:
    """
    Mapping Registry - the static rename table for one migration

    Pattern: Ordered, validated, immutable after construction
    Lifetime: Created per invocation

    Example:
        registry = MappingRegistry.default()
        for mapping in registry.tables:
            print(f"{mapping.source} -> {mapping.target}")
        inverse = registry.inverted()
    """

    def __init__(
        self,
        tables: Iterable[RenameMapping],
        extra_mappings: Iterable[RenameMapping] = (),
        columns: Iterable[ColumnAddition] = (),
    ):
        self.tables: List[RenameMapping] = list(tables)
        self.extra_mappings: List[RenameMapping] = list(extra_mappings)
        self.columns: List[ColumnAddition] = list(columns)
        self._validate()

    @classmethod
    def default(cls) -> "MappingRegistry":
        return cls(DEFAULT_TABLE_MAPPINGS, DEFAULT_CONSTRAINT_MAPPINGS,
                   DEFAULT_COLUMN_ADDITIONS)

    @classmethod
    def from_config(cls, config) -> "MappingRegistry":
        """Build a registry from config overrides, falling back to defaults.

        Each of `tables`, `constraints` and `columns` replaces the matching
        default list when present in the config.

        Raises:
            ConfigError: If an entry is malformed or the result is invalid
        """
        try:
            return cls._from_config(config)
        except ValueError as e:
            raise ConfigError(f"Invalid mapping configuration: {e}") from e

    @classmethod
    def _from_config(cls, config) -> "MappingRegistry":
        tables = DEFAULT_TABLE_MAPPINGS
        extra = DEFAULT_CONSTRAINT_MAPPINGS
        columns = DEFAULT_COLUMN_ADDITIONS

        if config.tables is not None:
            tables = [
                RenameMapping(
                    source=_required(entry, "source"),
                    target=_required(entry, "target"),
                    required=bool(entry.get("required", True)),
                )
                for entry in config.tables
            ]
        if config.constraints is not None:
            extra = [
                RenameMapping(
                    source=_required(entry, "source"),
                    target=_required(entry, "target"),
                    kind=MappingKind(entry.get("kind", MappingKind.CONSTRAINT.value)),
                    table=_required(entry, "table"),
                )
                for entry in config.constraints
            ]
        if config.columns is not None:
            columns = [
                ColumnAddition(
                    table=_required(entry, "table"),
                    column=_required(entry, "column"),
                    column_type=_required(entry, "type"),
                    default=entry.get("default"),
                    backfill_from=entry.get("backfill_from"),
                )
                for entry in config.columns
            ]
        return cls(tables, extra, columns)

    def _validate(self) -> None:
        """
        Validate the mapping table.

        Raises:
            ValueError: If a table mapping has the wrong kind, a source or
                        target appears twice, a target is also a source,
                        or an extra mapping names an unmapped table
        """
        sources = set()
        targets = set()
        for mapping in self.tables:
            if mapping.kind is not MappingKind.TABLE:
                raise ValueError(f"Table mapping {mapping.source} has kind {mapping.kind.value}")
            if mapping.source == mapping.target:
                raise ValueError(f"Mapping {mapping.source} renames to itself")
            if mapping.source in sources:
                raise ValueError(f"Duplicate mapping source: {mapping.source}")
            if mapping.target in targets:
                raise ValueError(f"Duplicate mapping target: {mapping.target}")
            sources.add(mapping.source)
            targets.add(mapping.target)

        chained = sources & targets
        if chained:
            raise ValueError(
                f"Mapping targets are also sources: {', '.join(sorted(chained))}"
            )

        mapped = {m.source for m in self.tables} | {m.target for m in self.tables}
        seen = set()
        for mapping in self.extra_mappings:
            if mapping.kind is MappingKind.TABLE:
                raise ValueError(f"Extra mapping {mapping.source} must be an index or constraint")
            if mapping.table not in mapped:
                raise ValueError(
                    f"Mapping {mapping.source} belongs to unmapped table {mapping.table}"
                )
            if mapping.source in seen:
                raise ValueError(f"Duplicate mapping source: {mapping.source}")
            seen.add(mapping.source)

        column_keys = set()
        for addition in self.columns:
            key = (addition.table, addition.column)
            if key in column_keys:
                raise ValueError(f"Duplicate column addition: {addition.table}.{addition.column}")
            column_keys.add(key)

    def target_for(self, table: str) -> Optional[str]:
        for mapping in self.tables:
            if mapping.source == table:
                return mapping.target
        return None

    def extras_for(self, table: str) -> List[RenameMapping]:
        """Index/constraint mappings owned by a source table."""
        return [m for m in self.extra_mappings if m.table == table]

    def source_names(self) -> List[str]:
        return [m.source for m in self.tables]

    def target_names(self) -> List[str]:
        return [m.target for m in self.tables]

    def required_targets(self) -> List[str]:
        return [m.target for m in self.tables if m.required]

    def inverted(self) -> "MappingRegistry":
        """Registry that undoes this one.

        Source and target are swapped and the declaration order is
        reversed. Column additions are not inverted.
        """
        tables = [m.inverse() for m in reversed(self.tables)]
        extra = [
            m.inverse(table=self.target_for(m.table) or m.table)
            for m in reversed(self.extra_mappings)
        ]
        return MappingRegistry(tables, extra, ())

    def __len__(self) -> int:
        return len(self.tables)

    def __repr__(self) -> str:
        return (f"<MappingRegistry: {len(self.tables)} tables, "
                f"{len(self.extra_mappings)} extra, {len(self.columns)} columns>")


def _required(entry: Dict[str, Any], key: str) -> Any:
    if not isinstance(entry, dict) or key not in entry:
        raise ValueError(f"Mapping entry {entry!r} is missing '{key}'")
    return entry[key]
