"""
Conflict Guard for pgrename

Safety gate that runs before any write, including the backup. It checks the
database the connection actually points at and refuses to rename onto
existing tables. It has no side effects.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set

from ..errors import TargetAlreadyExists, WrongDatabase
from .registry import MappingRegistry

logger = logging.getLogger(__name__)


@dataclass
class MappingStatus:
    """Classification of every table mapping against the live tables."""
    pending: List[str] = field(default_factory=list)      # source present, target absent
    applied: List[str] = field(default_factory=list)      # target present, source absent
    conflicting: List[str] = field(default_factory=list)  # both present
    absent: List[str] = field(default_factory=list)       # neither present

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "pending": self.pending,
            "applied": self.applied,
            "conflicting": self.conflicting,
            "absent": self.absent,
        }


def classify(registry: MappingRegistry, tables: Set[str]) -> MappingStatus:
    status = MappingStatus()
    for mapping in registry.tables:
        label = f"{mapping.source} -> {mapping.target}"
        has_source = mapping.source in tables
        has_target = mapping.target in tables
        if has_source and has_target:
            status.conflicting.append(label)
        elif has_source:
            status.pending.append(label)
        elif has_target:
            status.applied.append(label)
        else:
            status.absent.append(label)
    return status


class ConflictGuard:
    """
    Conflict Guard - fail fast before anything is written

    Example:
        guard = ConflictGuard(inspector, expected_database="personalAI")
        status = guard.check(registry)   # raises on violation
    """

    def __init__(self, inspector, expected_database: str):
        self.inspector = inspector
        self.expected_database = expected_database

    def check_database(self) -> str:
        """
        Compare the connection's current_database() with the expected name.

        Raises:
            WrongDatabase: If they differ
        """
        actual = self.inspector.database_name()
        if actual != self.expected_database:
            logger.error("Wrong database! Expected %s, got %s", self.expected_database, actual)
            raise WrongDatabase(self.expected_database, actual)
        return actual

    def check(self, registry: MappingRegistry) -> MappingStatus:
        """
        Run all safety checks for a registry.

        A mapping whose source and target both exist is a conflict. A
        target on its own is an already applied rename, which keeps
        repeated runs idempotent.

        Returns:
            MappingStatus of every mapping

        Raises:
            WrongDatabase: If the connection targets another database
            TargetAlreadyExists: If any mapping is conflicting
        """
        database = self.check_database()
        status = classify(registry, self.inspector.table_names())

        logger.info(
            "Database %s: %d pending, %d already applied, %d absent",
            database, len(status.pending), len(status.applied), len(status.absent),
        )
        if status.conflicting:
            logger.error("Conflicting tables detected: %s", ", ".join(status.conflicting))
            raise TargetAlreadyExists(status.conflicting)
        return status
