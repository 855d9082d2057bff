"""
pgrename Migration Engine

Renames PostgreSQL tables (and their sequences, constraints and indexes)
according to a static mapping table, inside one transaction.

Key Features:
- Safety checks before any write (expected database, no rename collisions)
- Full database dump before migrating
- Plans built from a live catalog snapshot, so re-runs are no-ops
- All-or-nothing execution under an advisory lock
- Post-commit verification and an inverse-plan rollback
"""

from .registry import ColumnAddition, MappingRegistry, RenameMapping
from .planner import MigrationPlan, MigrationPlanner

__all__ = [
    "ColumnAddition",
    "MappingRegistry",
    "MigrationPlan",
    "MigrationPlanner",
    "RenameMapping",
]
