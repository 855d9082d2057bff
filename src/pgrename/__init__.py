"""
pgrename - safe, auditable PostgreSQL table renames

Moves an application schema from PascalCase to snake_case table names with
a backup first, one transaction for every rename, and an audited rollback.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .config import MigrationConfig, load_config
from .errors import (
    BackupFailed,
    ConfigError,
    ExecutionFailed,
    MigrationError,
    MigrationLocked,
    PlanChanged,
    RollbackTargetMissing,
    TargetAlreadyExists,
    VerificationWarning,
    WrongDatabase,
)
from .migrations.manager import MigrationManager, MigrationResult

__all__ = [
    "__version__",
    "BackupFailed",
    "ConfigError",
    "ExecutionFailed",
    "MigrationConfig",
    "MigrationError",
    "MigrationLocked",
    "PlanChanged",
    "MigrationManager",
    "MigrationResult",
    "RollbackTargetMissing",
    "TargetAlreadyExists",
    "VerificationWarning",
    "WrongDatabase",
    "load_config",
]
