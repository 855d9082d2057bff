"""
Error taxonomy for pgrename.

Safety violations and backup failures are raised before any mutation.
Execution failures are raised after the migration transaction has rolled
back. Verification problems are warnings, never exceptions that abort.
"""

from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base class for all fatal migration errors."""

    #: Short machine-readable code used in audit metadata and CLI output
    code = "MIGRATION_ERROR"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for audit metadata."""
        return {"code": self.code, "message": str(self)}


class ConfigError(MigrationError):
    """Configuration file or environment is invalid."""
    code = "CONFIG_ERROR"


class WrongDatabase(MigrationError):
    """The connection points at a database other than the expected one."""
    code = "WRONG_DATABASE"

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Wrong database! Expected {expected}, got {actual}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"expected": self.expected, "actual": self.actual})
        return data


class TargetAlreadyExists(MigrationError):
    """One or more rename targets already exist next to their sources."""
    code = "TARGET_ALREADY_EXISTS"

    def __init__(self, conflicts: List[str]):
        self.conflicts = list(conflicts)
        super().__init__(
            "Target tables already exist! Aborting migration: "
            + ", ".join(self.conflicts)
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["conflicts"] = self.conflicts
        return data


class BackupFailed(MigrationError):
    """The external dump tool failed, timed out or could not be started."""
    code = "BACKUP_FAILED"

    def __init__(self, message: str, returncode: Optional[int] = None,
                 stderr: Optional[str] = None):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"returncode": self.returncode, "stderr": self.stderr})
        return data


class ExecutionFailed(MigrationError):
    """A statement inside the migration transaction failed.

    The transaction has already been rolled back when this is raised.
    """
    code = "EXECUTION_FAILED"

    def __init__(self, message: str, step: Any = None,
                 statement: Optional[str] = None):
        self.step = step
        self.statement = statement
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["step"] = self.step.describe() if self.step is not None else None
        data["statement"] = self.statement
        return data


class RollbackTargetMissing(MigrationError):
    """Rollback expected migrated tables that are not present."""
    code = "ROLLBACK_TARGET_MISSING"

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            "Tables not found for rollback: " + ", ".join(self.missing)
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["missing"] = self.missing
        return data


class MigrationLocked(MigrationError):
    """Another run holds the migration advisory lock."""
    code = "MIGRATION_LOCKED"

    def __init__(self, lock_key: str):
        self.lock_key = lock_key
        super().__init__(f"Another migration holds the lock {lock_key!r}")


class PlanChanged(MigrationError):
    """The schema changed between planning and taking the migration lock."""
    code = "PLAN_CHANGED"

    def __init__(self, planned: List[str], current: List[str]):
        self.planned = list(planned)
        self.current = list(current)
        super().__init__(
            "Schema changed since the plan was made "
            f"({len(self.planned)} steps planned, {len(self.current)} now pending). "
            "Run `pgrename migrate --dry-run` to review the new plan"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"planned": self.planned, "current": self.current})
        return data


class VerificationWarning(UserWarning):
    """Committed migration whose target tables are missing or unreadable."""

    def __init__(self, missing: List[str], unqueryable: Dict[str, str]):
        self.missing = list(missing)
        self.unqueryable = dict(unqueryable)
        parts = []
        if self.missing:
            parts.append("missing: " + ", ".join(self.missing))
        if self.unqueryable:
            parts.append("unqueryable: " + ", ".join(sorted(self.unqueryable)))
        super().__init__("Migration verification failed (" + "; ".join(parts) + ")")
