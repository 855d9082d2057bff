"""
Backup Coordinator for pgrename

Triggers an external full-database dump (pg_dump) before any mutation.

Features:
- Timestamped dump files with metadata sidecar
- Password passed through PGPASSWORD, never on the command line
- Bounded by a timeout
- Listing of previous backups

The dump format is opaque here: success means pg_dump exited 0.
"""

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg.conninfo import conninfo_to_dict, make_conninfo

from ..errors import BackupFailed

logger = logging.getLogger(__name__)


@dataclass
class BackupInfo:
    """Information about a database dump."""
    path: Path
    database: str
    created_at: datetime
    size_bytes: int
    run_id: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "path": str(self.path),
            "database": self.database,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "size_bytes": self.size_bytes,
            "run_id": self.run_id,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupInfo":
        """Create BackupInfo from dictionary."""
        return cls(
            path=Path(data["path"]),
            database=data["database"],
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None,
            size_bytes=data["size_bytes"],
            run_id=data.get("run_id"),
            duration_ms=data.get("duration_ms"),
        )


class BackupCoordinator:
    """
    Backup Coordinator - pg_dump before migrating

    Pattern: Shell out, check exit status, record the artifact path
    Lifetime: Backups persist until manually cleaned

    Example:
        coordinator = BackupCoordinator(dsn, backup_dir)
        backup_info = coordinator.create_backup(run_id)
        # ... perform migration ...
    """

    BACKUP_PREFIX = "backup-"
    METADATA_SUFFIX = ".meta.json"

    def __init__(self, dsn: str, backup_dir: Path, pg_dump_path: str = "pg_dump",
                 timeout: float = 600.0):
        """
        Initialize Backup Coordinator.

        Args:
            dsn: Connection string (URL or key=value) of the live database
            backup_dir: Directory to store dumps
            pg_dump_path: pg_dump executable
            timeout: Seconds before the dump is killed and treated as failed
        """
        self.dsn = dsn
        self.backup_dir = Path(backup_dir)
        self.pg_dump_path = pg_dump_path
        self.timeout = timeout

    def _command(self, backup_path: Path) -> tuple:
        """pg_dump argv and environment, with the password moved to PGPASSWORD."""
        params = conninfo_to_dict(self.dsn)
        password = params.pop("password", None)
        database = params.get("dbname", "")

        env = dict(os.environ)
        if password:
            env["PGPASSWORD"] = str(password)

        argv = [
            self.pg_dump_path,
            "--dbname", make_conninfo(**params),
            "--file", str(backup_path),
            "--no-password",
        ]
        return argv, env, database

    def create_backup(self, run_id: Optional[str] = None) -> BackupInfo:
        """
        Dump the whole database to a timestamped file.

        Args:
            run_id: Run identifier recorded in the metadata sidecar

        Returns:
            BackupInfo with the artifact path

        Raises:
            BackupFailed: If pg_dump is missing, times out or exits non-zero
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        suffix = f"-{run_id}" if run_id else ""
        backup_path = self.backup_dir / f"{self.BACKUP_PREFIX}{timestamp}{suffix}.sql"

        argv, env, database = self._command(backup_path)
        logger.info("Creating database backup: %s", backup_path)

        started = datetime.now()
        try:
            result = subprocess.run(
                argv,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise BackupFailed(f"Backup tool not found: {self.pg_dump_path}") from e
        except subprocess.TimeoutExpired as e:
            self._discard(backup_path)
            raise BackupFailed(f"Backup timed out after {self.timeout:g}s") from e

        if result.returncode != 0:
            self._discard(backup_path)
            stderr = (result.stderr or "").strip()
            logger.error("Failed to create backup (exit %d): %s", result.returncode, stderr)
            raise BackupFailed(
                f"Backup creation failed (exit {result.returncode}). Aborting migration.",
                returncode=result.returncode,
                stderr=stderr,
            )

        duration_ms = int((datetime.now() - started).total_seconds() * 1000)
        size_bytes = backup_path.stat().st_size if backup_path.exists() else 0

        backup_info = BackupInfo(
            path=backup_path,
            database=database,
            created_at=started,
            size_bytes=size_bytes,
            run_id=run_id,
            duration_ms=duration_ms,
        )
        self._save_metadata(backup_info)
        logger.info("Backup created successfully: %s (%d bytes)", backup_path, size_bytes)
        return backup_info

    def _discard(self, backup_path: Path) -> None:
        """Remove a partial dump left by a failed run."""
        if backup_path.exists():
            backup_path.unlink()

    def _metadata_path(self, backup_path: Path) -> Path:
        return backup_path.with_suffix(backup_path.suffix + self.METADATA_SUFFIX)

    def _save_metadata(self, backup_info: BackupInfo) -> None:
        with open(self._metadata_path(backup_info.path), "w") as f:
            json.dump(backup_info.to_dict(), f, indent=2)

    def _load_metadata(self, backup_path: Path) -> Optional[BackupInfo]:
        metadata_path = self._metadata_path(backup_path)
        if not metadata_path.exists():
            return None
        try:
            with open(metadata_path, "r") as f:
                return BackupInfo.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError):
            return None

    def list_backups(self) -> List[BackupInfo]:
        """
        List dumps in the backup directory.

        Returns:
            List of BackupInfo objects, newest first
        """
        if not self.backup_dir.exists():
            return []

        backups = []
        for backup_file in self.backup_dir.glob(f"{self.BACKUP_PREFIX}*.sql"):
            backup_info = self._load_metadata(backup_file)
            if backup_info is None:
                backup_info = BackupInfo(
                    path=backup_file,
                    database="",
                    created_at=datetime.fromtimestamp(backup_file.stat().st_mtime),
                    size_bytes=backup_file.stat().st_size,
                )
            backups.append(backup_info)

        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups
