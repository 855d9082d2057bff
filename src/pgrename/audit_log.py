"""
Audit logging for schema migrations

Pattern: Append-only audit trail behind an injected AuditSink. One record per
phase transition; records are never updated or deleted. Audit is
observability only: a failing sink is logged and the migration goes on.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from psycopg import sql
from psycopg.types.json import Jsonb

from .migrations.executor import MigrationState

logger = logging.getLogger(__name__)

RESOURCE_DATABASE_SCHEMA = "DATABASE_SCHEMA"


class AuditAction(str, Enum):
    START = "TABLE_RENAME_MIGRATION_START"
    COMPLETE = "TABLE_RENAME_MIGRATION_COMPLETE"
    FAIL = "TABLE_RENAME_MIGRATION_FAIL"
    ROLLBACK_START = "TABLE_RENAME_ROLLBACK_START"
    ROLLBACK_COMPLETE = "TABLE_RENAME_ROLLBACK_COMPLETE"


SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"

# State each action leaves the run in
_ACTION_STATES = {
    AuditAction.START.value: MigrationState.IN_PROGRESS,
    AuditAction.COMPLETE.value: MigrationState.VERIFIED,
    AuditAction.FAIL.value: MigrationState.FAILED,
    AuditAction.ROLLBACK_START.value: MigrationState.IN_PROGRESS,
    AuditAction.ROLLBACK_COMPLETE.value: MigrationState.ROLLED_BACK,
}


@dataclass
class AuditRecord:
    """An audit log entry recording one phase transition"""
    id: str
    action: str
    resource: str
    timestamp: datetime
    severity: str = SEVERITY_INFO
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> Optional[str]:
        return self.metadata.get("run_id")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "action": self.action,
            "resource": self.resource,
            "severity": self.severity,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata or {},
        }


class AuditSink(ABC):
    """Where audit records are persisted."""

    @abstractmethod
    def append(self, record: AuditRecord) -> None:
        """Persist one record. May raise; AuditLogger handles errors."""

    @abstractmethod
    def list_records(self, limit: int = 50) -> List[AuditRecord]:
        """Migration records, newest first."""


class PostgresAuditSink(AuditSink):
    """
    Audit sink writing to the application's audit table.

    Table columns: id, action, resource, metadata (jsonb), severity,
    "createdAt". Writes run outside the migration transaction, so a
    failure record survives the rollback of the migration itself.
    """

    def __init__(self, db, table: str = "AuditLog", schema: str = "public"):
        self.db = db
        self.table = table
        self.schema = schema

    def _table(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.table)

    def append(self, record: AuditRecord) -> None:
        self.db.execute(
            sql.SQL(
                "INSERT INTO {} (id, action, resource, metadata, severity, {}) "
                "VALUES (%s, %s, %s, %s, %s, %s)"
            ).format(self._table(), sql.Identifier("createdAt")),
            (record.id, record.action, record.resource, Jsonb(record.metadata),
             record.severity, record.timestamp),
        )

    def list_records(self, limit: int = 50) -> List[AuditRecord]:
        rows = self.db.fetchall(
            sql.SQL(
                "SELECT id, action, resource, metadata, severity, {created} FROM {table} "
                "WHERE action LIKE 'TABLE_RENAME_%%' ORDER BY {created} DESC LIMIT %s"
            ).format(created=sql.Identifier("createdAt"), table=self._table()),
            (limit,),
        )
        return [
            AuditRecord(
                id=row[0],
                action=row[1],
                resource=row[2],
                metadata=row[3] or {},
                severity=row[4],
                timestamp=row[5],
            )
            for row in rows
        ]


class AuditLogger:
    """
    Audit logger for migration phase transitions

    Features:
    - One record per phase transition, tagged with the run id
    - Every record is also written to the run log
    - Sink failures are logged, never raised
    - History queries and state reconstruction from the trail

    Usage:
        audit = AuditLogger(PostgresAuditSink(db), run_id="20250816T120000-1a2b3c4d")
        audit.record(AuditAction.START, {"migration_type": "table_rename"})
        ...
        audit.record(AuditAction.COMPLETE, {"tables_renamed": ["User->users"]})
    """

    def __init__(self, sink: AuditSink, run_id: str):
        self.sink = sink
        self.run_id = run_id
        self.failures = 0

    def record(self, action: AuditAction, metadata: Optional[Dict[str, Any]] = None,
               severity: str = SEVERITY_INFO) -> Optional[AuditRecord]:
        """
        Append one audit record.

        Args:
            action: Phase transition being recorded
            metadata: JSON-serializable details of the operation
            severity: info, warning or error

        Returns:
            The record, or None if the sink failed to store it
        """
        now = datetime.now(timezone.utc)
        payload = dict(metadata or {})
        payload.setdefault("run_id", self.run_id)
        payload.setdefault("timestamp", now.isoformat())
        record = AuditRecord(
            id=str(uuid.uuid4()),
            action=action.value,
            resource=RESOURCE_DATABASE_SCHEMA,
            timestamp=now,
            severity=severity,
            metadata=payload,
        )

        level = logging.ERROR if severity == SEVERITY_ERROR else (
            logging.WARNING if severity == SEVERITY_WARNING else logging.INFO)
        logger.log(level, "Audit %s (%s)", record.action, record.id)

        try:
            self.sink.append(record)
        except Exception as e:
            self.failures += 1
            logger.warning("Failed to write audit record %s: %s", record.action, e)
            return None
        return record

    def history(self, limit: int = 50) -> List[AuditRecord]:
        """Recent migration records, newest first; empty if unreadable."""
        try:
            return self.sink.list_records(limit)
        except Exception as e:
            logger.warning("Failed to read audit history: %s", e)
            return []

    def last_forward_completion(self) -> Optional[AuditRecord]:
        """Latest COMPLETE record that renamed tables and was not rolled back."""
        for record in self.history():
            if record.action == AuditAction.ROLLBACK_COMPLETE.value:
                return None
            if record.action == AuditAction.COMPLETE.value and not record.metadata.get("superseded"):
                return record
        return None

    def recorded_column_additions(self) -> Optional[List[str]]:
        """Columns recorded as added by forward runs; None if unknown."""
        records = self.history(limit=500)
        if not records:
            return None
        added: List[str] = []
        for record in records:
            if record.action == AuditAction.COMPLETE.value:
                added.extend(record.metadata.get("columns_added", []))
        return added

    def recorded_object_renames(self) -> Optional[List[str]]:
        """
        Current names of the sequences, constraints and indexes renamed by
        forward runs since the last rollback.

        Returns None when the trail cannot tell: no forward completion is
        readable, or one predates the objects_renamed field.
        """
        names: List[str] = []
        found = False
        for record in self.history(limit=500):
            if record.action == AuditAction.ROLLBACK_COMPLETE.value:
                break
            if record.action != AuditAction.COMPLETE.value:
                continue
            if "objects_renamed" not in record.metadata:
                return None
            found = True
            names.extend(pair.split("->", 1)[1] for pair in record.metadata["objects_renamed"])
        return names if found else None


def reconstruct_state(records: List[AuditRecord]) -> Optional[MigrationState]:
    """
    State of the most recent run, rebuilt from its audit records.

    Args:
        records: Audit records, newest first (as returned by AuditSink)

    Returns:
        MigrationState of the newest run, or None if there are no records
    """
    if not records:
        return None
    latest_run = records[0].run_id
    state = MigrationState.NOT_STARTED
    for record in reversed(records):
        if record.run_id != latest_run:
            continue
        state = _ACTION_STATES.get(record.action, state)
    return state
