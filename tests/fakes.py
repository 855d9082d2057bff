"""In-memory stand-ins for the database seam, audit sink and backup tool.

FakeDatabase implements the methods of pgrename.db.PostgresDatabase against
a small catalog held in dictionaries. Mutations only happen through
execute_step() inside transaction(); an exception inside the block restores
the catalog as it was when the block started.
"""

import copy
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from psycopg import errors as pg_errors

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pgrename.audit_log import AuditRecord, AuditSink
from pgrename.errors import BackupFailed
from pgrename.migrations.backup import BackupInfo
from pgrename.migrations.steps import (
    AddColumn,
    BackfillColumn,
    RenameConstraint,
    RenameIndex,
    RenameSequence,
    RenameTable,
)


@dataclass
class FakeTable:
    columns: List[str] = field(default_factory=list)
    indexes: List[str] = field(default_factory=list)
    constraints: List[Tuple[str, str]] = field(default_factory=list)
    references: List[str] = field(default_factory=list)  # tables this one points at
    rows: int = 0
    has_triggers: bool = False
    row_security: bool = False


def sample_tables() -> Dict[str, FakeTable]:
    """The application schema before the migration."""
    return {
        "User": FakeTable(
            columns=["id", "email", "name", "createdAt"],
            indexes=["User_email_idx", "User_pkey"],
            constraints=[("User_pkey", "p")],
            rows=10,
        ),
        "AssistantFolder": FakeTable(
            columns=["id", "userId", "name", "createdAt"],
            indexes=["AssistantFolder_pkey", "AssistantFolder_userId_name_key"],
            constraints=[
                ("AssistantFolder_pkey", "p"),
                ("AssistantFolder_userId_fkey", "f"),
                ("AssistantFolder_userId_name_key", "u"),
            ],
            references=["User"],
            rows=4,
        ),
        "AssistantChatSession": FakeTable(
            columns=["id", "userId", "sessionName", "createdAt"],
            indexes=["AssistantChatSession_pkey", "AssistantChatSession_userId_idx"],
            constraints=[
                ("AssistantChatSession_pkey", "p"),
                ("AssistantChatSession_userId_fkey", "f"),
            ],
            references=["User"],
            rows=25,
        ),
        "AssistantChatMessage": FakeTable(
            columns=["id", "sessionId", "content", "createdAt"],
            indexes=["AssistantChatMessage_pkey"],
            constraints=[
                ("AssistantChatMessage_pkey", "p"),
                ("AssistantChatMessage_sessionId_fkey", "f"),
            ],
            references=["AssistantChatSession"],
            rows=300,
        ),
        "AuditLog": FakeTable(
            columns=["id", "action", "resource", "metadata", "severity", "createdAt"],
            indexes=["AuditLog_pkey"],
            constraints=[("AuditLog_pkey", "p")],
        ),
        "Page": FakeTable(
            columns=["id", "title"],
            indexes=["Page_pkey"],
            constraints=[("Page_pkey", "p")],
            rows=3,
        ),
    }


class FakeDatabase:
    """Catalog-in-dicts implementation of the PostgresDatabase seam."""

    def __init__(self, tables: Optional[Dict[str, FakeTable]] = None,
                 sequences: Optional[Set[str]] = None,
                 database: str = "personalAI"):
        self.database = database
        self.tables = tables if tables is not None else sample_tables()
        self.sequences = sequences if sequences is not None else {"AssistantChatMessage_id_seq"}
        self.lock_held = False
        self.fail_on: Optional[Callable] = None
        self.unqueryable: Set[str] = set()
        self.locked: Set[str] = set()
        self.count_timeouts: List[tuple] = []
        self.in_transaction = False
        self.commits = 0
        self.rollbacks = 0
        self.events: List[tuple] = []
        self.closed = False

    # ==================== Helpers for tests ====================

    def catalog(self) -> tuple:
        """Deep copy of everything a migration can change."""
        return copy.deepcopy((self.tables, self.sequences))

    def add_table(self, name: str, **kwargs) -> None:
        self.tables[name] = FakeTable(**kwargs)

    def __enter__(self) -> "FakeDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.closed = True

    def close(self) -> None:
        self.closed = True

    # ==================== Catalog queries ====================

    def current_database(self) -> str:
        return self.database

    def list_tables(self, schema: str) -> List[Dict[str, object]]:
        return [
            {
                "name": name,
                "schema": schema,
                "has_indexes": bool(table.indexes),
                "has_triggers": table.has_triggers,
                "row_security_enabled": table.row_security,
            }
            for name, table in sorted(self.tables.items())
        ]

    def table_exists(self, schema: str, table: str) -> bool:
        return table in self.tables

    def list_indexes(self, schema: str, table: str) -> List[str]:
        return sorted(self.tables[table].indexes)

    def list_constraints(self, schema: str, table: str) -> List[Tuple[str, str]]:
        return sorted(self.tables[table].constraints)

    def list_columns(self, schema: str, table: str) -> List[str]:
        return list(self.tables[table].columns)

    def list_sequences(self, schema: str) -> List[str]:
        return sorted(self.sequences)

    def referenced_counts(self, schema: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for table in self.tables.values():
            for referenced in table.references:
                counts[referenced] = counts.get(referenced, 0) + 1
        return counts

    def estimated_rows(self, schema: str, table: str) -> int:
        return self.tables[table].rows

    def count_rows(self, schema: str, table: str, lock_timeout: Optional[float] = None,
                   statement_timeout: Optional[float] = None) -> int:
        self.count_timeouts.append((table, lock_timeout, statement_timeout))
        if table in self.locked:
            raise pg_errors.LockNotAvailable("canceling statement due to lock timeout")
        if table in self.unqueryable:
            raise pg_errors.InsufficientPrivilege(f"permission denied for table {table}")
        if table not in self.tables:
            raise pg_errors.UndefinedTable(f'relation "{schema}.{table}" does not exist')
        return self.tables[table].rows

    # ==================== Transactional DDL ====================

    @contextmanager
    def transaction(self):
        saved = self.catalog()
        self.in_transaction = True
        self.events.append(("begin",))
        try:
            yield self
        except BaseException:
            self.tables, self.sequences = saved
            self.rollbacks += 1
            self.events.append(("rollback",))
            raise
        finally:
            self.in_transaction = False
        self.commits += 1
        self.events.append(("commit",))

    def set_replication_role(self, role: str) -> None:
        self.events.append(("role", role))

    def set_timeouts(self, lock_timeout: float, statement_timeout: float) -> None:
        self.events.append(("timeouts", lock_timeout, statement_timeout))

    def try_advisory_lock(self, key: str) -> bool:
        self.events.append(("lock", key))
        return not self.lock_held

    def render_step(self, step, schema: str) -> str:
        return step.describe()

    def execute_step(self, step, schema: str) -> str:
        if not self.in_transaction:
            raise AssertionError(f"step executed outside a transaction: {step.describe()}")
        if self.fail_on is not None and self.fail_on(step):
            raise pg_errors.QueryCanceled("canceling statement due to statement timeout")

        if isinstance(step, RenameTable):
            self._rename_table(step.source, step.target)
        elif isinstance(step, RenameSequence):
            if step.source not in self.sequences:
                raise pg_errors.UndefinedTable(f'relation "{step.source}" does not exist')
            self._check_free(step.target)
            self.sequences.remove(step.source)
            self.sequences.add(step.target)
        elif isinstance(step, RenameConstraint):
            self._rename_constraint(step.table, step.source, step.target)
        elif isinstance(step, RenameIndex):
            self._rename_index(step.source, step.target)
        elif isinstance(step, AddColumn):
            table = self._table(step.table)
            if step.column not in table.columns:
                table.columns.append(step.column)
        elif isinstance(step, BackfillColumn):
            table = self._table(step.table)
            for column in (step.column, step.source_column):
                if column not in table.columns:
                    raise pg_errors.UndefinedColumn(f'column "{column}" does not exist')
        else:
            raise AssertionError(f"unknown step {step!r}")

        text = step.describe()
        self.events.append(("step", text))
        return text

    def _table(self, name: str) -> FakeTable:
        if name not in self.tables:
            raise pg_errors.UndefinedTable(f'relation "{name}" does not exist')
        return self.tables[name]

    def _all_indexes(self) -> Set[str]:
        return {i for t in self.tables.values() for i in t.indexes}

    def _check_free(self, name: str) -> None:
        if name in self.tables or name in self.sequences or name in self._all_indexes():
            raise pg_errors.DuplicateTable(f'relation "{name}" already exists')

    def _rename_table(self, source: str, target: str) -> None:
        table = self._table(source)
        self._check_free(target)
        del self.tables[source]
        self.tables[target] = table
        for other in self.tables.values():
            other.references = [target if r == source else r for r in other.references]

    def _rename_constraint(self, table_name: str, source: str, target: str) -> None:
        table = self._table(table_name)
        names = [name for name, _ in table.constraints]
        if source not in names:
            raise pg_errors.UndefinedObject(
                f'constraint "{source}" for table "{table_name}" does not exist')
        if target in names:
            raise pg_errors.DuplicateObject(f'constraint "{target}" already exists')
        # Primary key and unique constraints rename their index as well
        if source in table.indexes:
            self._check_free(target)
            table.indexes[table.indexes.index(source)] = target
        table.constraints = [
            (target if name == source else name, contype) for name, contype in table.constraints
        ]

    def _rename_index(self, source: str, target: str) -> None:
        self._check_free(target)
        for table in self.tables.values():
            if source in table.indexes:
                table.indexes[table.indexes.index(source)] = target
                return
        raise pg_errors.UndefinedObject(f'index "{source}" does not exist')


class MemoryAuditSink(AuditSink):
    """Audit sink keeping records in a list, newest last."""

    def __init__(self):
        self.records: List[AuditRecord] = []
        self.fail = False

    def append(self, record: AuditRecord) -> None:
        if self.fail:
            raise RuntimeError("audit table unavailable")
        self.records.append(record)

    def list_records(self, limit: int = 50) -> List[AuditRecord]:
        if self.fail:
            raise RuntimeError("audit table unavailable")
        return list(reversed(self.records))[:limit]

    def actions(self) -> List[str]:
        """Recorded actions, oldest first."""
        return [r.action for r in self.records]


class RecordingBackup:
    """BackupCoordinator stand-in that counts invocations."""

    def __init__(self, backup_dir: Path, fail: bool = False):
        self.backup_dir = Path(backup_dir)
        self.fail = fail
        self.calls: List[Optional[str]] = []

    def create_backup(self, run_id: Optional[str] = None) -> BackupInfo:
        self.calls.append(run_id)
        if self.fail:
            raise BackupFailed("Backup creation failed (exit 1). Aborting migration.",
                               returncode=1, stderr="pg_dump: error: connection refused")
        return BackupInfo(
            path=self.backup_dir / f"backup-test-{run_id}.sql",
            database="personalAI",
            created_at=datetime.now(),
            size_bytes=1024,
            run_id=run_id,
        )

    def list_backups(self) -> List[BackupInfo]:
        return []
