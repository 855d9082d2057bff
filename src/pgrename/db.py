"""
PostgreSQL access for pgrename.

PostgresDatabase wraps one psycopg connection (autocommit mode) and is the
only object that talks to the server. Components receive it through their
constructors; there is no module-level client.

Catalog queries run outside any transaction. Mutations run inside
transaction(), which is a single psycopg transaction block.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import sql

from .migrations.steps import MigrationStep

logger = logging.getLogger(__name__)


class PostgresDatabase:
    """
    PostgresDatabase - catalog queries and transactional DDL

    Pattern: Explicit connection passed in, never a global
    Lifetime: One per CLI invocation, closed by the caller

    Example:
        with PostgresDatabase.connect(dsn) as db:
            print(db.current_database())
            with db.transaction():
                db.execute_step(RenameTable("User", "users"), "public")
    """

    def __init__(self, conn: psycopg.Connection):
        """
        Initialize with an open connection.

        Args:
            conn: psycopg connection; it is switched to autocommit so that
                  catalog reads and audit writes never join the migration
                  transaction.
        """
        self.conn = conn
        if not conn.autocommit:
            conn.autocommit = True

    @classmethod
    def connect(cls, dsn: str, connect_timeout: int = 10) -> "PostgresDatabase":
        conn = psycopg.connect(dsn, autocommit=True, connect_timeout=connect_timeout)
        return cls(conn)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "PostgresDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ==================== Low-level execution ====================

    def execute(self, statement: Any, params: Optional[Sequence[Any]] = None) -> None:
        with self.conn.cursor() as cur:
            cur.execute(statement, params)

    def fetchall(self, statement: Any, params: Optional[Sequence[Any]] = None) -> List[Tuple]:
        with self.conn.cursor() as cur:
            cur.execute(statement, params)
            return cur.fetchall()

    def fetchone(self, statement: Any, params: Optional[Sequence[Any]] = None) -> Optional[Tuple]:
        with self.conn.cursor() as cur:
            cur.execute(statement, params)
            return cur.fetchone()

    def render(self, statement: sql.Composable) -> str:
        """Render a composed statement as text for logs and errors."""
        return statement.as_string(self.conn)

    # ==================== Catalog queries ====================

    def current_database(self) -> str:
        row = self.fetchone("SELECT current_database()")
        return row[0]

    def list_tables(self, schema: str) -> List[Dict[str, Any]]:
        rows = self.fetchall(
            """
            SELECT tablename, schemaname, hasindexes, hastriggers, rowsecurity
            FROM pg_tables
            WHERE schemaname = %s
            ORDER BY tablename
            """,
            (schema,),
        )
        return [
            {
                "name": row[0],
                "schema": row[1],
                "has_indexes": row[2],
                "has_triggers": row[3],
                "row_security_enabled": row[4],
            }
            for row in rows
        ]

    def table_exists(self, schema: str, table: str) -> bool:
        row = self.fetchone(
            "SELECT EXISTS (SELECT FROM pg_tables WHERE schemaname = %s AND tablename = %s)",
            (schema, table),
        )
        return bool(row[0])

    def list_indexes(self, schema: str, table: str) -> List[str]:
        rows = self.fetchall(
            "SELECT indexname FROM pg_indexes WHERE schemaname = %s AND tablename = %s "
            "ORDER BY indexname",
            (schema, table),
        )
        return [row[0] for row in rows]

    def list_constraints(self, schema: str, table: str) -> List[Tuple[str, str]]:
        """(constraint name, contype) pairs; contype is p, f, u, c, x."""
        rows = self.fetchall(
            """
            SELECT c.conname, c.contype
            FROM pg_constraint c
            JOIN pg_class t ON t.oid = c.conrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            WHERE n.nspname = %s AND t.relname = %s
            ORDER BY c.conname
            """,
            (schema, table),
        )
        return [(row[0], row[1]) for row in rows]

    def list_columns(self, schema: str, table: str) -> List[str]:
        rows = self.fetchall(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = %s AND table_name = %s ORDER BY ordinal_position",
            (schema, table),
        )
        return [row[0] for row in rows]

    def list_sequences(self, schema: str) -> List[str]:
        rows = self.fetchall(
            "SELECT sequencename FROM pg_sequences WHERE schemaname = %s ORDER BY sequencename",
            (schema,),
        )
        return [row[0] for row in rows]

    def referenced_counts(self, schema: str) -> Dict[str, int]:
        """Number of foreign keys pointing at each table of the schema."""
        rows = self.fetchall(
            """
            SELECT t.relname, COUNT(*)
            FROM pg_constraint c
            JOIN pg_class t ON t.oid = c.confrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            WHERE c.contype = 'f' AND n.nspname = %s
            GROUP BY t.relname
            """,
            (schema,),
        )
        return {row[0]: int(row[1]) for row in rows}

    def estimated_rows(self, schema: str, table: str) -> int:
        row = self.fetchone(
            """
            SELECT c.reltuples::bigint
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s AND c.relname = %s
            """,
            (schema, table),
        )
        if not row or row[0] is None:
            return 0
        return max(int(row[0]), 0)

    def count_rows(self, schema: str, table: str, lock_timeout: Optional[float] = None,
                   statement_timeout: Optional[float] = None) -> int:
        """
        COUNT(*) of one table.

        With timeouts the count runs in its own short transaction, so a
        table locked by another session raises LockNotAvailable or
        QueryCanceled instead of waiting.
        """
        statement = sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(schema, table))
        if lock_timeout is None and statement_timeout is None:
            row = self.fetchone(statement)
        else:
            with self.transaction():
                self.set_timeouts(lock_timeout or 0, statement_timeout or 0)
                row = self.fetchone(statement)
        return int(row[0])

    # ==================== Transactional DDL ====================

    @contextmanager
    def transaction(self) -> Iterator["PostgresDatabase"]:
        """One transaction block; an exception rolls everything back."""
        with self.conn.transaction():
            yield self

    def set_replication_role(self, role: str) -> None:
        """SET LOCAL session_replication_role ('replica' or 'origin')."""
        if role not in ("replica", "origin"):
            raise ValueError(f"Unsupported replication role: {role}")
        self.execute(sql.SQL("SET LOCAL session_replication_role = {}").format(sql.Literal(role)))

    def set_timeouts(self, lock_timeout: float, statement_timeout: float) -> None:
        """SET LOCAL lock/statement timeouts, given in seconds (0 disables)."""
        self.execute(
            sql.SQL("SET LOCAL lock_timeout = {}").format(sql.Literal(f"{int(lock_timeout * 1000)}ms"))
        )
        self.execute(
            sql.SQL("SET LOCAL statement_timeout = {}").format(
                sql.Literal(f"{int(statement_timeout * 1000)}ms")
            )
        )

    def try_advisory_lock(self, key: str) -> bool:
        """Transaction-scoped advisory lock; released on commit or rollback."""
        row = self.fetchone("SELECT pg_try_advisory_xact_lock(hashtext(%s))", (key,))
        return bool(row[0])

    def render_step(self, step: MigrationStep, schema: str) -> str:
        return self.render(step.render(schema))

    def execute_step(self, step: MigrationStep, schema: str) -> str:
        """Execute one plan step and return the statement text that ran."""
        statement = step.render(schema)
        text = self.render(statement)
        logger.debug("Executing: %s", text)
        self.execute(statement)
        return text
