"""
Verifier for pgrename

Post-commit check that every expected table exists and answers a
COUNT(*) query. Each count runs under short lock and statement timeouts, so
a table locked by another session is reported as unqueryable instead of
blocking the run. It never mutates state; problems are reported as a
VerificationWarning for the operator to act on.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import psycopg

from ..errors import VerificationWarning

logger = logging.getLogger(__name__)


@dataclass
class VerificationReport:
    """Result of verifying a set of tables."""
    checked: List[str] = field(default_factory=list)
    row_counts: Dict[str, int] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    unqueryable: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.missing and not self.unqueryable

    @property
    def problems(self) -> List[str]:
        return self.missing + sorted(self.unqueryable)

    def warning(self) -> Optional[VerificationWarning]:
        if self.ok:
            return None
        return VerificationWarning(self.missing, self.unqueryable)

    def to_dict(self) -> Dict[str, object]:
        return {
            "checked": self.checked,
            "row_counts": self.row_counts,
            "missing": self.missing,
            "unqueryable": self.unqueryable,
        }


class Verifier:
    """
    Verifier - are the expected tables present and readable?

    Example:
        report = Verifier(db, "public").verify(["users", "chat_sessions"])
        if not report.ok:
            print(report.warning())
    """

    def __init__(self, db, schema: str = "public", lock_timeout: float = 5.0,
                 statement_timeout: float = 30.0):
        self.db = db
        self.schema = schema
        self.lock_timeout = lock_timeout
        self.statement_timeout = statement_timeout

    def verify(self, tables: Iterable[str]) -> VerificationReport:
        report = VerificationReport()
        logger.info("Verifying migration results...")

        for table in tables:
            report.checked.append(table)
            if not self.db.table_exists(self.schema, table):
                report.missing.append(table)
                continue
            try:
                count = self.db.count_rows(
                    self.schema, table,
                    lock_timeout=self.lock_timeout,
                    statement_timeout=self.statement_timeout,
                )
            except psycopg.Error as e:
                report.unqueryable[table] = str(e).strip()
                logger.error("Table %s is not queryable: %s", table, e)
                continue
            report.row_counts[table] = count
            logger.info("Table %s accessible: %d records", table, count)

        if report.missing:
            logger.warning("Missing expected tables: %s", ", ".join(report.missing))
        if report.ok:
            logger.info("All expected tables found!")
        return report
