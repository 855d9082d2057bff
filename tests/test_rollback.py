"""Tests for RollbackEngine: inverse plan, round trip, column review."""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import MemoryAuditSink

from pgrename.audit_log import AuditAction, AuditLogger
from pgrename.errors import ExecutionFailed, RollbackTargetMissing, TargetAlreadyExists
from pgrename.migrations.executor import TransactionalExecutor
from pgrename.migrations.inspector import SchemaInspector
from pgrename.migrations.planner import ROLLBACK, MigrationPlanner
from pgrename.migrations.registry import MappingRegistry
from pgrename.migrations.rollback import ColumnReview, RollbackEngine
from pgrename.migrations.steps import RenameTable, StepKind


def migrate_forward(db, registry):
    snapshot = SchemaInspector(db, "public").snapshot()
    plan = MigrationPlanner(registry).plan(snapshot)
    executor = TransactionalExecutor(db, "public")
    executor.prepare(plan)
    executor.execute()
    return plan


@pytest.fixture
def engine(fake_db, registry):
    return RollbackEngine(fake_db, registry, lambda rows: TransactionalExecutor(fake_db, "public"))


class TestRoundTrip:

    def test_restores_original_names(self, fake_db, registry, engine):
        original = fake_db.catalog()
        migrate_forward(fake_db, registry)

        result = engine.rollback()

        tables, sequences = original
        assert set(fake_db.tables) == set(tables)
        assert fake_db.sequences == sequences
        for name, table in tables.items():
            assert sorted(fake_db.tables[name].indexes) == sorted(table.indexes)
            assert sorted(fake_db.tables[name].constraints) == sorted(table.constraints)
            assert fake_db.tables[name].references == table.references
        assert result.verification.ok
        assert result.plan.direction == ROLLBACK

    def test_example_user_table(self, fake_db, registry, engine):
        migrate_forward(fake_db, registry)
        users = fake_db.tables["users"]
        assert "users_pkey" in users.indexes
        assert "users_email_idx" in users.indexes
        assert "role" in users.columns

        result = engine.rollback()

        user = fake_db.tables["User"]
        assert sorted(user.indexes) == ["User_email_idx", "User_pkey"]
        assert user.constraints == [("User_pkey", "p")]
        # Columns are never dropped, only flagged
        assert "role" in user.columns
        assert ColumnReview("User", "role") in result.columns_for_review

    def test_inverse_plan_has_no_column_steps(self, fake_db, registry, engine):
        migrate_forward(fake_db, registry)
        plan, _ = engine.plan()
        assert plan.steps_of(StepKind.ADD_COLUMN) == []
        assert plan.steps_of(StepKind.BACKFILL_COLUMN) == []
        assert plan.steps[0] == RenameTable("chat_messages", "AssistantChatMessage")


class TestRollbackChecks:

    def test_nothing_migrated(self, engine):
        with pytest.raises(RollbackTargetMissing) as excinfo:
            engine.rollback()
        assert excinfo.value.missing == ["users", "chat_folders", "chat_sessions", "chat_messages"]

    def test_expected_targets_from_caller(self, fake_db, registry, engine):
        migrate_forward(fake_db, registry)
        del fake_db.tables["chat_messages"]
        with pytest.raises(RollbackTargetMissing) as excinfo:
            engine.rollback(expected_targets=["users", "chat_messages"])
        assert excinfo.value.missing == ["chat_messages"]

    def test_original_name_taken(self, fake_db, registry, engine):
        migrate_forward(fake_db, registry)
        fake_db.add_table("User", columns=["id"])
        with pytest.raises(TargetAlreadyExists) as excinfo:
            engine.rollback()
        assert excinfo.value.conflicts == ["users -> User"]

    def test_dry_run_changes_nothing(self, fake_db, registry, engine):
        migrate_forward(fake_db, registry)
        before = fake_db.catalog()
        result = engine.rollback(dry_run=True)
        assert fake_db.catalog() == before
        assert result.execution is None
        assert len(result.plan) > 0

    def test_failure_keeps_migrated_names(self, fake_db, registry, engine):
        migrate_forward(fake_db, registry)
        before = fake_db.catalog()
        fake_db.fail_on = lambda step: isinstance(step, RenameTable) and step.target == "User"
        with pytest.raises(ExecutionFailed):
            engine.rollback()
        assert fake_db.catalog() == before


class TestColumnReview:

    def test_flags_recorded_columns(self, fake_db, registry, engine):
        migrate_forward(fake_db, registry)
        result = engine.rollback(added_by_migration=["users.role"])
        by_column = {(r.table, r.column): r for r in result.columns_for_review}
        assert by_column[("User", "role")].added_by_migration is True
        assert by_column[("AssistantFolder", "color")].added_by_migration is False

    def test_unknown_origin_without_records(self, fake_db, registry, engine):
        migrate_forward(fake_db, registry)
        result = engine.rollback()
        assert all(r.added_by_migration is None for r in result.columns_for_review)
        assert len(result.columns_for_review) == 9
        assert "origin unknown" in str(result.columns_for_review[0])


class TestRollbackAudit:

    def test_records_start_and_complete(self, fake_db, registry):
        sink = MemoryAuditSink()
        audit = AuditLogger(sink, "run-1")
        engine = RollbackEngine(fake_db, registry,
                                lambda rows: TransactionalExecutor(fake_db, "public"),
                                audit=audit)
        migrate_forward(fake_db, registry)
        engine.rollback()

        assert sink.actions() == [AuditAction.ROLLBACK_START.value,
                                  AuditAction.ROLLBACK_COMPLETE.value]
        assert all(r.severity == "warning" for r in sink.records)
        assert "users->User" in sink.records[1].metadata["tables_restored"]

    def test_failure_recorded_with_direction(self, fake_db, registry):
        sink = MemoryAuditSink()
        engine = RollbackEngine(fake_db, registry,
                                lambda rows: TransactionalExecutor(fake_db, "public"),
                                audit=AuditLogger(sink, "run-1"))
        migrate_forward(fake_db, registry)
        fake_db.lock_held = True
        with pytest.raises(Exception):
            engine.rollback()
        failure = sink.records[-1]
        assert failure.action == AuditAction.FAIL.value
        assert failure.metadata["direction"] == ROLLBACK
        assert failure.metadata["error"]["code"] == "MIGRATION_LOCKED"
        assert failure.severity == "error"
