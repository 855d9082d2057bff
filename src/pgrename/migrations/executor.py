"""
Transactional Executor for pgrename

Applies a MigrationPlan inside one transaction. There is no partial-commit
mode: the first failing statement aborts the transaction and the database
rolls every earlier step back.

Inside the transaction:
1. Advisory lock keyed by the migration name (fails fast if held)
2. Re-plan against the live schema; a concurrent run may have finished
   the work while this one was taking its backup
3. SET LOCAL lock_timeout / statement_timeout
4. SET LOCAL session_replication_role = 'replica'
5. Every plan step, in order, within the transaction time budget
6. SET LOCAL session_replication_role = 'origin'
7. COMMIT
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

import psycopg

from ..errors import ExecutionFailed, MigrationError, MigrationLocked, PlanChanged
from .planner import MigrationPlan

logger = logging.getLogger(__name__)


class MigrationState(str, Enum):
    NOT_STARTED = "NotStarted"
    PLANNED = "Planned"
    IN_PROGRESS = "InProgress"
    VERIFIED = "Verified"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


_TRANSITIONS: Dict[MigrationState, FrozenSet[MigrationState]] = {
    MigrationState.NOT_STARTED: frozenset({MigrationState.PLANNED, MigrationState.FAILED}),
    MigrationState.PLANNED: frozenset({MigrationState.IN_PROGRESS, MigrationState.FAILED}),
    MigrationState.IN_PROGRESS: frozenset({MigrationState.VERIFIED, MigrationState.FAILED}),
    MigrationState.VERIFIED: frozenset({MigrationState.ROLLED_BACK}),
    MigrationState.FAILED: frozenset(),
    MigrationState.ROLLED_BACK: frozenset(),
}


class StateMachine:
    """Local run state; never persisted (the audit trail reconstructs it)."""

    def __init__(self):
        self.state = MigrationState.NOT_STARTED
        self.history: List[MigrationState] = [self.state]

    def advance(self, new_state: MigrationState) -> None:
        """
        Move to a new state.

        Raises:
            RuntimeError: If the transition is not allowed
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid migration state transition: {self.state.value} -> {new_state.value}"
            )
        logger.debug("State %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)


@dataclass
class ExecutionResult:
    """Outcome of one transactional run."""
    state: MigrationState
    statements: List[str] = field(default_factory=list)
    duration_ms: int = 0
    error: Optional[Exception] = None
    superseded: bool = False

    @property
    def committed(self) -> bool:
        return self.state is MigrationState.VERIFIED


class TransactionalExecutor:
    """
    Transactional Executor - one plan, one transaction

    Example:
        executor = TransactionalExecutor(db, "public", lock_key="pgrename:table_rename")
        executor.prepare(plan)
        result = executor.execute()   # raises ExecutionFailed on any error
    """

    def __init__(self, db, schema: str = "public", lock_key: str = "pgrename:table_rename",
                 lock_timeout: float = 10.0, statement_timeout: float = 60.0,
                 revalidate: Optional[Callable[[], MigrationPlan]] = None):
        """
        Initialize Transactional Executor.

        Args:
            db: Database seam (PostgresDatabase or a test double)
            schema: Schema every step runs in
            lock_key: Advisory lock name shared by runs of the same migration
            lock_timeout: Seconds a statement may wait for a table lock
            statement_timeout: Seconds any statement may run; also the
                               budget for the whole transaction (0 disables)
            revalidate: Rebuilds the plan from the live schema once the lock
                        is held; a stale prepared plan is never executed
        """
        self.db = db
        self.schema = schema
        self.lock_key = lock_key
        self.lock_timeout = lock_timeout
        self.statement_timeout = statement_timeout
        self.revalidate = revalidate
        self.machine = StateMachine()
        self.plan: Optional[MigrationPlan] = None

    @property
    def state(self) -> MigrationState:
        return self.machine.state

    def prepare(self, plan: MigrationPlan) -> None:
        """Accept a plan once the safety checks have passed."""
        plan.validate_order()
        self.plan = plan
        self.machine.advance(MigrationState.PLANNED)

    def fail(self) -> None:
        """Mark the run failed before it reached the transaction."""
        if self.state is not MigrationState.FAILED:
            self.machine.advance(MigrationState.FAILED)

    def execute(self) -> ExecutionResult:
        """
        Apply the prepared plan atomically.

        Returns:
            ExecutionResult in state VERIFIED (committed). When another run
            applied the same renames while this one waited, nothing is
            executed and the result is marked superseded.

        Raises:
            MigrationLocked: If another run holds the advisory lock
            PlanChanged: If the live schema no longer matches the plan
            ExecutionFailed: If any step fails or the transaction runs past
                             its time budget; nothing was committed
        """
        if self.plan is None:
            raise RuntimeError("execute() called before prepare()")

        self.machine.advance(MigrationState.IN_PROGRESS)
        statements: List[str] = []
        superseded = False
        started = time.monotonic()
        try:
            with self.db.transaction():
                if not self.db.try_advisory_lock(self.lock_key):
                    raise MigrationLocked(self.lock_key)
                superseded = self._check_plan_is_current()
                if not superseded:
                    self.db.set_timeouts(self.lock_timeout, self.statement_timeout)
                    self.db.set_replication_role("replica")
                    for index, step in enumerate(self.plan.steps, start=1):
                        self._check_deadline(started, index, step)
                        statements.append(self._apply(index, step))
                    self.db.set_replication_role("origin")
        except MigrationError:
            self.machine.advance(MigrationState.FAILED)
            raise
        except psycopg.Error as e:
            # BEGIN/COMMIT or a SET statement failed
            self.machine.advance(MigrationState.FAILED)
            raise ExecutionFailed(f"Migration transaction failed: {e}") from e
        except Exception:
            self.machine.advance(MigrationState.FAILED)
            raise

        self.machine.advance(MigrationState.VERIFIED)
        duration_ms = int((time.monotonic() - started) * 1000)
        if superseded:
            logger.info("Another run already applied every planned step; nothing executed")
        else:
            logger.info("Committed %d statements in %d ms", len(statements), duration_ms)
        return ExecutionResult(
            state=self.state,
            statements=statements,
            duration_ms=duration_ms,
            superseded=superseded,
        )

    def _check_plan_is_current(self) -> bool:
        """Re-plan under the lock. True if the work is already done."""
        if self.revalidate is None:
            return False
        current = self.revalidate()
        if current.steps == self.plan.steps:
            return False
        if current.is_empty:
            return True
        logger.error("Plan changed while waiting for the lock")
        raise PlanChanged(
            [step.describe() for step in self.plan.steps],
            [step.describe() for step in current.steps],
        )

    def _check_deadline(self, started: float, index: int, step) -> None:
        if not self.statement_timeout:
            return
        elapsed = time.monotonic() - started
        if elapsed > self.statement_timeout:
            logger.error("Transaction ran %.1fs, over its %.1fs budget", elapsed,
                         self.statement_timeout)
            raise ExecutionFailed(
                f"Transaction exceeded its {self.statement_timeout:g}s time budget "
                f"before step {index} ({step.describe()})",
                step=step,
            )

    def _apply(self, index: int, step) -> str:
        """Run one step; wrap driver errors with the failing statement."""
        try:
            text = self.db.execute_step(step, self.schema)
        except psycopg.Error as e:
            statement = self.db.render_step(step, self.schema)
            logger.error("Failed to execute step %d (%s): %s", index, step.describe(), e)
            raise ExecutionFailed(
                f"Step {index} failed ({step.describe()}): {e}".strip(),
                step=step,
                statement=statement,
            ) from e
        logger.info("Executed: %s", text)
        return text
