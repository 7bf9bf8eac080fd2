"""
Execution State Machine - transition table and compare-and-set writes.

Every status change on an execution goes through transition(), which is a
conditional UPDATE on (id, status, version). Losing the race raises
ConcurrencyError and leaves the row untouched.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.db.models import Execution
from autogift.exceptions import ConcurrencyError, InvalidTransitionError
from autogift.models.api import ExecutionStatus
from autogift.observability.logging import get_logger
from autogift.observability.metrics import metrics

logger = get_logger(__name__)

S = ExecutionStatus

VALID_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.PENDING_APPROVAL, S.APPROVED, S.FAILED, S.CANCELLED}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.ORDER_PLACED, S.ORDER_FAILED, S.CANCELLED}),
    S.ORDER_PLACED: frozenset({S.COMPLETED, S.CANCELLED}),
    S.ORDER_FAILED: frozenset({S.APPROVED, S.FAILED, S.CANCELLED}),
    # Terminal
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REJECTED: frozenset(),
}

TERMINAL_STATUSES: frozenset[ExecutionStatus] = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)
LIVE_STATUSES: frozenset[ExecutionStatus] = frozenset(VALID_TRANSITIONS) - TERMINAL_STATUSES

# Statuses at which total_amount_minor must be within the rule budget
COMMITTED_STATUSES: frozenset[ExecutionStatus] = frozenset(
    {S.APPROVED, S.ORDER_PLACED, S.COMPLETED}
)


def is_terminal(status: ExecutionStatus | str) -> bool:
    return ExecutionStatus(status) in TERMINAL_STATUSES


def can_transition(from_status: ExecutionStatus, to_status: ExecutionStatus) -> bool:
    return to_status in VALID_TRANSITIONS[from_status]


async def compare_and_set(
    session: AsyncSession, execution: Execution, **values: Any
) -> Execution:
    """
    Write values to the execution row only if nobody else wrote it since it was read.

    Bumps version and reloads the instance. Pending ORM changes are flushed
    first so the reload doesn't discard them.

    Raises:
        ConcurrencyError: the row's status or version changed underneath us
    """
    await session.flush()
    stmt = (
        update(Execution)
        .where(
            Execution.id == execution.id,
            Execution.status == execution.status,
            Execution.version == execution.version,
        )
        .values(version=Execution.version + 1, updated_at=datetime.now(UTC), **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:  # type: ignore[attr-defined]
        metrics.transition_conflicts_total.inc()
        logger.warning(
            "execution_write_conflict",
            execution_id=str(execution.id),
            expected_status=execution.status,
            expected_version=execution.version,
        )
        raise ConcurrencyError(f"execution {execution.id}")

    await session.refresh(execution)
    return execution


async def transition(
    session: AsyncSession,
    execution: Execution,
    to_status: ExecutionStatus,
    **values: Any,
) -> Execution:
    """
    Move an execution to to_status via compare-and-set.

    Raises:
        InvalidTransitionError: the table doesn't allow this move
        ConcurrencyError: a concurrent writer got there first
    """
    from_status = ExecutionStatus(execution.status)
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(execution.id, from_status.value, to_status.value)

    await compare_and_set(session, execution, status=to_status.value, **values)

    metrics.record_transition(from_status.value, to_status.value)
    logger.info(
        "execution_transitioned",
        execution_id=str(execution.id),
        rule_id=str(execution.rule_id),
        from_status=from_status.value,
        to_status=to_status.value,
        version=execution.version,
    )
    return execution
