"""
Tests for execution status transitions and compare-and-set writes.
"""

import pytest
from sqlalchemy import update

from autogift.db.models import Execution
from autogift.exceptions import ConcurrencyError, InvalidTransitionError
from autogift.models.api import ExecutionStatus
from autogift.services.executions import load_execution
from autogift.services.state_machine import compare_and_set, transition

S = ExecutionStatus


class TestTransition:
    """Tests for transition()."""

    @pytest.mark.asyncio
    async def test_allowed_transition_bumps_version(self, session, make_rule, make_execution):
        rule = await make_rule()
        execution = await load_execution(session, await make_execution(rule))
        before = execution.updated_at

        await transition(session, execution, S.PROCESSING)
        await session.commit()

        assert execution.status == S.PROCESSING.value
        assert execution.version == 2
        assert execution.updated_at >= before

    @pytest.mark.asyncio
    async def test_disallowed_transition_writes_nothing(self, session, make_rule, make_execution):
        rule = await make_rule()
        execution_id = await make_execution(rule)
        execution = await load_execution(session, execution_id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await transition(session, execution, S.ORDER_PLACED)

        assert exc_info.value.from_status == "pending"
        assert exc_info.value.to_status == "order_placed"
        reloaded = await load_execution(session, execution_id)
        assert reloaded.version == 1

    @pytest.mark.asyncio
    async def test_terminal_execution_cannot_move(self, session, make_rule, make_execution):
        rule = await make_rule()
        execution = await load_execution(session, await make_execution(rule, S.COMPLETED))

        with pytest.raises(InvalidTransitionError):
            await transition(session, execution, S.CANCELLED)

    @pytest.mark.asyncio
    async def test_extra_values_written_with_status(self, session, make_rule, make_execution):
        rule = await make_rule()
        execution = await load_execution(session, await make_execution(rule, S.PROCESSING))

        await transition(session, execution, S.FAILED, error_message="nothing fits")
        await session.commit()

        assert execution.error_message == "nothing fits"


class TestCompareAndSet:
    """Tests for the optimistic concurrency guard."""

    @pytest.mark.asyncio
    async def test_stale_version_loses(self, session, make_rule, make_execution):
        """A writer holding an old version is rejected and the row is untouched."""
        rule = await make_rule()
        execution_id = await make_execution(rule)
        execution = await load_execution(session, execution_id)

        # Another driver advances the row behind our back
        await session.execute(
            update(Execution)
            .where(Execution.id == execution_id)
            .values(status=S.PROCESSING.value, version=Execution.version + 1)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        with pytest.raises(ConcurrencyError):
            await transition(session, execution, S.CANCELLED)
        await session.rollback()

        reloaded = await load_execution(session, execution_id)
        assert reloaded.status == S.PROCESSING.value
        assert reloaded.version == 2

    @pytest.mark.asyncio
    async def test_same_status_write_still_bumps_version(
        self, session, make_rule, make_execution, now
    ):
        rule = await make_rule()
        execution = await load_execution(session, await make_execution(rule, S.APPROVED))

        await compare_and_set(session, execution, placement_claimed_at=now)
        await session.commit()

        assert execution.status == S.APPROVED.value
        assert execution.version == 2
        assert execution.placement_claimed_at == now

    @pytest.mark.asyncio
    async def test_two_sessions_one_winner(
        self, session_factory, make_rule, make_execution
    ):
        rule = await make_rule()
        execution_id = await make_execution(rule)

        async with session_factory() as first, session_factory() as second:
            mine = await load_execution(first, execution_id)
            theirs = await load_execution(second, execution_id)

            await transition(first, mine, S.PROCESSING)
            await first.commit()

            with pytest.raises(ConcurrencyError):
                await transition(second, theirs, S.PROCESSING)
            await second.rollback()
