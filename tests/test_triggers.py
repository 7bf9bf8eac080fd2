"""
Tests for the Trigger Evaluator.

Covers due-rule detection, per-occasion deduplication, duplicate resolution,
manual triggers and occasion reminders.
"""

from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from autogift.db.models import Execution
from autogift.exceptions import InvalidRuleError, RuleNotFoundError
from autogift.models.api import ExecutionStatus, NotificationEvent
from autogift.models.domain import NotificationPreferences

S = ExecutionStatus

AS_OF = date(2026, 10, 28)


async def _executions(session, rule_id) -> list[Execution]:
    result = await session.execute(
        select(Execution)
        .where(Execution.rule_id == rule_id)
        .order_by(Execution.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestDueRules:
    """Tests for the trigger window."""

    @pytest.mark.asyncio
    async def test_only_rules_inside_window_are_due(self, harness, make_rule):
        soon = await make_rule(occasion_anchor_date=date(1988, 11, 1))
        await make_rule(occasion_anchor_date=date(1988, 12, 20))

        due = await harness.evaluator.due_rules(AS_OF)

        assert [(rule.rule_id, occasion) for rule, occasion in due] == [
            (soon.rule_id, date(2026, 11, 1))
        ]

    @pytest.mark.asyncio
    async def test_window_edge_is_inclusive(self, harness, make_rule):
        await make_rule(occasion_anchor_date=date(1988, 11, 4))

        assert len(await harness.evaluator.due_rules(AS_OF)) == 1
        assert await harness.evaluator.due_rules(AS_OF - timedelta(days=1)) == []

    @pytest.mark.asyncio
    async def test_inactive_rules_are_ignored(self, harness, make_rule):
        rule = await make_rule()
        await harness.rules.deactivate_rule(rule.rule_id)

        assert await harness.evaluator.due_rules(AS_OF) == []

    @pytest.mark.asyncio
    async def test_holiday_needs_no_anchor(self, harness, make_rule):
        await make_rule(date_type="christmas", occasion_anchor_date=None)

        due = await harness.evaluator.due_rules(date(2026, 12, 20))

        assert [occasion for _, occasion in due] == [date(2026, 12, 25)]


class TestEvaluate:
    """Tests for execution creation."""

    @pytest.mark.asyncio
    async def test_creates_one_pending_execution(self, harness, make_rule):
        rule = await make_rule()

        result = await harness.evaluator.evaluate(AS_OF)

        assert (result.due, result.created, result.skipped, result.failed) == (1, 1, 0, 0)
        executions = await _executions(harness.session, rule.rule_id)
        assert len(executions) == 1
        assert executions[0].id == result.execution_ids[0]
        assert executions[0].status == S.PENDING.value
        assert executions[0].occasion_key == "birthday:2026-11-01"
        assert executions[0].budget_limit_minor == rule.budget_limit_minor

    @pytest.mark.asyncio
    async def test_repeat_runs_skip_existing_occasion(self, harness, make_rule):
        """Re-running the trigger on later days of the window never duplicates."""
        rule = await make_rule()

        await harness.evaluator.evaluate(AS_OF)
        again = await harness.evaluator.evaluate(AS_OF + timedelta(days=2))

        assert again.created == 0
        assert again.skipped == 1
        assert len(await _executions(harness.session, rule.rule_id)) == 1

    @pytest.mark.asyncio
    async def test_finished_execution_blocks_new_one(self, harness, make_rule, make_execution):
        """A completed or failed execution still counts for its occasion."""
        rule = await make_rule()
        await make_execution(rule, S.COMPLETED, occasion_date=date(2026, 11, 1))

        result = await harness.evaluator.evaluate(AS_OF)

        assert result.created == 0
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_cancelled_execution_allows_new_one(self, harness, make_rule, make_execution):
        rule = await make_rule()
        await make_execution(rule, S.CANCELLED, occasion_date=date(2026, 11, 1))

        result = await harness.evaluator.evaluate(AS_OF)

        assert result.created == 1

    @pytest.mark.asyncio
    async def test_christmas_occasion_key(self, harness, make_rule):
        rule = await make_rule(date_type="christmas", occasion_anchor_date=None)

        await harness.evaluator.evaluate(date(2026, 12, 20))

        executions = await _executions(harness.session, rule.rule_id)
        assert executions[0].occasion_key == "christmas:2026-12-25"

    @pytest.mark.asyncio
    async def test_next_year_occasion_is_a_new_key(self, harness, make_rule, make_execution):
        rule = await make_rule()
        await make_execution(rule, S.COMPLETED, occasion_date=date(2025, 11, 1))

        result = await harness.evaluator.evaluate(AS_OF)

        assert result.created == 1

    @pytest.mark.asyncio
    async def test_trigger_does_not_select_products(self, harness, make_rule):
        await make_rule()

        await harness.evaluator.evaluate(AS_OF)

        assert harness.selector.calls == []


class TestResolveDuplicates:
    """Tests for cancelling concurrent duplicate executions."""

    @pytest.mark.asyncio
    async def test_newest_live_execution_survives(self, harness, make_rule, make_execution):
        rule = await make_rule()
        created = datetime(2026, 10, 28, 9, 0, tzinfo=UTC)
        older = await make_execution(rule, created_at=created)
        newer = await make_execution(rule, created_at=created + timedelta(seconds=1))

        cancelled = await harness.evaluator.resolve_duplicates(
            rule.rule_id, "birthday:2026-11-01"
        )

        assert cancelled == 1
        assert (await harness.load(older)).status == S.CANCELLED.value
        assert (await harness.load(newer)).status == S.PENDING.value
        assert str(newer) in (await harness.load(older)).error_message

    @pytest.mark.asyncio
    async def test_terminal_executions_are_left_alone(self, harness, make_rule, make_execution):
        rule = await make_rule()
        done = await make_execution(rule, S.COMPLETED)
        live = await make_execution(rule)

        cancelled = await harness.evaluator.resolve_duplicates(
            rule.rule_id, "birthday:2026-11-01"
        )

        assert cancelled == 0
        assert (await harness.load(done)).status == S.COMPLETED.value
        assert (await harness.load(live)).status == S.PENDING.value


class TestTriggerRule:
    """Tests for manual triggers."""

    @pytest.mark.asyncio
    async def test_creates_execution_for_next_occasion(self, harness, make_rule):
        rule = await make_rule()

        data = await harness.evaluator.trigger_rule(rule.rule_id, date(2026, 3, 1))

        assert data.status is S.PENDING
        assert data.occasion_date == date(2026, 11, 1)

    @pytest.mark.asyncio
    async def test_returns_live_execution(self, harness, make_rule, make_execution):
        rule = await make_rule()
        existing = await make_execution(rule, S.PENDING_APPROVAL)

        data = await harness.evaluator.trigger_rule(rule.rule_id, AS_OF)

        assert data.execution_id == existing
        assert len(await _executions(harness.session, rule.rule_id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_rule(self, harness):
        with pytest.raises(RuleNotFoundError):
            await harness.evaluator.trigger_rule(uuid4(), AS_OF)

    @pytest.mark.asyncio
    async def test_inactive_rule(self, harness, make_rule):
        rule = await make_rule()
        await harness.rules.deactivate_rule(rule.rule_id)

        with pytest.raises(InvalidRuleError):
            await harness.evaluator.trigger_rule(rule.rule_id, AS_OF)

    @pytest.mark.asyncio
    async def test_past_one_off_occasion(self, harness, make_rule):
        rule = await make_rule(
            date_type="graduation",
            occasion_anchor_date=None,
            scheduled_date=date(2026, 6, 1),
        )

        with pytest.raises(InvalidRuleError):
            await harness.evaluator.trigger_rule(rule.rule_id, AS_OF)


class TestUpcomingNotifications:
    """Tests for occasion reminders."""

    @pytest.mark.asyncio
    async def test_reminds_on_configured_offsets(self, harness, make_rule):
        await make_rule()

        assert await harness.evaluator.upcoming_notifications(date(2026, 10, 25)) == 1
        assert await harness.evaluator.upcoming_notifications(date(2026, 10, 26)) == 0
        assert await harness.evaluator.upcoming_notifications(date(2026, 10, 29)) == 1

        events = await harness.events()
        assert events == [NotificationEvent.OCCASION_UPCOMING] * 2

    @pytest.mark.asyncio
    async def test_disabled_reminders_are_skipped(self, harness, make_rule):
        await make_rule(notifications=NotificationPreferences(enabled=False, days_before=(7,)))

        assert await harness.evaluator.upcoming_notifications(date(2026, 10, 25)) == 0
