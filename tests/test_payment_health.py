"""
Tests for the Payment Health Monitor.
"""

from datetime import UTC, date, datetime

import pytest

from autogift.db.models import AutoGiftRule
from autogift.models.api import ExecutionStatus, PaymentHealthStatus, PaymentMethodFlag
from autogift.models.domain import PaymentMethodRecord, RuleUpdate
from autogift.services.payment_health import card_expires_at, evaluate

from conftest import OTHER_USER_ID, USER_ID

H = PaymentHealthStatus
F = PaymentMethodFlag

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def card(exp_month: int, exp_year: int, attached: bool = True) -> PaymentMethodRecord:
    return PaymentMethodRecord(
        payment_method_id="pm_x", exp_month=exp_month, exp_year=exp_year, attached=attached
    )


class TestCardExpiry:
    """Tests for card expiry boundaries."""

    def test_valid_through_end_of_month(self):
        assert card_expires_at(10, 2026) == datetime(2026, 11, 1, tzinfo=UTC)

    def test_december_rolls_into_next_year(self):
        assert card_expires_at(12, 2026) == datetime(2027, 1, 1, tzinfo=UTC)


class TestEvaluate:
    """Tests for health classification."""

    def test_valid_card(self):
        assert evaluate(card(6, 2028), [F.VALID], NOW) is H.VALID

    def test_card_expiring_this_month_is_expiring_soon(self):
        assert evaluate(card(10, 2026), [F.VALID], NOW) is H.EXPIRING_SOON

    def test_expiring_soon_window_is_configurable(self):
        """Expires 2026-12-01, 44 days out: outside 30, inside 60."""
        assert evaluate(card(11, 2026), [], NOW) is H.VALID
        assert evaluate(card(11, 2026), [], NOW, expiring_soon_days=60) is H.EXPIRING_SOON

    def test_past_expiry_is_expired(self):
        assert evaluate(card(9, 2026), [F.VALID], NOW) is H.EXPIRED

    def test_unknown_method_is_invalid(self):
        assert evaluate(None, [F.VALID], NOW) is H.INVALID

    def test_unattached_card_is_detached(self):
        assert evaluate(card(6, 2028, attached=False), [F.VALID], NOW) is H.DETACHED

    def test_sticky_flags_outrank_card_record(self):
        assert evaluate(card(6, 2028), [F.VALID, F.INVALID], NOW) is H.INVALID
        assert evaluate(card(6, 2028), [F.INVALID, F.DETACHED], NOW) is H.DETACHED
        assert evaluate(card(1, 2020), [F.INVALID], NOW) is H.INVALID


class TestSummary:
    """Tests for per-user health summaries."""

    @pytest.mark.asyncio
    async def test_groups_rules_by_method(self, harness, make_rule, now):
        first = await make_rule()
        second = await make_rule()
        await make_rule(payment_method_id="pm_new")
        await make_rule(user_id=OTHER_USER_ID)

        summary = await harness.payment_health.summary(USER_ID, now)

        by_method = {h.payment_method_id: h for h in summary}
        assert set(by_method) == {"pm_card", "pm_new"}
        card_health = by_method["pm_card"]
        assert card_health.status is H.VALID
        assert card_health.rules_count == 2
        assert set(card_health.rule_ids) == {first.rule_id, second.rule_id}
        assert card_health.brand == "visa"
        assert card_health.last_four == "4242"

    @pytest.mark.asyncio
    async def test_inactive_rules_are_not_counted(self, harness, make_rule, now):
        rule = await make_rule()
        await make_rule()
        await harness.rules.deactivate_rule(rule.rule_id)

        summary = await harness.payment_health.summary(USER_ID, now)

        assert summary[0].rules_count == 1

    @pytest.mark.asyncio
    async def test_unknown_method_reports_invalid(self, harness, make_rule, now):
        await make_rule(payment_method_id="pm_gone")

        summary = await harness.payment_health.summary(USER_ID, now)

        assert summary[0].status is H.INVALID
        assert summary[0].brand is None


class TestRefresh:
    """Tests for on-demand verification."""

    @pytest.mark.asyncio
    async def test_refresh_stamps_last_verified(self, harness, make_rule, now):
        await make_rule()

        summary = await harness.payment_health.refresh(USER_ID, now)

        assert summary[0].last_verified == now
        assert summary[0].status is H.VALID

    @pytest.mark.asyncio
    async def test_refresh_flags_detached_card(self, harness, make_rule, now):
        rule = await make_rule()
        harness.payment_methods.records["pm_card"] = PaymentMethodRecord(
            payment_method_id="pm_card", exp_month=12, exp_year=now.year + 3, attached=False
        )

        summary = await harness.payment_health.refresh(USER_ID, now)

        assert summary[0].status is H.DETACHED
        row = await harness.session.get(AutoGiftRule, rule.rule_id, populate_existing=True)
        assert row.payment_method_status == F.DETACHED.value

    @pytest.mark.asyncio
    async def test_refresh_flags_unknown_method(self, harness, make_rule, now):
        rule = await make_rule(payment_method_id="pm_gone")

        await harness.payment_health.refresh(USER_ID, now)

        row = await harness.session.get(AutoGiftRule, rule.rule_id, populate_existing=True)
        assert row.payment_method_status == F.INVALID.value


class TestMarkPaymentFailure:
    """Tests for sticky failure flags."""

    @pytest.mark.asyncio
    async def test_flags_every_rule_using_method(self, harness, make_rule):
        first = await make_rule()
        second = await make_rule()
        other = await make_rule(payment_method_id="pm_new")

        await harness.payment_health.mark_payment_failure(USER_ID, "pm_card", detached=False)
        await harness.session.commit()

        for rule_id, expected in (
            (first.rule_id, F.INVALID),
            (second.rule_id, F.INVALID),
            (other.rule_id, F.VALID),
        ):
            row = await harness.session.get(AutoGiftRule, rule_id, populate_existing=True)
            assert row.payment_method_status == expected.value

    @pytest.mark.asyncio
    async def test_detached_is_never_downgraded(self, harness, make_rule):
        rule = await make_rule()

        await harness.payment_health.mark_payment_failure(USER_ID, "pm_card", detached=True)
        await harness.payment_health.mark_payment_failure(USER_ID, "pm_card", detached=False)
        await harness.session.commit()

        row = await harness.session.get(AutoGiftRule, rule.rule_id, populate_existing=True)
        assert row.payment_method_status == F.DETACHED.value


class TestReplacePaymentMethod:
    """Tests for swapping a card across rules."""

    @pytest.mark.asyncio
    async def test_replace_clears_flag_and_repoints_rules(self, harness, make_rule, now):
        rule = await make_rule()
        await harness.payment_health.mark_payment_failure(USER_ID, "pm_card", detached=True)
        await harness.session.commit()

        updated, rearmed = await harness.payment_health.replace_payment_method(
            USER_ID, "pm_card", "pm_new", now
        )

        assert (updated, rearmed) == (1, 0)
        data = await harness.rules.get_rule(rule.rule_id)
        assert data.payment_method_id == "pm_new"
        assert data.payment_method_status is F.VALID
        assert await harness.payment_health.evaluate_method(USER_ID, "pm_new", now) is H.VALID

    @pytest.mark.asyncio
    async def test_replace_rearms_blocked_executions(
        self, harness, make_rule, make_execution, now
    ):
        rule = await make_rule()
        blocked = await make_execution(
            rule, ExecutionStatus.ORDER_FAILED, awaiting_payment_update=True
        )
        retrying = await make_execution(
            rule, ExecutionStatus.ORDER_FAILED, occasion_date=date(2027, 11, 1)
        )

        _, rearmed = await harness.payment_health.replace_payment_method(
            USER_ID, "pm_card", "pm_new", now
        )

        assert rearmed == 1
        execution = await harness.load(blocked)
        assert execution.awaiting_payment_update is False
        assert execution.next_retry_at == now
        assert (await harness.load(retrying)).next_retry_at is None

    @pytest.mark.asyncio
    async def test_rule_update_with_new_method_rearms(
        self, harness, make_rule, make_execution
    ):
        rule = await make_rule()
        blocked = await make_execution(
            rule, ExecutionStatus.ORDER_FAILED, awaiting_payment_update=True
        )

        await harness.rules.update_rule(rule.rule_id, RuleUpdate(payment_method_id="pm_new"))

        execution = await harness.load(blocked)
        assert execution.awaiting_payment_update is False
        assert execution.next_retry_at is not None
