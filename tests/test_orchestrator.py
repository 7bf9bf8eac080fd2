"""
Tests for the Execution Orchestrator.

Drives executions through selection, auto-approval, placement, retry,
timeouts and the sweep against an in-memory database and fake providers.
"""

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from autogift.db.models import AutoGiftRule, Execution, OrderAttempt
from autogift.exceptions import (
    DataIntegrityError,
    InvalidTransitionError,
    NoViableCandidatesError,
    PaymentDeclinedError,
    ProviderError,
    ProviderUnavailableError,
)
from autogift.models.api import AddressSource, ExecutionStatus, NotificationEvent
from autogift.models.domain import OrderReference, PaymentMethodRecord, RuleUpdate
from autogift.services.orchestrator import (
    EXHAUSTED_MESSAGE,
    TIMEOUTS_EXHAUSTED_MESSAGE,
    fit_to_budget,
)
from autogift.services.product_selector import NO_CANDIDATES_MESSAGE
from autogift.services.spending import SpendingLimits

from conftest import USER_ID, FakePlacer, FakeRecipients, candidate

S = ExecutionStatus


async def _attempts(session, execution_id) -> list[OrderAttempt]:
    result = await session.execute(
        select(OrderAttempt)
        .where(OrderAttempt.execution_id == execution_id)
        .order_by(OrderAttempt.attempt_number)
    )
    return list(result.scalars().all())


class TestFitToBudget:
    """Tests for candidate budget filtering."""

    def test_keeps_rank_order(self):
        """Surviving candidates keep the selector's order."""
        kept = fit_to_budget([candidate("a", 100), candidate("b", 300), candidate("c", 200)], 300)
        assert [c.product_id for c in kept] == ["a", "b", "c"]

    def test_drops_over_budget_and_unpriced(self):
        """Over-budget and zero-priced candidates are dropped."""
        kept = fit_to_budget([candidate("a", 0), candidate("b", 301), candidate("c", 300)], 300)
        assert [c.product_id for c in kept] == ["c"]

    def test_drops_repeated_products(self):
        """A product offered twice is kept once."""
        kept = fit_to_budget([candidate("a", 100), candidate("a", 90)], 300)
        assert len(kept) == 1
        assert kept[0].price_minor == 100


class TestAutoPath:
    """Tests for auto-approved executions."""

    @pytest.mark.asyncio
    async def test_auto_approved_execution_places_order(
        self, harness, make_rule, make_execution, now
    ):
        """A fully eligible rule goes straight from pending to order_placed."""
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.ORDER_PLACED
        assert data.order_id == "ord_1"
        assert data.total_amount_minor == 3000
        assert [p.product_id for p in data.selected_products] == ["p1"]
        assert data.address_source is AddressSource.RECIPIENT_PROFILE
        assert len(harness.placer.calls) == 1
        assert harness.placer.calls[0].execution_id == execution_id
        assert harness.placer.calls[0].payment_method_id == "pm_card"

        attempts = await _attempts(harness.session, execution_id)
        assert [(a.attempt_number, a.outcome) for a in attempts] == [(1, "succeeded")]
        assert await harness.events() == [NotificationEvent.ORDER_PLACED]

    @pytest.mark.asyncio
    async def test_over_budget_candidates_are_never_approved(
        self, harness, make_rule, make_execution, now
    ):
        """The top in-budget candidate wins even when a pricier one was ranked first."""
        harness.selector.candidates = [candidate("big", 9000), candidate("ok", 4000)]
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.ORDER_PLACED
        assert [p.product_id for p in data.products] == ["ok"]
        assert data.total_amount_minor <= data.budget_limit_minor

    @pytest.mark.asyncio
    async def test_uses_current_rule_budget(self, harness, make_rule, make_execution, now):
        """Selection reads the rule's budget at processing time, not trigger time."""
        harness.selector.candidates = [candidate("p7", 7000)]
        rule = await make_rule()
        execution_id = await make_execution(rule)
        await harness.rules.update_rule(rule.rule_id, RuleUpdate(budget_limit_minor=8000))

        data = await harness.orchestrator.process(execution_id, now)

        assert harness.selector.calls[0][0] == 8000
        assert data.status is S.ORDER_PLACED
        assert data.budget_limit_minor == 8000

    @pytest.mark.asyncio
    async def test_process_is_idempotent(self, harness, make_rule, make_execution, now):
        """Processing an execution twice places one order."""
        rule = await make_rule()
        execution_id = await make_execution(rule)

        first = await harness.orchestrator.process(execution_id, now)
        second = await harness.orchestrator.process(execution_id, now)

        assert first.status is S.ORDER_PLACED
        assert second.status is S.ORDER_PLACED
        assert second.version == first.version
        assert len(harness.placer.calls) == 1


class TestManualPath:
    """Tests for executions that need a human decision."""

    @pytest.mark.asyncio
    async def test_rule_without_auto_approve_waits_for_approval(
        self, harness, make_rule, make_execution, now
    ):
        """Candidates are stored and the owner is asked to approve."""
        rule = await make_rule(auto_approve=False)
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.PENDING_APPROVAL
        assert [p.product_id for p in data.products] == ["p1", "p2"]
        assert [p.rank for p in data.products] == [1, 2]
        assert not data.selected_products
        assert data.total_amount_minor == 5000
        assert harness.placer.calls == []
        assert await harness.events() == [NotificationEvent.APPROVAL_NEEDED]

    @pytest.mark.asyncio
    async def test_expired_card_forces_manual_approval(
        self, harness, make_rule, make_execution, now
    ):
        """Auto-approve never charges a card that isn't healthy."""
        harness.payment_methods.records["pm_card"] = PaymentMethodRecord(
            payment_method_id="pm_card", exp_month=1, exp_year=now.year - 1
        )
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.PENDING_APPROVAL
        assert harness.placer.calls == []
        await harness.dispatcher.drain()
        _, event, payload = harness.emitter.sent[0]
        assert event is NotificationEvent.APPROVAL_NEEDED
        assert "expired" in payload.message

    @pytest.mark.asyncio
    async def test_flagged_card_forces_manual_approval(
        self, harness, make_rule, make_execution, now
    ):
        """A sticky invalid flag blocks the auto path even if the card record looks fine."""
        rule = await make_rule()
        await harness.payment_health.mark_payment_failure(USER_ID, "pm_card", detached=False)
        await harness.session.commit()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_missing_payment_method_forces_manual_approval(
        self, harness, make_rule, make_execution, now
    ):
        rule = await make_rule(payment_method_id=None)
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_missing_address_forces_manual_approval(
        self, harness, make_rule, make_execution, now
    ):
        """Without an address on file the owner must confirm one."""
        harness.recipients.address = None
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.PENDING_APPROVAL
        assert data.address_source is AddressSource.MISSING
        assert data.address_needs_confirmation is True
        assert data.shipping_address is None

    @pytest.mark.asyncio
    async def test_invited_recipient_needs_approval(self, harness, make_rule, make_execution, now):
        """Invited recipients have no address yet."""
        rule = await make_rule(pending_recipient_email="friend@example.com")
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.PENDING_APPROVAL
        assert data.address_needs_confirmation is True

    @pytest.mark.asyncio
    async def test_spending_limit_forces_manual_approval(
        self, harness, make_rule, make_execution, now
    ):
        """Auto-approve stops once the month's committed spend would pass the limit."""
        harness.config = replace(
            harness.config, spending_limits=SpendingLimits(monthly_limit_minor=6000)
        )
        earlier = await make_rule()
        await make_execution(earlier, S.COMPLETED, total_amount_minor=4000, approved_at=now)
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.PENDING_APPROVAL
        assert harness.placer.calls == []
        await harness.dispatcher.drain()
        _, event, payload = harness.emitter.sent[0]
        assert event is NotificationEvent.APPROVAL_NEEDED
        assert payload.message == "This gift would exceed your monthly spending limit."

    @pytest.mark.asyncio
    async def test_spend_under_limit_stays_automatic(
        self, harness, make_rule, make_execution, now
    ):
        harness.config = replace(
            harness.config, spending_limits=SpendingLimits(monthly_limit_minor=7000)
        )
        earlier = await make_rule()
        await make_execution(earlier, S.COMPLETED, total_amount_minor=4000, approved_at=now)
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.ORDER_PLACED


class TestSelectionFailure:
    """Tests for selections that produce nothing."""

    @pytest.mark.asyncio
    async def test_no_viable_candidates_fails_execution(
        self, harness, make_rule, make_execution, now
    ):
        harness.selector.errors.append(NoViableCandidatesError(5000))
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.FAILED
        assert data.error_message == NO_CANDIDATES_MESSAGE
        assert await harness.events() == [NotificationEvent.EXECUTION_FAILED]

    @pytest.mark.asyncio
    async def test_all_candidates_over_budget_fails_execution(
        self, harness, make_rule, make_execution, now
    ):
        harness.selector.candidates = [candidate("lux", 50000)]
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.FAILED
        assert data.products == ()

    @pytest.mark.asyncio
    async def test_selector_outage_leaves_execution_processing(
        self, harness, make_rule, make_execution, now
    ):
        """A provider error propagates; the stale sweep picks the execution up later."""
        harness.selector.errors.append(ProviderError("product_selector", "timeout"))
        rule = await make_rule()
        execution_id = await make_execution(rule)

        with pytest.raises(ProviderError):
            await harness.orchestrator.process(execution_id, now)

        execution = await harness.load(execution_id)
        assert execution.status == S.PROCESSING.value

    @pytest.mark.asyncio
    async def test_stale_processing_is_reclaimed(self, harness, make_rule, make_execution, now):
        """A processing execution is only re-run once it has gone stale."""
        rule = await make_rule()
        execution_id = await make_execution(rule, S.PROCESSING)

        fresh = await harness.orchestrator.process(execution_id, now)
        assert fresh.status is S.PROCESSING

        later = now + timedelta(minutes=16)
        reclaimed = await harness.orchestrator.process(execution_id, later)
        assert reclaimed.status is S.ORDER_PLACED


class TestPlacementFailures:
    """Tests for order placement errors, retries and exhaustion."""

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_backoff_retry(
        self, harness, make_rule, make_execution, now
    ):
        harness.placer.outcomes = [ProviderUnavailableError("fulfillment down")]
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.ORDER_FAILED
        assert data.retry_count == 1
        assert data.next_retry_at == now + timedelta(seconds=600)
        assert data.error_message == "fulfillment down"
        assert await harness.events() == [NotificationEvent.ORDER_RETRYING]

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff_then_places(
        self, harness, make_rule, make_execution, now
    ):
        harness.placer.outcomes = [ProviderUnavailableError("fulfillment down")]
        rule = await make_rule()
        execution_id = await make_execution(rule)
        await harness.orchestrator.process(execution_id, now)

        early = await harness.orchestrator.retry(execution_id, now + timedelta(seconds=599))
        assert early.status is S.ORDER_FAILED
        assert len(harness.placer.calls) == 1

        placed = await harness.orchestrator.retry(execution_id, now + timedelta(seconds=600))
        assert placed.status is S.ORDER_PLACED
        assert placed.order_id == "ord_2"
        # Replays the same approved selection under the same idempotency key
        assert harness.placer.calls[1].product_ids == harness.placer.calls[0].product_ids
        assert harness.placer.calls[1].execution_id == execution_id

        attempts = await _attempts(harness.session, execution_id)
        assert [(a.attempt_number, a.outcome) for a in attempts] == [
            (1, "failed"),
            (2, "succeeded"),
        ]

    @pytest.mark.asyncio
    async def test_retries_terminate_after_max_attempts(
        self, harness, make_rule, make_execution, now
    ):
        """Three failures move the execution to failed and ask for a human."""
        harness.placer.outcomes = [ProviderUnavailableError(f"down {i}") for i in range(5)]
        rule = await make_rule()
        execution_id = await make_execution(rule)
        orchestrator = harness.orchestrator

        data = await orchestrator.process(execution_id, now)
        clock = now
        while data.status is S.ORDER_FAILED:
            assert data.next_retry_at is not None
            clock = data.next_retry_at
            data = await orchestrator.retry(execution_id, clock)

        assert data.status is S.FAILED
        assert data.retry_count == 3
        assert data.error_message is not None
        assert data.error_message.startswith(EXHAUSTED_MESSAGE)
        assert "down 2" in data.error_message
        assert len(harness.placer.calls) == 3

        events = await harness.events()
        assert events[-1] is NotificationEvent.MANUAL_INTERVENTION_REQUIRED

        again = await orchestrator.retry(execution_id, clock + timedelta(days=30), force=True)
        assert again.status is S.FAILED
        assert len(harness.placer.calls) == 3

    @pytest.mark.asyncio
    async def test_manual_retry_skips_backoff(self, harness, make_rule, make_execution, now):
        harness.placer.outcomes = [ProviderUnavailableError("fulfillment down")]
        rule = await make_rule()
        execution_id = await make_execution(rule)
        await harness.orchestrator.process(execution_id, now)

        data = await harness.orchestrator.retry(execution_id, now, force=True)

        assert data.status is S.ORDER_PLACED

    @pytest.mark.asyncio
    async def test_payment_decline_blocks_until_method_replaced(
        self, harness, make_rule, make_execution, now
    ):
        """A declined card parks the execution; replacing the card re-arms it."""
        harness.placer.outcomes = [PaymentDeclinedError("card declined")]
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.ORDER_FAILED
        assert data.awaiting_payment_update is True
        assert data.next_retry_at is None
        assert await harness.events() == [NotificationEvent.PAYMENT_METHOD_INVALID]

        row = await harness.session.get(AutoGiftRule, rule.rule_id, populate_existing=True)
        assert row.payment_method_status == "invalid"

        # Neither the backoff nor the sweep touches it
        blocked = await harness.orchestrator.retry(execution_id, now + timedelta(days=2))
        assert blocked.status is S.ORDER_FAILED
        await harness.orchestrator.sweep(now + timedelta(days=2))
        assert len(harness.placer.calls) == 1

        updated, rearmed = await harness.payment_health.replace_payment_method(
            USER_ID, "pm_card", "pm_new", now
        )
        assert (updated, rearmed) == (1, 1)

        data = await harness.orchestrator.retry(execution_id, now)
        assert data.status is S.ORDER_PLACED
        assert harness.placer.calls[-1].payment_method_id == "pm_new"

    @pytest.mark.asyncio
    async def test_detached_card_sets_detached_flag(
        self, harness, make_rule, make_execution, now
    ):
        harness.placer.outcomes = [PaymentDeclinedError("detached", detached=True)]
        rule = await make_rule()
        execution_id = await make_execution(rule)

        await harness.orchestrator.process(execution_id, now)

        row = await harness.session.get(AutoGiftRule, rule.rule_id, populate_existing=True)
        assert row.payment_method_status == "detached"


class TestPlacementTimeout:
    """Tests for placement calls with unknown outcome."""

    @pytest.mark.asyncio
    async def test_timeout_keeps_execution_approved(
        self, harness, make_rule, make_execution, now
    ):
        """A timeout releases the lease and schedules reconciliation without burning a retry."""
        harness.placer.delay = 5.0
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.APPROVED
        assert data.retry_count == 0
        assert data.next_retry_at == now + timedelta(seconds=600)
        execution = await harness.load(execution_id)
        assert execution.placement_claimed_at is None

        attempts = await _attempts(harness.session, execution_id)
        assert [a.outcome for a in attempts] == ["timeout"]

    @pytest.mark.asyncio
    async def test_placer_timeout_error_is_unknown_outcome(
        self, harness, make_rule, make_execution, now
    ):
        """A read timeout surfaced by the placer is reconciled like a local timeout."""
        harness.placer.outcomes = [TimeoutError("read timed out")]
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.APPROVED
        assert data.retry_count == 0
        assert data.timeout_count == 1

    @pytest.mark.asyncio
    async def test_sweep_reconciles_timed_out_placement(
        self, harness, make_rule, make_execution, now
    ):
        """The sweep re-enters placement with the same idempotency key once due."""
        harness.placer.delay = 5.0
        rule = await make_rule()
        execution_id = await make_execution(rule)
        await harness.orchestrator.process(execution_id, now)

        harness.placer.delay = 0.0
        not_due = await harness.orchestrator.sweep(now + timedelta(seconds=60))
        assert not_due.processed == 0
        assert len(harness.placer.calls) == 1

        due = await harness.orchestrator.sweep(now + timedelta(seconds=601))
        assert due.placed == 1
        assert harness.placer.calls[1].execution_id == execution_id
        data = await harness.orchestrator.confirm_fulfillment(execution_id, "ord_2")
        assert data.status is S.COMPLETED

    @pytest.mark.asyncio
    async def test_repeated_timeouts_stop_reconciliation(
        self, harness, make_rule, make_execution, now
    ):
        """Timeouts back off by count and stop at max attempts, leaving the execution approved."""
        harness.placer.delay = 5.0
        rule = await make_rule()
        execution_id = await make_execution(rule)

        first = await harness.orchestrator.process(execution_id, now)
        assert first.timeout_count == 1
        assert first.next_retry_at == now + timedelta(seconds=600)

        second_at = now + timedelta(seconds=601)
        await harness.orchestrator.sweep(second_at)
        second = await harness.load(execution_id)
        assert second.timeout_count == 2
        assert second.next_retry_at == second_at + timedelta(seconds=3600)

        await harness.orchestrator.sweep(second_at + timedelta(seconds=3601))
        execution = await harness.load(execution_id)
        assert execution.status == S.APPROVED.value
        assert execution.timeout_count == 3
        assert execution.retry_count == 0
        assert execution.next_retry_at is None
        assert execution.error_message == TIMEOUTS_EXHAUSTED_MESSAGE
        assert NotificationEvent.MANUAL_INTERVENTION_REQUIRED in await harness.events()

        later = await harness.orchestrator.sweep(now + timedelta(days=30))
        assert later.processed == 0
        assert len(harness.placer.calls) == 3
        assert len(await _attempts(harness.session, execution_id)) == 3

    @pytest.mark.asyncio
    async def test_held_lease_blocks_second_placement(
        self, harness, make_rule, make_execution, now
    ):
        """At most one Order Placer call is in flight per execution."""
        rule = await make_rule()
        execution_id = await make_execution(
            rule,
            S.APPROVED,
            placement_claimed_at=now,
            shipping_address={"name": "Sam", "line1": "1 A St", "city": "X", "postal_code": "1"},
        )

        data = await harness.orchestrator.place_order(execution_id, now + timedelta(seconds=10))

        assert data.status is S.APPROVED
        assert harness.placer.calls == []


class TestOrphanOrder:
    """Tests for orders that succeed after the execution moved on."""

    @pytest.mark.asyncio
    async def test_order_placed_after_cancellation_is_recorded(
        self, harness, make_rule, make_execution, now
    ):
        session = harness.session

        class CancellingPlacer(FakePlacer):
            async def place(self, execution_id, products, shipping_address, payment_method_id):
                await session.execute(
                    update(Execution)
                    .where(Execution.id == execution_id)
                    .values(status=S.CANCELLED.value, version=Execution.version + 1)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return await super().place(
                    execution_id, products, shipping_address, payment_method_id
                )

        harness.placer = CancellingPlacer()
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.status is S.CANCELLED
        assert data.order_id == "ord_1"
        assert await harness.events() == [NotificationEvent.MANUAL_INTERVENTION_REQUIRED]
        attempts = await _attempts(session, execution_id)
        assert [a.outcome for a in attempts] == ["succeeded"]


class TestFulfillment:
    """Tests for fulfilment confirmation."""

    @pytest.mark.asyncio
    async def test_confirmation_completes_execution(self, harness, make_rule, make_execution, now):
        rule = await make_rule()
        execution_id = await make_execution(rule)
        await harness.orchestrator.process(execution_id, now)

        data = await harness.orchestrator.confirm_fulfillment(execution_id, "ord_1", now)
        again = await harness.orchestrator.confirm_fulfillment(execution_id, "ord_1", now)

        assert data.status is S.COMPLETED
        assert again.status is S.COMPLETED
        events = await harness.events()
        assert events.count(NotificationEvent.EXECUTION_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_mismatched_order_id_rejected(self, harness, make_rule, make_execution, now):
        rule = await make_rule()
        execution_id = await make_execution(rule)
        await harness.orchestrator.process(execution_id, now)

        with pytest.raises(DataIntegrityError):
            await harness.orchestrator.confirm_fulfillment(execution_id, "ord_other", now)

    @pytest.mark.asyncio
    async def test_confirmation_before_placement_rejected(
        self, harness, make_rule, make_execution, now
    ):
        rule = await make_rule(auto_approve=False)
        execution_id = await make_execution(rule)
        await harness.orchestrator.process(execution_id, now)

        with pytest.raises(InvalidTransitionError):
            await harness.orchestrator.confirm_fulfillment(execution_id, "ord_1", now)


class TestSweep:
    """Tests for the scheduler sweep."""

    @pytest.mark.asyncio
    async def test_sweep_processes_pending_executions(
        self, harness, make_rule, make_execution, now
    ):
        auto_rule = await make_rule()
        manual_rule = await make_rule(auto_approve=False)
        await make_execution(auto_rule)
        await make_execution(manual_rule)

        result = await harness.orchestrator.sweep(now)

        assert result.processed == 2
        assert result.placed == 1
        assert result.awaiting_approval == 1
        assert result.errors == 0

    @pytest.mark.asyncio
    async def test_sweep_isolates_failures(self, harness, make_rule, make_execution, now):
        """One execution's provider error doesn't stop the rest of the batch."""
        harness.selector.errors.append(ProviderError("product_selector", "boom"))
        first = await make_rule()
        second = await make_rule()
        await make_execution(first)
        await make_execution(second)

        result = await harness.orchestrator.sweep(now)

        assert result.processed == 2
        assert result.errors == 1
        assert result.placed == 1

    @pytest.mark.asyncio
    async def test_sweep_retries_due_failures(self, harness, make_rule, make_execution, now):
        harness.placer.outcomes = [ProviderUnavailableError("down")]
        rule = await make_rule()
        execution_id = await make_execution(rule)
        await harness.orchestrator.process(execution_id, now)

        result = await harness.orchestrator.sweep(now + timedelta(hours=1))

        assert result.placed == 1
        execution = await harness.load(execution_id)
        assert execution.status == S.ORDER_PLACED.value

    @pytest.mark.asyncio
    async def test_sweep_respects_limit(self, harness, make_rule, make_execution, now):
        harness.recipients = FakeRecipients(address=None)
        for _ in range(3):
            await make_execution(await make_rule())

        result = await harness.orchestrator.sweep(now, limit=2)

        assert result.processed == 2


class TestConcurrentDrivers:
    """Tests for two drivers racing on one execution."""

    @pytest.mark.asyncio
    async def test_second_driver_sees_advanced_state(
        self, harness, session_factory, make_rule, make_execution, now
    ):
        """A driver with its own session finds the work done and does nothing."""
        rule = await make_rule()
        execution_id = await make_execution(rule)
        await harness.orchestrator.process(execution_id, now)

        async with session_factory() as other:
            harness_b = type(harness)(
                session=other,
                selector=harness.selector,
                recipients=harness.recipients,
                placer=harness.placer,
                payment_methods=harness.payment_methods,
                emitter=harness.emitter,
                dispatcher=harness.dispatcher,
                config=harness.config,
            )
            data = await harness_b.orchestrator.process(execution_id, now)

        assert data.status is S.ORDER_PLACED
        assert len(harness.placer.calls) == 1

    @pytest.mark.asyncio
    async def test_placer_reference_status_is_not_required(
        self, harness, make_rule, make_execution, now
    ):
        harness.placer.outcomes = [OrderReference("ord_custom", status="accepted")]
        rule = await make_rule()
        execution_id = await make_execution(rule)

        data = await harness.orchestrator.process(execution_id, now)

        assert data.order_id == "ord_custom"
