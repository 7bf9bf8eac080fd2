"""
Execution Orchestrator - drives an execution from pending to a terminal state.

NO DICTIONARIES - All data uses strongly typed models.

Each step reloads the execution, checks its status, and advances it with a
compare-and-set. Every step is safe to re-run: a step that finds the
execution already past it returns the current snapshot without side effects.

Order placement is guarded by a lease (placement_claimed_at) so at most one
Order Placer call is in flight per execution. Timeouts leave the execution
approved; the sweep re-enters placement once the lease and backoff allow,
until timeouts reach the attempt limit.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.config import Settings
from autogift.db.models import AutoGiftRule, Execution, ExecutionProduct, OrderAttempt
from autogift.exceptions import (
    AddressInvalidError,
    ConcurrencyError,
    DataIntegrityError,
    GiftingError,
    NoViableCandidatesError,
    OrderPlacementError,
    PaymentDeclinedError,
    RuleNotFoundError,
    SpendingLimitExceededError,
)
from autogift.models.api import (
    AddressSource,
    ExecutionStatus,
    NotificationEvent,
    OrderAttemptOutcome,
    PaymentHealthStatus,
)
from autogift.models.domain import (
    ExecutionData,
    ProductCandidate,
    RuleData,
    ShippingAddress,
    SweepResult,
)
from autogift.observability.logging import get_logger, log_context
from autogift.observability.metrics import metrics
from autogift.observability.tracing import trace_operation
from autogift.services.executions import (
    address_to_json,
    execution_to_data,
    load_execution,
)
from autogift.services.notifications import NotificationDispatcher
from autogift.services.payment_health import PaymentHealthService
from autogift.services.product_selector import NO_CANDIDATES_MESSAGE
from autogift.services.providers import (
    NotificationPayload,
    OrderPlacer,
    ProductSelector,
    RecipientDirectory,
)
from autogift.services.recipients import parse_shipping_address
from autogift.services.retry_policy import RetryPolicy
from autogift.services.rules import rule_to_data
from autogift.services.spending import SpendingLimits, check_spending_limits
from autogift.services.state_machine import compare_and_set, transition

logger = get_logger(__name__)

S = ExecutionStatus

EXHAUSTED_MESSAGE = "Max retry attempts exceeded. Please try again manually."
TIMED_OUT_MESSAGE = "Order placement timed out; will reconcile"
TIMEOUTS_EXHAUSTED_MESSAGE = (
    "Order placement keeps timing out. Check with the retailer whether the order went through."
)


@dataclass(frozen=True)
class OrchestratorConfig:
    """Timing knobs and spending limits for placement and the sweep."""

    retry_policy: RetryPolicy
    placement_timeout_seconds: float = 30.0
    placement_lease_seconds: int = 300
    processing_stale_after_seconds: int = 900
    sweep_batch_size: int = 10
    spending_limits: SpendingLimits = field(default_factory=SpendingLimits)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            retry_policy=RetryPolicy.from_settings(settings),
            placement_timeout_seconds=settings.order_placement_timeout_seconds,
            placement_lease_seconds=settings.order_placement_lease_seconds,
            processing_stale_after_seconds=settings.processing_stale_after_seconds,
            sweep_batch_size=settings.sweep_batch_size,
            spending_limits=SpendingLimits.from_settings(settings),
        )


def fit_to_budget(
    candidates: list[ProductCandidate], budget_minor: int
) -> list[ProductCandidate]:
    """Drop unpriced, over-budget and repeated candidates, keeping rank order."""
    seen: set[str] = set()
    kept: list[ProductCandidate] = []
    for candidate in candidates:
        if candidate.product_id in seen:
            continue
        if candidate.price_minor <= 0 or candidate.price_minor > budget_minor:
            continue
        seen.add(candidate.product_id)
        kept.append(candidate)
    return kept


class ExecutionOrchestrator:
    """
    Runs the execution lifecycle against the capability protocols.

    Collaborators are injected so tests can drive every path with fakes.
    """

    def __init__(
        self,
        session: AsyncSession,
        selector: ProductSelector,
        recipients: RecipientDirectory,
        placer: OrderPlacer,
        payment_health: PaymentHealthService,
        notifier: NotificationDispatcher,
        config: OrchestratorConfig,
    ) -> None:
        self.session = session
        self.selector = selector
        self.recipients = recipients
        self.placer = placer
        self.payment_health = payment_health
        self.notifier = notifier
        self.config = config

    # ========================================================================
    # Selection: pending -> processing -> pending_approval | approved | failed
    # ========================================================================

    async def process(self, execution_id: UUID, now: datetime | None = None) -> ExecutionData:
        """
        Claim a pending (or stale processing) execution and select products.

        The auto path requires auto_approve, a valid payment method, a
        shipping address, a top candidate within budget and room under the
        user's spending limits. Anything short of that parks the execution in
        pending_approval.
        """
        now = now or datetime.now(UTC)
        execution = await load_execution(self.session, execution_id)

        if execution.status == S.PENDING.value:
            await transition(self.session, execution, S.PROCESSING)
            await self.session.commit()
        elif execution.status == S.PROCESSING.value and self._is_stale(execution, now):
            # Reclaim: the version bump fences off the previous owner
            await compare_and_set(self.session, execution)
            await self.session.commit()
            logger.warning("stale_processing_reclaimed", execution_id=str(execution_id))
        else:
            return execution_to_data(execution)

        with log_context(execution_id=execution_id, rule_id=execution.rule_id):
            with trace_operation("execution_process", execution_id=str(execution_id)):
                return await self._select_and_route(execution, now)

    async def _select_and_route(self, execution: Execution, now: datetime) -> ExecutionData:
        rule = await self._load_rule(execution.rule_id)
        budget = rule.budget_limit_minor
        recipient = await self.recipients.resolve(rule)

        try:
            raw = await self.selector.select(
                recipient,
                budget,
                rule.currency,
                rule.date_type,
                rule.criteria,
            )
        except NoViableCandidatesError as exc:
            logger.info("no_viable_candidates", budget_minor=exc.budget_minor)
            return await self._fail_selection(execution, rule)

        candidates = fit_to_budget(raw, budget)
        if not candidates:
            return await self._fail_selection(execution, rule)

        for rank, candidate in enumerate(candidates, start=1):
            execution.products.append(
                ExecutionProduct(
                    rank=rank,
                    product_id=candidate.product_id,
                    title=candidate.title,
                    price_minor=candidate.price_minor,
                    currency=candidate.currency,
                    image_url=candidate.image_url,
                    retailer=candidate.retailer,
                    rating=candidate.rating,
                    review_count=candidate.review_count,
                )
            )

        address = recipient.shipping_address
        values = {
            "budget_limit_minor": budget,
            "shipping_address": address_to_json(address) if address else None,
            "address_source": (
                AddressSource.RECIPIENT_PROFILE.value if address else AddressSource.MISSING.value
            ),
            "address_needs_confirmation": address is None,
        }

        top = execution.products[0]
        reason = await self._manual_reason(rule, address, top.price_minor, now)
        if reason is None:
            top.is_selected = True
            await transition(
                self.session,
                execution,
                S.APPROVED,
                total_amount_minor=top.price_minor,
                approved_at=now,
                **values,
            )
            await self.session.commit()
            metrics.approved_amount_minor.observe(top.price_minor)
            logger.info("execution_auto_approved", total_amount_minor=top.price_minor)
            return await self.place_order(execution.id, now)

        await transition(
            self.session,
            execution,
            S.PENDING_APPROVAL,
            total_amount_minor=sum(c.price_minor for c in candidates),
            **values,
        )
        await self.session.commit()
        logger.info("execution_awaiting_approval", reason=reason)
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.APPROVAL_NEEDED,
            NotificationPayload(
                message=reason,
                rule_id=execution.rule_id,
                execution_id=execution.id,
                occasion_date=execution.occasion_date,
                total_amount_minor=execution.total_amount_minor,
            ),
        )
        return execution_to_data(execution)

    async def _manual_reason(
        self,
        rule: RuleData,
        address: ShippingAddress | None,
        amount_minor: int,
        now: datetime,
    ) -> str | None:
        """Why this execution needs a human, or None for the auto path."""
        if not rule.auto_approve:
            return "Gift selection is ready for your approval."
        if rule.payment_method_id is None:
            return "Add a payment method to send this gift."
        health = await self.payment_health.evaluate_method(
            rule.user_id, rule.payment_method_id, now
        )
        if health is not PaymentHealthStatus.VALID:
            logger.warning(
                "auto_approve_blocked_by_payment_health",
                payment_method_id=rule.payment_method_id,
                health=health.value,
            )
            return f"Payment method is {health.value}. Review and approve this gift."
        if address is None:
            return "Confirm a shipping address to send this gift."
        try:
            await check_spending_limits(
                self.session,
                self.config.spending_limits,
                rule.user_id,
                rule.currency,
                amount_minor,
                now,
            )
        except SpendingLimitExceededError as exc:
            return f"This gift would exceed your {exc.period} spending limit."
        return None

    async def _fail_selection(self, execution: Execution, rule: RuleData) -> ExecutionData:
        await transition(self.session, execution, S.FAILED, error_message=NO_CANDIDATES_MESSAGE)
        await self.session.commit()
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.EXECUTION_FAILED,
            NotificationPayload(
                message=NO_CANDIDATES_MESSAGE,
                rule_id=rule.rule_id,
                execution_id=execution.id,
                occasion_date=execution.occasion_date,
            ),
        )
        return execution_to_data(execution)

    # ========================================================================
    # Placement: approved -> order_placed | order_failed (-> failed)
    # ========================================================================

    async def place_order(self, execution_id: UUID, now: datetime | None = None) -> ExecutionData:
        """
        Call the Order Placer once under the placement lease.

        A held lease, or any status other than approved, is a no-op.
        """
        now = now or datetime.now(UTC)
        execution = await load_execution(self.session, execution_id)
        if execution.status != S.APPROVED.value or self._lease_held(execution, now):
            return execution_to_data(execution)

        await compare_and_set(self.session, execution, placement_claimed_at=now)
        await self.session.commit()

        with log_context(execution_id=execution_id, rule_id=execution.rule_id):
            with trace_operation("order_placement", execution_id=str(execution_id)) as span:
                data = await self._attempt_placement(execution, now)
                span.set_attribute("execution.status", data.status.value)
                return data

    async def _attempt_placement(self, execution: Execution, now: datetime) -> ExecutionData:
        execution_id = execution.id
        rule = await self._load_rule(execution.rule_id)
        snapshot = execution_to_data(execution)
        address = parse_shipping_address(execution.shipping_address)
        attempt_number = await self._next_attempt_number(execution.id)

        if rule.payment_method_id is None:
            return await self._payment_failed(
                execution, rule, attempt_number, PaymentDeclinedError("No payment method on rule")
            )
        if address is None:
            return await self._placement_failed(
                execution, rule, attempt_number, AddressInvalidError("No shipping address"), now
            )

        started = time.perf_counter()
        try:
            reference = await asyncio.wait_for(
                self.placer.place(
                    execution.id,
                    snapshot.selected_products,
                    address,
                    rule.payment_method_id,
                ),
                timeout=self.config.placement_timeout_seconds,
            )
        except TimeoutError:
            metrics.record_order_attempt(
                OrderAttemptOutcome.TIMEOUT.value, time.perf_counter() - started
            )
            return await self._placement_timed_out(execution, rule, attempt_number, now)
        except PaymentDeclinedError as exc:
            metrics.record_order_attempt(
                OrderAttemptOutcome.FAILED.value, time.perf_counter() - started, type(exc).__name__
            )
            return await self._payment_failed(execution, rule, attempt_number, exc)
        except OrderPlacementError as exc:
            metrics.record_order_attempt(
                OrderAttemptOutcome.FAILED.value, time.perf_counter() - started, type(exc).__name__
            )
            return await self._placement_failed(execution, rule, attempt_number, exc, now)

        metrics.record_order_attempt(
            OrderAttemptOutcome.SUCCEEDED.value, time.perf_counter() - started
        )
        self._record_attempt(
            execution,
            rule,
            attempt_number,
            OrderAttemptOutcome.SUCCEEDED,
            order_id=reference.order_id,
        )
        try:
            await transition(
                self.session,
                execution,
                S.ORDER_PLACED,
                order_id=reference.order_id,
                placement_claimed_at=None,
                next_retry_at=None,
                error_message=None,
            )
        except ConcurrencyError:
            await self.session.rollback()
            return await self._record_orphan_order(
                execution_id, rule, attempt_number, reference.order_id
            )

        await self.session.commit()
        logger.info("order_placed", order_id=reference.order_id, attempt_number=attempt_number)
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.ORDER_PLACED,
            NotificationPayload(
                message="Your gift order has been placed.",
                rule_id=execution.rule_id,
                execution_id=execution.id,
                occasion_date=execution.occasion_date,
                total_amount_minor=execution.total_amount_minor,
                order_id=reference.order_id,
            ),
        )
        return execution_to_data(execution)

    async def _placement_timed_out(
        self, execution: Execution, rule: RuleData, attempt_number: int, now: datetime
    ) -> ExecutionData:
        """
        Outcome unknown: stay approved and let reconciliation retry the same key.

        Timeouts back off by their own count. Once they reach max_attempts the
        sweep stops reconciling and the user is asked to step in; the execution
        stays approved because the order may still have gone through.
        """
        self._record_attempt(
            execution,
            rule,
            attempt_number,
            OrderAttemptOutcome.TIMEOUT,
            error_type="TimeoutError",
            error_message="Order placement timed out",
        )
        policy = self.config.retry_policy
        timeouts = execution.timeout_count + 1
        stuck = policy.is_exhausted(timeouts)
        await compare_and_set(
            self.session,
            execution,
            timeout_count=timeouts,
            placement_claimed_at=None,
            next_retry_at=None if stuck else policy.next_retry_at(timeouts, now),
            error_message=TIMEOUTS_EXHAUSTED_MESSAGE if stuck else TIMED_OUT_MESSAGE,
        )
        await self.session.commit()

        if not stuck:
            logger.warning(
                "order_placement_timed_out",
                attempt_number=attempt_number,
                timeout_count=timeouts,
                next_retry_at=execution.next_retry_at.isoformat(),
            )
            return execution_to_data(execution)

        logger.error("order_placement_timeouts_exhausted", timeout_count=timeouts)
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.MANUAL_INTERVENTION_REQUIRED,
            NotificationPayload(
                message=TIMEOUTS_EXHAUSTED_MESSAGE,
                rule_id=execution.rule_id,
                execution_id=execution.id,
                retry_count=execution.retry_count,
            ),
        )
        return execution_to_data(execution)

    async def _payment_failed(
        self,
        execution: Execution,
        rule: RuleData,
        attempt_number: int,
        exc: PaymentDeclinedError,
    ) -> ExecutionData:
        """Park the execution until the user replaces the payment method."""
        self._record_attempt(
            execution,
            rule,
            attempt_number,
            OrderAttemptOutcome.FAILED,
            error_type=type(exc).__name__,
            error_message=exc.message,
        )
        retry_count = execution.retry_count + 1
        if rule.payment_method_id is not None:
            await self.payment_health.mark_payment_failure(
                rule.user_id, rule.payment_method_id, exc.detached
            )

        await transition(
            self.session,
            execution,
            S.ORDER_FAILED,
            retry_count=retry_count,
            next_retry_at=None,
            awaiting_payment_update=True,
            placement_claimed_at=None,
            error_message=exc.message,
        )
        if self.config.retry_policy.is_exhausted(retry_count):
            return await self._exhaust(execution, exc.message)

        await self.session.commit()
        logger.warning(
            "order_payment_declined",
            payment_method_id=rule.payment_method_id,
            detached=exc.detached,
            retry_count=retry_count,
        )
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.PAYMENT_METHOD_INVALID,
            NotificationPayload(
                message="Your payment method was declined. Update it to send this gift.",
                rule_id=execution.rule_id,
                execution_id=execution.id,
                payment_method_id=rule.payment_method_id,
                retry_count=retry_count,
            ),
        )
        return execution_to_data(execution)

    async def _placement_failed(
        self,
        execution: Execution,
        rule: RuleData,
        attempt_number: int,
        exc: OrderPlacementError,
        now: datetime,
    ) -> ExecutionData:
        """Schedule a backoff retry, or fail once attempts are used up."""
        self._record_attempt(
            execution,
            rule,
            attempt_number,
            OrderAttemptOutcome.FAILED,
            error_type=type(exc).__name__,
            error_message=exc.message,
        )
        retry_count = execution.retry_count + 1
        policy = self.config.retry_policy
        exhausted = policy.is_exhausted(retry_count)

        await transition(
            self.session,
            execution,
            S.ORDER_FAILED,
            retry_count=retry_count,
            next_retry_at=None if exhausted else policy.next_retry_at(retry_count, now),
            placement_claimed_at=None,
            error_message=exc.message,
        )
        if exhausted:
            return await self._exhaust(execution, exc.message)

        await self.session.commit()
        logger.warning(
            "order_placement_failed",
            error_type=type(exc).__name__,
            error=exc.message,
            retry_count=retry_count,
            next_retry_at=execution.next_retry_at.isoformat() if execution.next_retry_at else None,
        )
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.ORDER_RETRYING,
            NotificationPayload(
                message=f"Order attempt failed: {exc.message}. We'll retry automatically.",
                rule_id=execution.rule_id,
                execution_id=execution.id,
                retry_count=retry_count,
            ),
        )
        return execution_to_data(execution)

    async def _exhaust(self, execution: Execution, last_error: str) -> ExecutionData:
        """order_failed -> failed. Caller has already written order_failed."""
        message = f"{EXHAUSTED_MESSAGE} Last error: {last_error}"
        await transition(
            self.session, execution, S.FAILED, next_retry_at=None, error_message=message
        )
        await self.session.commit()
        logger.error("order_retries_exhausted", retry_count=execution.retry_count)
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.MANUAL_INTERVENTION_REQUIRED,
            NotificationPayload(
                message=message,
                rule_id=execution.rule_id,
                execution_id=execution.id,
                retry_count=execution.retry_count,
            ),
        )
        return execution_to_data(execution)

    async def _record_orphan_order(
        self, execution_id: UUID, rule: RuleData, attempt_number: int, order_id: str
    ) -> ExecutionData:
        """The order went through but the execution moved on (e.g. cancelled) meanwhile."""
        execution = await load_execution(self.session, execution_id)
        self._record_attempt(
            execution, rule, attempt_number, OrderAttemptOutcome.SUCCEEDED, order_id=order_id
        )
        await compare_and_set(
            self.session,
            execution,
            order_id=order_id,
            placement_claimed_at=None,
            error_message=f"Order {order_id} placed after status changed to {execution.status}",
        )
        await self.session.commit()
        logger.error("order_placed_on_moved_execution", order_id=order_id, status=execution.status)
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.MANUAL_INTERVENTION_REQUIRED,
            NotificationPayload(
                message=f"Order {order_id} was placed after this gift was {execution.status}.",
                rule_id=execution.rule_id,
                execution_id=execution.id,
                order_id=order_id,
            ),
        )
        return execution_to_data(execution)

    # ========================================================================
    # Retry: order_failed -> approved -> placement
    # ========================================================================

    async def retry(
        self, execution_id: UUID, now: datetime | None = None, force: bool = False
    ) -> ExecutionData:
        """
        Replay placement with the approved product set.

        Without force, only runs once next_retry_at has passed. Executions
        waiting on a payment method update never retry here.
        """
        now = now or datetime.now(UTC)
        execution = await load_execution(self.session, execution_id)
        if execution.status != S.ORDER_FAILED.value or execution.awaiting_payment_update:
            return execution_to_data(execution)
        if not force and (execution.next_retry_at is None or execution.next_retry_at > now):
            return execution_to_data(execution)

        if self.config.retry_policy.is_exhausted(execution.retry_count):
            with log_context(execution_id=execution_id):
                return await self._exhaust(execution, execution.error_message or "unknown")

        await transition(self.session, execution, S.APPROVED, next_retry_at=None)
        await self.session.commit()
        logger.info(
            "order_retry_started",
            execution_id=str(execution_id),
            retry_count=execution.retry_count,
        )
        return await self.place_order(execution_id, now)

    # ========================================================================
    # Fulfilment: order_placed -> completed
    # ========================================================================

    async def confirm_fulfillment(
        self, execution_id: UUID, order_id: str, now: datetime | None = None
    ) -> ExecutionData:
        """
        Record the provider's fulfilment confirmation.

        Raises:
            DataIntegrityError: order id doesn't match the placed order
            InvalidTransitionError: execution isn't order_placed
        """
        now = now or datetime.now(UTC)
        execution = await load_execution(self.session, execution_id)
        if execution.order_id is not None and execution.order_id != order_id:
            raise DataIntegrityError(
                f"Order {order_id} does not match order {execution.order_id} "
                f"of execution {execution_id}"
            )
        if execution.status == S.COMPLETED.value:
            return execution_to_data(execution)

        await transition(self.session, execution, S.COMPLETED, completed_at=now)
        await self.session.commit()
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.EXECUTION_COMPLETED,
            NotificationPayload(
                message="Your gift has been delivered.",
                rule_id=execution.rule_id,
                execution_id=execution.id,
                order_id=order_id,
            ),
        )
        return execution_to_data(execution)

    # ========================================================================
    # Sweep
    # ========================================================================

    async def sweep(self, now: datetime | None = None, limit: int | None = None) -> SweepResult:
        """
        Advance every execution the scheduler is responsible for.

        Picks up, oldest first and up to limit of each: pending executions,
        stale processing, order_failed due for retry, and approved
        executions due for placement with no live lease.
        """
        now = now or datetime.now(UTC)
        limit = limit or self.config.sweep_batch_size
        result = SweepResult()
        started = time.perf_counter()

        stale_before = now - timedelta(seconds=self.config.processing_stale_after_seconds)
        lease_before = now - timedelta(seconds=self.config.placement_lease_seconds)

        batches = (
            (self.process, await self._due_ids(limit, Execution.status == S.PENDING.value)),
            (
                self.process,
                await self._due_ids(
                    limit,
                    Execution.status == S.PROCESSING.value,
                    Execution.updated_at <= stale_before,
                ),
            ),
            (
                self.retry,
                await self._due_ids(
                    limit,
                    Execution.status == S.ORDER_FAILED.value,
                    Execution.awaiting_payment_update.is_(False),
                    Execution.next_retry_at <= now,
                ),
            ),
            (
                self.place_order,
                await self._due_ids(
                    limit,
                    Execution.status == S.APPROVED.value,
                    Execution.timeout_count < self.config.retry_policy.max_attempts,
                    or_(Execution.next_retry_at.is_(None), Execution.next_retry_at <= now),
                    or_(
                        Execution.placement_claimed_at.is_(None),
                        Execution.placement_claimed_at <= lease_before,
                    ),
                ),
            ),
        )

        with trace_operation("retry_sweep"):
            for step, execution_ids in batches:
                for execution_id in execution_ids:
                    result.processed += 1
                    try:
                        data = await step(execution_id, now)
                    except ConcurrencyError:
                        await self.session.rollback()
                        logger.info("sweep_item_lost_race", execution_id=str(execution_id))
                        continue
                    except GiftingError as exc:
                        await self.session.rollback()
                        result.errors += 1
                        metrics.record_error(type(exc).__name__, "sweep")
                        logger.error(
                            "sweep_item_failed",
                            execution_id=str(execution_id),
                            error=str(exc),
                            error_type=type(exc).__name__,
                        )
                        continue
                    _tally(result, data.status)

        metrics.sweep_duration_seconds.observe(time.perf_counter() - started)
        logger.info(
            "sweep_completed",
            processed=result.processed,
            placed=result.placed,
            retrying=result.retrying,
            failed=result.failed,
            awaiting_approval=result.awaiting_approval,
            errors=result.errors,
        )
        return result

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _due_ids(self, limit: int, *criteria: object) -> list[UUID]:
        result = await self.session.execute(
            select(Execution.id).where(*criteria).order_by(Execution.created_at).limit(limit)
        )
        return list(result.scalars().all())

    async def _load_rule(self, rule_id: UUID) -> RuleData:
        rule = await self.session.get(AutoGiftRule, rule_id, populate_existing=True)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule_to_data(rule)

    async def _next_attempt_number(self, execution_id: UUID) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(OrderAttempt)
            .where(OrderAttempt.execution_id == execution_id)
        )
        return (count or 0) + 1

    def _record_attempt(
        self,
        execution: Execution,
        rule: RuleData,
        attempt_number: int,
        outcome: OrderAttemptOutcome,
        order_id: str | None = None,
        error_type: str | None = None,
        error_message: str | None = None,
    ) -> None:
        self.session.add(
            OrderAttempt(
                execution_id=execution.id,
                attempt_number=attempt_number,
                outcome=outcome.value,
                amount_minor=execution.total_amount_minor,
                payment_method_id=rule.payment_method_id,
                order_id=order_id,
                error_type=error_type,
                error_message=error_message,
            )
        )

    def _is_stale(self, execution: Execution, now: datetime) -> bool:
        stale_after = timedelta(seconds=self.config.processing_stale_after_seconds)
        return execution.updated_at <= now - stale_after

    def _lease_held(self, execution: Execution, now: datetime) -> bool:
        claimed = execution.placement_claimed_at
        if claimed is None:
            return False
        return claimed > now - timedelta(seconds=self.config.placement_lease_seconds)


def _tally(result: SweepResult, status: ExecutionStatus) -> None:
    if status is S.ORDER_PLACED:
        result.placed += 1
    elif status in (S.ORDER_FAILED, S.APPROVED):
        result.retrying += 1
    elif status is S.FAILED:
        result.failed += 1
    elif status is S.PENDING_APPROVAL:
        result.awaiting_approval += 1
