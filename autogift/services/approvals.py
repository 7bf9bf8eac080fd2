"""
Approval Gateway - the human decision point for pending_approval executions.

Validation failures raise before any write, so the execution stays in
pending_approval and the caller can fix the request and try again.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.db.models import AutoGiftRule, Execution
from autogift.exceptions import (
    BudgetExceededError,
    ConcurrencyError,
    EmptySelectionError,
    InvalidTransitionError,
    MissingPaymentMethodError,
    MissingShippingAddressError,
    RuleNotFoundError,
    UnknownProductError,
)
from autogift.models.api import AddressSource, ExecutionStatus, NotificationEvent
from autogift.models.domain import ExecutionData, ShippingAddress
from autogift.observability.logging import get_logger
from autogift.observability.metrics import metrics
from autogift.services.executions import address_to_json, execution_to_data, load_execution
from autogift.services.notifications import NotificationDispatcher
from autogift.services.orchestrator import ExecutionOrchestrator
from autogift.services.providers import NotificationPayload
from autogift.services.recipients import parse_shipping_address
from autogift.services.spending import check_spending_limits
from autogift.services.state_machine import TERMINAL_STATUSES, transition

logger = get_logger(__name__)

S = ExecutionStatus

# Approve is a no-op once the execution has been approved
_ALREADY_APPROVED = frozenset({S.APPROVED, S.ORDER_PLACED, S.ORDER_FAILED, S.COMPLETED})

DEFAULT_REJECTION_REASON = "Rejected by user"


class ApprovalGateway:
    """Approve or reject executions waiting on the user."""

    def __init__(
        self,
        session: AsyncSession,
        orchestrator: ExecutionOrchestrator,
        notifier: NotificationDispatcher,
    ) -> None:
        self.session = session
        self.orchestrator = orchestrator
        self.notifier = notifier

    async def list_pending(self, user_id: UUID) -> list[ExecutionData]:
        result = await self.session.execute(
            select(Execution)
            .where(
                Execution.user_id == user_id,
                Execution.status == S.PENDING_APPROVAL.value,
            )
            .order_by(Execution.occasion_date, Execution.created_at)
        )
        return [execution_to_data(e) for e in result.scalars().all()]

    async def approve(
        self,
        execution_id: UUID,
        selected_product_ids: list[str],
        shipping_address: ShippingAddress | None = None,
        now: datetime | None = None,
    ) -> ExecutionData:
        """
        Approve a subset of the candidates and place the order.

        Blocks until the first placement attempt finishes, unless another
        worker claims the placement first. Repeating an approval returns the
        current state without placing a second order.

        Raises:
            EmptySelectionError: no products selected
            UnknownProductError: a product id isn't one of the candidates
            BudgetExceededError: selection total exceeds the rule's budget
            SpendingLimitExceededError: total would break a monthly or annual limit
            MissingPaymentMethodError: rule has no payment method
            MissingShippingAddressError: no address on file and none supplied
            InvalidTransitionError: execution is rejected, cancelled or not yet selected
        """
        now = now or datetime.now(UTC)
        execution = await load_execution(self.session, execution_id)
        status = ExecutionStatus(execution.status)

        if status in _ALREADY_APPROVED:
            logger.info("approval_repeated", execution_id=str(execution_id), status=status.value)
            return execution_to_data(execution)
        if status is not S.PENDING_APPROVAL:
            raise InvalidTransitionError(execution_id, status.value, S.APPROVED.value)

        selected = list(dict.fromkeys(selected_product_ids))
        if not selected:
            raise EmptySelectionError(execution_id)

        candidates = {p.product_id: p for p in execution.products}
        unknown = [product_id for product_id in selected if product_id not in candidates]
        if unknown:
            raise UnknownProductError(execution_id, unknown)

        rule = await self.session.get(AutoGiftRule, execution.rule_id, populate_existing=True)
        if rule is None:
            raise RuleNotFoundError(execution.rule_id)

        total = sum(candidates[product_id].price_minor for product_id in selected)
        if total > rule.budget_limit_minor:
            raise BudgetExceededError(total, rule.budget_limit_minor)
        if rule.payment_method_id is None:
            raise MissingPaymentMethodError(rule.id)
        await check_spending_limits(
            self.session,
            self.orchestrator.config.spending_limits,
            execution.user_id,
            rule.currency,
            total,
            now,
        )

        address = shipping_address or parse_shipping_address(execution.shipping_address)
        if address is None:
            raise MissingShippingAddressError(execution_id)

        for product in execution.products:
            product.is_selected = product.product_id in selected

        try:
            await transition(
                self.session,
                execution,
                S.APPROVED,
                total_amount_minor=total,
                budget_limit_minor=rule.budget_limit_minor,
                approved_at=now,
                shipping_address=address_to_json(address),
                address_source=(
                    AddressSource.USER_CONFIRMED.value
                    if shipping_address is not None
                    else execution.address_source
                ),
                address_needs_confirmation=False,
                error_message=None,
            )
        except ConcurrencyError:
            await self.session.rollback()
            raise
        await self.session.commit()

        metrics.approved_amount_minor.observe(total)
        logger.info(
            "execution_approved",
            execution_id=str(execution_id),
            product_count=len(selected),
            total_amount_minor=total,
        )
        try:
            return await self.orchestrator.place_order(execution_id, now)
        except ConcurrencyError:
            # The approval is committed; whoever won the placement claim carries on
            await self.session.rollback()
            logger.info("approval_placement_claimed_elsewhere", execution_id=str(execution_id))
            return execution_to_data(await load_execution(self.session, execution_id))

    async def reject(self, execution_id: UUID, reason: str | None = None) -> ExecutionData:
        """
        Reject a pending approval. Terminal executions are returned unchanged.

        Raises:
            InvalidTransitionError: execution is live but not awaiting approval
        """
        execution = await load_execution(self.session, execution_id)
        status = ExecutionStatus(execution.status)
        if status in TERMINAL_STATUSES:
            return execution_to_data(execution)

        message = reason or DEFAULT_REJECTION_REASON
        await transition(self.session, execution, S.REJECTED, error_message=message)
        await self.session.commit()

        logger.info("execution_rejected", execution_id=str(execution_id), reason=message)
        self.notifier.emit(
            execution.user_id,
            NotificationEvent.EXECUTION_REJECTED,
            NotificationPayload(
                message=message,
                rule_id=execution.rule_id,
                execution_id=execution.id,
                occasion_date=execution.occasion_date,
            ),
        )
        return execution_to_data(execution)
