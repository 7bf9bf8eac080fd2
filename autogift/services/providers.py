"""
Capability Protocols - narrow interfaces to external collaborators.

NO DICTIONARIES - All data uses strongly typed models.

The orchestrator depends only on these protocols. Concrete HTTP and Stripe
implementations live in their own modules and are wired in api/dependencies.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from typing import Protocol
from uuid import UUID

from autogift.models.api import NotificationEvent
from autogift.models.domain import (
    ExecutionProductData,
    OrderReference,
    PaymentMethodRecord,
    ProductCandidate,
    RecipientProfile,
    RuleData,
    SelectionCriteria,
    ShippingAddress,
)


class ProductSelector(Protocol):
    """Returns ranked candidate products for a recipient and budget."""

    async def select(
        self,
        recipient: RecipientProfile,
        budget_minor: int,
        currency: str,
        occasion_type: str,
        criteria: SelectionCriteria,
    ) -> list[ProductCandidate]:
        """
        Raises:
            NoViableCandidatesError: nothing suitable was found
            ProviderError: the selector itself failed
        """
        ...


class RecipientDirectory(Protocol):
    """Looks up who a rule is gifting and where to ship."""

    async def resolve(self, rule: RuleData) -> RecipientProfile:
        ...


class PaymentMethodDirectory(Protocol):
    """Read-only access to card data held by the payment domain."""

    async def get(self, payment_method_id: str) -> PaymentMethodRecord | None:
        """Returns None when the payment domain has no such method."""
        ...


class OrderPlacer(Protocol):
    """Places an order with the fulfillment provider."""

    async def place(
        self,
        execution_id: UUID,
        products: Sequence[ExecutionProductData],
        shipping_address: ShippingAddress,
        payment_method_id: str,
    ) -> OrderReference:
        """
        execution_id doubles as the provider idempotency key.

        Raises:
            AddressInvalidError: provider rejected the address
            PaymentDeclinedError: charge declined or payment method detached
            ProviderUnavailableError: transport failure or provider error
            TimeoutError: request sent but no answer; outcome unknown
        """
        ...


@dataclass(frozen=True)
class NotificationPayload:
    """Typed payload for a lifecycle notification."""

    message: str
    rule_id: UUID | None = None
    execution_id: UUID | None = None
    occasion_date: date | None = None
    total_amount_minor: int | None = None
    order_id: str | None = None
    retry_count: int | None = None
    payment_method_id: str | None = None


class NotificationEmitter(Protocol):
    """Fire-and-forget sink for lifecycle events."""

    async def notify(
        self, user_id: UUID, event_type: NotificationEvent, payload: NotificationPayload
    ) -> None:
        ...
