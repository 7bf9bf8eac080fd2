"""
Stripe Payment Method Directory - reads card metadata from Stripe.

Only the fields needed for health classification are read. A payment method
that no longer has a customer has been detached.
"""

import asyncio

import stripe

from autogift.exceptions import ProviderError
from autogift.models.domain import PaymentMethodRecord
from autogift.observability.logging import get_logger

logger = get_logger(__name__)


class StripePaymentMethodDirectory:
    """PaymentMethodDirectory implementation for Stripe."""

    def __init__(self, api_key: str) -> None:
        """
        Initialize Stripe directory.

        Args:
            api_key: Stripe secret API key
        """
        self.api_key = api_key
        stripe.api_key = api_key

    async def get(self, payment_method_id: str) -> PaymentMethodRecord | None:
        """
        Retrieve a payment method.

        Returns:
            Record with expiry and attachment, or None if Stripe doesn't know it

        Raises:
            ProviderError: If the Stripe API call fails for other reasons
        """
        try:
            pm = await asyncio.to_thread(stripe.PaymentMethod.retrieve, payment_method_id)
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                logger.info("stripe_payment_method_missing", payment_method_id=payment_method_id)
                return None
            raise ProviderError("stripe", str(exc)) from exc
        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_method_lookup_failed",
                payment_method_id=payment_method_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ProviderError("stripe", str(exc)) from exc

        card = getattr(pm, "card", None)
        if card is None:
            return None

        return PaymentMethodRecord(
            payment_method_id=pm.id,
            exp_month=card.exp_month,
            exp_year=card.exp_year,
            attached=getattr(pm, "customer", None) is not None,
            brand=card.brand,
            last_four=card.last4,
        )
