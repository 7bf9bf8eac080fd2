"""
Fulfillment Order Placer - HTTP-backed OrderPlacer.

Maps provider responses onto the OrderPlacementError family:
    402       -> PaymentDeclinedError (detached when the provider says so)
    422       -> AddressInvalidError
    5xx, 429  -> ProviderUnavailableError
    transport -> ProviderUnavailableError

Read and write timeouts raise TimeoutError instead. The request may have
reached the provider, so placement treats them as an unknown outcome and
reconciles later under the same idempotency key.
"""

from collections.abc import Sequence
from uuid import UUID

import httpx

from autogift.exceptions import (
    AddressInvalidError,
    PaymentDeclinedError,
    ProviderUnavailableError,
)
from autogift.models.domain import ExecutionProductData, OrderReference, ShippingAddress
from autogift.observability.logging import get_logger

logger = get_logger(__name__)


class HttpOrderPlacer:
    """Places orders through the fulfillment provider's REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def place(
        self,
        execution_id: UUID,
        products: Sequence[ExecutionProductData],
        shipping_address: ShippingAddress,
        payment_method_id: str,
    ) -> OrderReference:
        body = {
            "client_reference": str(execution_id),
            "payment_method_id": payment_method_id,
            "products": [
                {
                    "product_id": p.product_id,
                    "quantity": 1,
                    "max_price_minor": p.price_minor,
                    "currency": p.currency,
                }
                for p in products
            ],
            "shipping_address": {
                "name": shipping_address.name,
                "line1": shipping_address.line1,
                "line2": shipping_address.line2,
                "city": shipping_address.city,
                "state": shipping_address.state,
                "postal_code": shipping_address.postal_code,
                "country": shipping_address.country,
            },
        }

        try:
            response = await self.http_client.post(
                f"{self.base_url}/orders",
                json=body,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Idempotency-Key": str(execution_id),
                },
            )
        except (httpx.ReadTimeout, httpx.WriteTimeout) as exc:
            # Request may have reached the provider; the outcome is unknown
            logger.warning(
                "fulfillment_request_timed_out", execution_id=str(execution_id), error=str(exc)
            )
            raise TimeoutError(f"Fulfillment request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "fulfillment_transport_error", execution_id=str(execution_id), error=str(exc)
            )
            raise ProviderUnavailableError(f"Fulfillment provider unreachable: {exc}") from exc

        if response.status_code in (200, 201):
            data = response.json()
            return OrderReference(
                order_id=str(data["order_id"]), status=str(data.get("status", "placed"))
            )

        detail = self._error_detail(response)
        if response.status_code == 402:
            detached = detail.get("code") == "payment_method_detached"
            raise PaymentDeclinedError(
                detail.get("message", "Payment declined"), detached=detached
            )
        if response.status_code == 422:
            raise AddressInvalidError(detail.get("message", "Shipping address rejected"))
        raise ProviderUnavailableError(
            f"Fulfillment provider returned {response.status_code}: "
            f"{detail.get('message', 'unknown error')}"
        )

    @staticmethod
    def _error_detail(response: httpx.Response) -> dict[str, str]:
        try:
            data = response.json()
        except ValueError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: str(v) for k, v in data.items() if k in ("code", "message")}
