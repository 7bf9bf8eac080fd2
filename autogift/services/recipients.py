"""
Recipient Directory - HTTP-backed RecipientDirectory.

Connected recipients come with their profile's shipping address. Invited
recipients (pending email) have no address until they accept.
"""

from typing import Any

import httpx

from autogift.exceptions import ProviderError
from autogift.models.domain import RecipientProfile, RuleData, ShippingAddress
from autogift.observability.logging import get_logger

logger = get_logger(__name__)


def parse_shipping_address(data: dict[str, Any] | None) -> ShippingAddress | None:
    """Build an address from a loose mapping; incomplete addresses count as missing."""
    if not data:
        return None
    try:
        return ShippingAddress(
            name=str(data.get("name") or ""),
            line1=str(data.get("line1") or data.get("address_line1") or ""),
            line2=data.get("line2") or data.get("address_line2"),
            city=str(data.get("city") or ""),
            state=data.get("state"),
            postal_code=str(data.get("postal_code") or data.get("zip_code") or ""),
            country=str(data.get("country") or "US"),
        )
    except ValueError:
        return None


class HttpRecipientDirectory:
    """Resolves recipient profiles from the connections service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
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

    async def resolve(self, rule: RuleData) -> RecipientProfile:
        if rule.recipient_id is None:
            return RecipientProfile(
                recipient_id=None,
                email=rule.pending_recipient_email,
                display_name=None,
                shipping_address=None,
            )

        try:
            response = await self.http_client.get(
                f"{self.base_url}/users/{rule.user_id}/connections/{rule.recipient_id}"
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "recipient_lookup_failed", recipient_id=str(rule.recipient_id), error=str(exc)
            )
            raise ProviderError("recipient_directory", str(exc)) from exc

        data = response.json()
        return RecipientProfile(
            recipient_id=rule.recipient_id,
            email=data.get("email"),
            display_name=data.get("name"),
            shipping_address=parse_shipping_address(data.get("shipping_address")),
            interests=tuple(data.get("interests") or ()),
        )
