"""
Catalog Product Selector - HTTP-backed ProductSelector.

Each selection source is its own strategy; dispatch is exhaustive over the
closed SelectionCriteria union. Candidates are filtered to the budget and the
rule's criteria, ranked by rating then review count, and capped at three.
"""

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, assert_never

import httpx

from autogift.exceptions import NoViableCandidatesError, ProviderError
from autogift.models.domain import (
    AISelection,
    HybridSelection,
    ProductCandidate,
    RecipientProfile,
    SelectionCriteria,
    SpecificProductSelection,
    WishlistSelection,
)
from autogift.observability.logging import get_logger

logger = get_logger(__name__)

MAX_CANDIDATES = 3
SEARCH_PAGE_SIZE = 20

NO_CANDIDATES_MESSAGE = (
    "No gift found within budget. Increase the budget or update the recipient's preferences."
)

# Occasion keyword -> (primary query, fallback query)
_OCCASION_QUERIES: tuple[tuple[str, str, str], ...] = (
    ("birthday", "birthday gift", "birthday gift popular"),
    ("anniversary", "anniversary gift", "anniversary gift ideas"),
    ("wedding", "wedding gift", "wedding gift popular"),
    ("graduation", "graduation gift", "graduation gift ideas"),
)


def to_minor_units(price: Any) -> int:
    """Convert a decimal price (e.g. "29.99") to integer cents."""
    try:
        amount = Decimal(str(price))
    except (InvalidOperation, ValueError):
        return 0
    if not amount.is_finite() or amount <= 0:
        return 0
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_search_query(occasion_type: str, categories: Iterable[str]) -> str:
    occasion = occasion_type.lower()
    query = "gift"
    for keyword, primary, _ in _OCCASION_QUERIES:
        if keyword in occasion:
            query = primary
            break
    category_terms = " ".join(c.strip() for c in categories if c.strip())
    return f"{category_terms} {query}" if category_terms else query


def build_fallback_query(occasion_type: str) -> str:
    occasion = occasion_type.lower()
    for keyword, _, fallback in _OCCASION_QUERIES:
        if keyword in occasion:
            return fallback
    return "popular gift ideas"


def rank_candidates(
    candidates: Iterable[ProductCandidate],
    budget_minor: int,
    criteria: SelectionCriteria,
    limit: int = MAX_CANDIDATES,
) -> list[ProductCandidate]:
    """Filter to budget and criteria, then rank by rating and review count."""
    excluded = [item.lower() for item in criteria.exclude_items if item.strip()]
    floor = criteria.min_price_minor
    ceiling = criteria.max_price_minor
    eligible = []
    for candidate in candidates:
        if candidate.price_minor <= 0 or candidate.price_minor > budget_minor:
            continue
        if floor is not None and candidate.price_minor < floor:
            continue
        if ceiling is not None and candidate.price_minor > ceiling:
            continue
        title = candidate.title.lower()
        if any(term in title for term in excluded):
            continue
        eligible.append(candidate)

    eligible.sort(key=lambda c: (-(c.rating or 0.0), -(c.review_count or 0)))
    return eligible[:limit]


class CatalogProductSelector:
    """
    ProductSelector backed by a product catalog/search HTTP API.

    Endpoints used:
        GET /recipients/{recipient_id}/wishlist
        GET /search?query=...&page=1&limit=20
        GET /products/{product_id}
    """

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

    async def select(
        self,
        recipient: RecipientProfile,
        budget_minor: int,
        currency: str,
        occasion_type: str,
        criteria: SelectionCriteria,
    ) -> list[ProductCandidate]:
        if isinstance(criteria, WishlistSelection):
            ranked = await self._from_wishlist(recipient, budget_minor, currency, criteria)
        elif isinstance(criteria, AISelection):
            ranked = await self._from_search(budget_minor, currency, occasion_type, criteria)
        elif isinstance(criteria, HybridSelection):
            ranked = await self._from_wishlist(recipient, budget_minor, currency, criteria)
            if not ranked:
                ranked = await self._from_search(budget_minor, currency, occasion_type, criteria)
        elif isinstance(criteria, SpecificProductSelection):
            ranked = await self._specific(budget_minor, currency, criteria)
        else:
            assert_never(criteria)

        if not ranked:
            raise NoViableCandidatesError(budget_minor, NO_CANDIDATES_MESSAGE)

        logger.info(
            "gift_candidates_selected",
            source=criteria.source.value,
            budget_minor=budget_minor,
            candidate_count=len(ranked),
        )
        return ranked

    # ========================================================================
    # Strategies
    # ========================================================================

    async def _from_wishlist(
        self,
        recipient: RecipientProfile,
        budget_minor: int,
        currency: str,
        criteria: SelectionCriteria,
    ) -> list[ProductCandidate]:
        if recipient.recipient_id is None:
            # Invited recipients have no wishlist yet
            return []
        data = await self._get(f"/recipients/{recipient.recipient_id}/wishlist")
        items = [self._parse_product(item, currency) for item in data.get("items", [])]
        return rank_candidates(items, budget_minor, criteria)

    async def _from_search(
        self,
        budget_minor: int,
        currency: str,
        occasion_type: str,
        criteria: SelectionCriteria,
    ) -> list[ProductCandidate]:
        query = build_search_query(occasion_type, criteria.categories)
        results = await self._search(query, currency)
        if not results:
            logger.info("product_search_empty_trying_fallback", query=query)
            results = await self._search(build_fallback_query(occasion_type), currency)
        return rank_candidates(results, budget_minor, criteria)

    async def _specific(
        self,
        budget_minor: int,
        currency: str,
        criteria: SpecificProductSelection,
    ) -> list[ProductCandidate]:
        data = await self._get(f"/products/{criteria.product_id}")
        if not data or data.get("available") is False:
            return []
        product = self._parse_product(data, currency)
        if product.price_minor <= 0 or product.price_minor > budget_minor:
            return []
        return [product]

    # ========================================================================
    # HTTP helpers
    # ========================================================================

    async def _search(self, query: str, currency: str) -> list[ProductCandidate]:
        data = await self._get(
            "/search", params={"query": query, "page": 1, "limit": SEARCH_PAGE_SIZE}
        )
        return [self._parse_product(item, currency) for item in data.get("results", [])]

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self.http_client.get(f"{self.base_url}{path}", params=params)
            if response.status_code == 404:
                return {}
            response.raise_for_status()
            return response.json()  # type: ignore[no-any-return]
        except httpx.HTTPError as exc:
            logger.error("product_catalog_request_failed", path=path, error=str(exc))
            raise ProviderError("product_selector", str(exc)) from exc

    @staticmethod
    def _parse_product(item: dict[str, Any], currency: str) -> ProductCandidate:
        return ProductCandidate(
            product_id=str(item["product_id"]),
            title=str(item.get("title") or ""),
            price_minor=to_minor_units(item.get("price", 0)),
            currency=currency,
            image_url=item.get("image"),
            retailer=item.get("retailer"),
            rating=float(item.get("stars") or 0.0),
            review_count=int(item.get("num_reviews") or 0),
        )
