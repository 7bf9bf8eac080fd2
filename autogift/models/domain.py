"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import ClassVar
from uuid import UUID

from autogift.config import Settings
from autogift.exceptions import InvalidRuleError
from autogift.models.api import (
    AddressSource,
    ExecutionStatus,
    OrderAttemptOutcome,
    PaymentHealthStatus,
    PaymentMethodFlag,
    SelectionSource,
)

# ============================================================================
# Selection Criteria - closed sum type keyed by source
# ============================================================================


@dataclass(frozen=True, kw_only=True)
class _CriteriaBase:
    min_price_minor: int | None = None
    max_price_minor: int | None = None
    categories: tuple[str, ...] = ()
    exclude_items: tuple[str, ...] = ()
    preferred_brands: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate price bounds."""
        if self.min_price_minor is not None and self.min_price_minor < 0:
            raise InvalidRuleError(f"min_price_minor cannot be negative: {self.min_price_minor}")
        if (
            self.min_price_minor is not None
            and self.max_price_minor is not None
            and self.min_price_minor > self.max_price_minor
        ):
            raise InvalidRuleError(
                f"min_price_minor {self.min_price_minor} exceeds "
                f"max_price_minor {self.max_price_minor}"
            )


@dataclass(frozen=True, kw_only=True)
class WishlistSelection(_CriteriaBase):
    """Pick from the recipient's wishlist."""

    source: ClassVar[SelectionSource] = SelectionSource.WISHLIST


@dataclass(frozen=True, kw_only=True)
class AISelection(_CriteriaBase):
    """Pick from recommendation search."""

    source: ClassVar[SelectionSource] = SelectionSource.AI


@dataclass(frozen=True, kw_only=True)
class HybridSelection(_CriteriaBase):
    """Wishlist first, recommendation search as fallback."""

    source: ClassVar[SelectionSource] = SelectionSource.BOTH


@dataclass(frozen=True, kw_only=True)
class SpecificProductSelection(_CriteriaBase):
    """A single product chosen at setup time."""

    product_id: str
    source: ClassVar[SelectionSource] = SelectionSource.SPECIFIC

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.product_id:
            raise InvalidRuleError("specific selection requires a product id")


SelectionCriteria = WishlistSelection | AISelection | HybridSelection | SpecificProductSelection


def default_criteria(source: SelectionSource) -> SelectionCriteria:
    """Empty criteria for a non-specific source."""
    if source is SelectionSource.WISHLIST:
        return WishlistSelection()
    if source is SelectionSource.AI:
        return AISelection()
    if source is SelectionSource.BOTH:
        return HybridSelection()
    raise InvalidRuleError("specific selection requires a product id")


# ============================================================================
# Rule Models
# ============================================================================


@dataclass(frozen=True)
class ShippingAddress:
    """Immutable shipping address snapshot."""

    name: str
    line1: str
    city: str
    postal_code: str
    country: str
    line2: str | None = None
    state: str | None = None

    def __post_init__(self) -> None:
        """Validate required address parts."""
        for part in ("name", "line1", "city", "postal_code"):
            if not getattr(self, part).strip():
                raise ValueError(f"Shipping address {part} cannot be empty")
        if len(self.country) != 2:
            raise ValueError(f"Invalid country code: {self.country}")


@dataclass(frozen=True)
class NotificationPreferences:
    """Reminder settings: days before the occasion, descending."""

    enabled: bool
    days_before: tuple[int, ...]

    def __post_init__(self) -> None:
        if any(day < 0 for day in self.days_before):
            raise InvalidRuleError("notification days cannot be negative")
        if list(self.days_before) != sorted(set(self.days_before), reverse=True):
            raise InvalidRuleError("notification days must be unique and descending")


@dataclass(frozen=True)
class RuleDefaults:
    """Values seeded into new rules when the caller leaves them unspecified."""

    budget_limit_minor: int
    notification_days: tuple[int, ...]
    auto_approve: bool
    selection_source: SelectionSource
    currency: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "RuleDefaults":
        return cls(
            budget_limit_minor=settings.default_budget_limit_minor,
            notification_days=tuple(sorted(set(settings.default_notification_days), reverse=True)),
            auto_approve=settings.default_auto_approve,
            selection_source=SelectionSource(settings.default_selection_source),
            currency=settings.default_currency,
        )


def validate_target(recipient_id: UUID | None, pending_recipient_email: str | None) -> None:
    """A rule targets exactly one of a connected recipient or an invited email."""
    if recipient_id is None and not pending_recipient_email:
        raise InvalidRuleError("either recipient_id or pending_recipient_email is required")
    if recipient_id is not None and pending_recipient_email:
        raise InvalidRuleError("recipient_id and pending_recipient_email are mutually exclusive")


@dataclass(frozen=True)
class RuleIntent:
    """Domain model for rule creation before defaults are applied."""

    user_id: UUID
    date_type: str
    recipient_id: UUID | None = None
    pending_recipient_email: str | None = None
    scheduled_date: date | None = None
    occasion_anchor_date: date | None = None
    budget_limit_minor: int | None = None
    currency: str | None = None
    auto_approve: bool | None = None
    payment_method_id: str | None = None
    criteria: SelectionCriteria | None = None
    notifications: NotificationPreferences | None = None

    def __post_init__(self) -> None:
        """Validate rule constraints."""
        validate_target(self.recipient_id, self.pending_recipient_email)
        if not self.date_type:
            raise InvalidRuleError("date_type cannot be empty")
        if self.budget_limit_minor is not None and self.budget_limit_minor <= 0:
            raise InvalidRuleError(f"Budget must be positive: {self.budget_limit_minor}")


@dataclass(frozen=True)
class RuleUpdate:
    """Settings edit. None means unchanged."""

    recipient_id: UUID | None = None
    pending_recipient_email: str | None = None
    date_type: str | None = None
    scheduled_date: date | None = None
    occasion_anchor_date: date | None = None
    budget_limit_minor: int | None = None
    auto_approve: bool | None = None
    payment_method_id: str | None = None
    criteria: SelectionCriteria | None = None
    notifications: NotificationPreferences | None = None

    def __post_init__(self) -> None:
        if self.recipient_id is not None and self.pending_recipient_email:
            raise InvalidRuleError(
                "recipient_id and pending_recipient_email are mutually exclusive"
            )
        if self.budget_limit_minor is not None and self.budget_limit_minor <= 0:
            raise InvalidRuleError(f"Budget must be positive: {self.budget_limit_minor}")


@dataclass(frozen=True)
class RuleData:
    """Immutable rule snapshot."""

    rule_id: UUID
    user_id: UUID
    recipient_id: UUID | None
    pending_recipient_email: str | None
    date_type: str
    scheduled_date: date | None
    occasion_anchor_date: date | None
    budget_limit_minor: int
    currency: str
    is_active: bool
    auto_approve: bool
    payment_method_id: str | None
    payment_method_status: PaymentMethodFlag
    payment_method_last_verified: datetime | None
    criteria: SelectionCriteria
    notifications: NotificationPreferences
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Capability Value Objects
# ============================================================================


@dataclass(frozen=True)
class RecipientProfile:
    """What the product selector and order placer need to know about a recipient."""

    recipient_id: UUID | None
    email: str | None
    display_name: str | None
    shipping_address: ShippingAddress | None
    interests: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProductCandidate:
    """A ranked product offered by the selector. Price is frozen on receipt."""

    product_id: str
    title: str
    price_minor: int
    currency: str
    image_url: str | None = None
    retailer: str | None = None
    rating: float | None = None
    review_count: int | None = None

    def __post_init__(self) -> None:
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if self.price_minor < 0:
            raise ValueError(f"Price cannot be negative: {self.price_minor}")


@dataclass(frozen=True)
class OrderReference:
    """Identifier returned by the fulfillment provider."""

    order_id: str
    status: str = "placed"


@dataclass(frozen=True)
class PaymentMethodRecord:
    """Card data from the payment domain - never owned here."""

    payment_method_id: str
    exp_month: int
    exp_year: int
    attached: bool = True
    brand: str | None = None
    last_four: str | None = None


@dataclass(frozen=True)
class PaymentMethodHealth:
    """Derived health, recomputed on every read."""

    payment_method_id: str
    status: PaymentHealthStatus
    rules_count: int
    rule_ids: tuple[UUID, ...]
    last_verified: datetime | None
    brand: str | None = None
    last_four: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


# ============================================================================
# Execution Models
# ============================================================================


@dataclass(frozen=True)
class ExecutionProductData:
    """Product on an execution with its price snapshot."""

    product_id: str
    title: str
    price_minor: int
    currency: str
    rank: int
    is_selected: bool
    image_url: str | None = None
    retailer: str | None = None


@dataclass(frozen=True)
class ExecutionData:
    """Immutable execution snapshot."""

    execution_id: UUID
    rule_id: UUID
    user_id: UUID
    occasion_date: date
    occasion_key: str
    status: ExecutionStatus
    version: int
    products: tuple[ExecutionProductData, ...]
    total_amount_minor: int
    budget_limit_minor: int
    retry_count: int
    timeout_count: int
    next_retry_at: datetime | None
    awaiting_payment_update: bool
    order_id: str | None
    error_message: str | None
    shipping_address: ShippingAddress | None
    address_source: AddressSource
    address_needs_confirmation: bool
    created_at: datetime
    updated_at: datetime

    @property
    def selected_products(self) -> tuple[ExecutionProductData, ...]:
        return tuple(p for p in self.products if p.is_selected)


@dataclass(frozen=True)
class OrderAttemptData:
    """One audited Order Placer call."""

    execution_id: UUID
    attempt_number: int
    outcome: OrderAttemptOutcome
    amount_minor: int
    payment_method_id: str | None
    order_id: str | None = None
    error_type: str | None = None
    error_message: str | None = None


# ============================================================================
# Run Results
# ============================================================================


@dataclass
class TriggerResult:
    """Counters for one trigger evaluation run."""

    due: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled_duplicates: int = 0
    execution_ids: list[UUID] = field(default_factory=list)


@dataclass
class SweepResult:
    """Counters for one retry sweep."""

    processed: int = 0
    placed: int = 0
    retrying: int = 0
    failed: int = 0
    awaiting_approval: int = 0
    errors: int = 0
