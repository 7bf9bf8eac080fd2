"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    ORDER_PLACED = "order_placed"
    ORDER_FAILED = "order_failed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class PaymentMethodFlag(str, Enum):
    """Sticky payment annotation stored on rules."""

    VALID = "valid"
    INVALID = "invalid"
    DETACHED = "detached"


class PaymentHealthStatus(str, Enum):
    """Derived payment method health classification."""

    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    INVALID = "invalid"
    DETACHED = "detached"


class SelectionSource(str, Enum):
    """Where gift candidates come from."""

    WISHLIST = "wishlist"
    AI = "ai"
    BOTH = "both"
    SPECIFIC = "specific"


class AddressSource(str, Enum):
    """Provenance of an execution's shipping address."""

    RECIPIENT_PROFILE = "recipient_profile"
    USER_CONFIRMED = "user_confirmed"
    MISSING = "missing"


class OrderAttemptOutcome(str, Enum):
    """Outcome of a single Order Placer call."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"


class NotificationEvent(str, Enum):
    """Events pushed to the notification emitter."""

    APPROVAL_NEEDED = "approval_needed"
    ORDER_PLACED = "order_placed"
    ORDER_RETRYING = "order_retrying"
    PAYMENT_METHOD_INVALID = "payment_method_invalid"
    MANUAL_INTERVENTION_REQUIRED = "manual_intervention_required"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_REJECTED = "execution_rejected"
    OCCASION_UPCOMING = "occasion_upcoming"


# ============================================================================
# Shared Models
# ============================================================================


class ShippingAddressModel(BaseModel):
    """Shipping address - explicit fields, no dict."""

    name: str = Field(..., min_length=1, max_length=255)
    line1: str = Field(..., min_length=1, max_length=255)
    line2: str | None = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: str | None = Field(None, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field("US", min_length=2, max_length=2)


class _CriteriaFields(BaseModel):
    """Filters shared by every selection source."""

    min_price_minor: int | None = Field(None, ge=0)
    max_price_minor: int | None = Field(None, gt=0)
    categories: list[str] = Field(default_factory=list, max_length=20)
    exclude_items: list[str] = Field(default_factory=list, max_length=50)
    preferred_brands: list[str] = Field(default_factory=list, max_length=20)


class WishlistCriteriaModel(_CriteriaFields):
    source: Literal["wishlist"] = "wishlist"


class AICriteriaModel(_CriteriaFields):
    source: Literal["ai"] = "ai"


class HybridCriteriaModel(_CriteriaFields):
    source: Literal["both"] = "both"


class SpecificCriteriaModel(_CriteriaFields):
    source: Literal["specific"] = "specific"
    specific_product_id: str = Field(..., min_length=1, max_length=255)


GiftSelectionCriteriaModel = Annotated[
    WishlistCriteriaModel | AICriteriaModel | HybridCriteriaModel | SpecificCriteriaModel,
    Field(discriminator="source"),
]


class NotificationPreferencesModel(BaseModel):
    """Reminder settings for a rule."""

    enabled: bool = True
    days_before: list[int] | None = Field(None, max_length=10)

    @field_validator("days_before")
    @classmethod
    def validate_days(cls, v: list[int] | None) -> list[int] | None:
        """Offsets must be within a year; stored descending without duplicates."""
        if v is None:
            return v
        if any(day < 0 or day > 365 for day in v):
            raise ValueError("days_before entries must be between 0 and 365")
        return sorted(set(v), reverse=True)


# ============================================================================
# Rule Models
# ============================================================================


class CreateRuleRequest(BaseModel):
    """POST /v1/rules request body."""

    user_id: UUID
    recipient_id: UUID | None = None
    pending_recipient_email: str | None = Field(None, min_length=3, max_length=255)
    date_type: str = Field(..., min_length=1, max_length=50)
    scheduled_date: date | None = None
    occasion_anchor_date: date | None = None
    budget_limit_minor: int | None = Field(None, gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    auto_approve: bool | None = None
    payment_method_id: str | None = Field(None, min_length=1, max_length=255)
    gift_selection_criteria: GiftSelectionCriteriaModel | None = None
    notification_preferences: NotificationPreferencesModel | None = None

    @field_validator("date_type")
    @classmethod
    def normalize_date_type(cls, v: str) -> str:
        """Occasion codes are lower snake case."""
        return v.strip().lower().replace(" ", "_").replace("-", "_")


class UpdateRuleRequest(BaseModel):
    """PATCH /v1/rules/{rule_id} request body. Omitted fields are unchanged."""

    recipient_id: UUID | None = None
    pending_recipient_email: str | None = Field(None, min_length=3, max_length=255)
    date_type: str | None = Field(None, min_length=1, max_length=50)
    scheduled_date: date | None = None
    occasion_anchor_date: date | None = None
    budget_limit_minor: int | None = Field(None, gt=0)
    auto_approve: bool | None = None
    payment_method_id: str | None = Field(None, min_length=1, max_length=255)
    gift_selection_criteria: GiftSelectionCriteriaModel | None = None
    notification_preferences: NotificationPreferencesModel | None = None


class RuleResponse(BaseModel):
    """Rule representation."""

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
    gift_selection_criteria: GiftSelectionCriteriaModel
    notification_preferences: NotificationPreferencesModel
    next_occasion_date: date | None
    created_at: datetime
    updated_at: datetime


class RuleListResponse(BaseModel):
    """List of rules."""

    rules: list[RuleResponse]
    total_count: int


# ============================================================================
# Execution Models
# ============================================================================


class ExecutionProductResponse(BaseModel):
    """Candidate or approved product with its frozen price."""

    product_id: str
    title: str
    price_minor: int
    currency: str
    rank: int
    is_selected: bool
    image_url: str | None = None
    retailer: str | None = None


class ExecutionResponse(BaseModel):
    """Execution representation including retry bookkeeping."""

    execution_id: UUID
    rule_id: UUID
    user_id: UUID
    occasion_date: date
    occasion_key: str
    status: ExecutionStatus
    products: list[ExecutionProductResponse]
    total_amount_minor: int
    budget_limit_minor: int
    retry_count: int
    timeout_count: int
    next_retry_at: datetime | None
    awaiting_payment_update: bool
    order_id: str | None
    error_message: str | None
    address_source: AddressSource
    address_needs_confirmation: bool
    created_at: datetime
    updated_at: datetime


class ExecutionListResponse(BaseModel):
    """List of executions."""

    executions: list[ExecutionResponse]
    total_count: int


class ApproveExecutionRequest(BaseModel):
    """POST /v1/executions/{execution_id}/approve request body."""

    selected_product_ids: list[str] = Field(default_factory=list, max_length=25)
    shipping_address: ShippingAddressModel | None = None


class RejectExecutionRequest(BaseModel):
    """POST /v1/executions/{execution_id}/reject request body."""

    reason: str | None = Field(None, max_length=500)


class FulfillmentConfirmationRequest(BaseModel):
    """POST /v1/executions/{execution_id}/fulfillment request body."""

    order_id: str = Field(..., min_length=1, max_length=255)


# ============================================================================
# Payment Health Models
# ============================================================================


class PaymentMethodHealthResponse(BaseModel):
    """Derived health of one payment method."""

    payment_method_id: str
    status: PaymentHealthStatus
    rules_count: int
    rule_ids: list[UUID]
    last_verified: datetime | None
    brand: str | None = None
    last_four: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class PaymentHealthSummaryResponse(BaseModel):
    """GET /v1/payment-health response."""

    user_id: UUID
    payment_methods: list[PaymentMethodHealthResponse]
    unhealthy_count: int


class RefreshPaymentHealthRequest(BaseModel):
    """POST /v1/payment-health/refresh request body."""

    user_id: UUID


class ReplacePaymentMethodRequest(BaseModel):
    """POST /v1/payment-methods/replace request body."""

    user_id: UUID
    old_payment_method_id: str = Field(..., min_length=1, max_length=255)
    new_payment_method_id: str = Field(..., min_length=1, max_length=255)


class ReplacePaymentMethodResponse(BaseModel):
    """Result of re-pointing rules to a new payment method."""

    rules_updated: int
    executions_rearmed: int


# ============================================================================
# Scheduler Models
# ============================================================================


class SchedulerRunRequest(BaseModel):
    """Body for scheduler hooks. Defaults to the current time."""

    as_of: datetime | None = None
    limit: int | None = Field(None, gt=0, le=500)


class TriggerRunResponse(BaseModel):
    """Result of one trigger evaluation run."""

    due: int
    created: int
    skipped: int
    failed: int
    cancelled_duplicates: int
    execution_ids: list[UUID]


class SweepRunResponse(BaseModel):
    """Result of one retry sweep."""

    processed: int
    placed: int
    retrying: int
    failed: int
    awaiting_approval: int
    errors: int


class NotificationRunResponse(BaseModel):
    """Result of one upcoming-occasion reminder run."""

    notified: int


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
