"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Column types are portable so the same metadata runs on PostgreSQL and SQLite.
"""

from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime on every backend.

    SQLite drops tzinfo on the way in, so values are normalised to UTC before
    binding and re-tagged as UTC when loaded.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return value
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


JSONType = JSON().with_variant(JSONB(), "postgresql")

_LIVE_STATUS_FILTER = text(
    "status NOT IN ('completed', 'failed', 'cancelled', 'rejected')"
)


class AutoGiftRule(Base):
    """
    ORM model for auto_gift_rules table.

    Standing instruction to gift a recipient for an occasion. Soft-retired via
    is_active; never hard-deleted while executions reference it.
    """

    __tablename__ = "auto_gift_rules"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Target - exactly one of these
    recipient_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    pending_recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Occasion
    date_type: Mapped[str] = mapped_column(String(50), nullable=False)
    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    occasion_anchor_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Budget
    budget_limit_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Behaviour
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Payment - the reference is owned by the payment domain; the flag is sticky
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="valid"
    )
    payment_method_last_verified: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    # Selection criteria
    selection_source: Mapped[str] = mapped_column(String(20), nullable=False)
    min_price_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    max_price_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    categories: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    exclude_items: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    preferred_brands: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    specific_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Notifications
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notification_days: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("budget_limit_minor > 0", name="ck_rules_budget_positive"),
        CheckConstraint(
            "(recipient_id IS NULL) <> (pending_recipient_email IS NULL)",
            name="ck_rules_single_target",
        ),
        CheckConstraint(
            "payment_method_status IN ('valid', 'invalid', 'detached')",
            name="ck_rules_payment_method_status",
        ),
        CheckConstraint(
            "selection_source IN ('wishlist', 'ai', 'both', 'specific')",
            name="ck_rules_selection_source",
        ),
        CheckConstraint(
            "selection_source <> 'specific' OR specific_product_id IS NOT NULL",
            name="ck_rules_specific_product",
        ),
        Index("idx_rules_user_active", "user_id", "is_active"),
        Index("idx_rules_payment_method", "payment_method_id"),
    )


class Execution(Base):
    """
    ORM model for auto_gift_executions table.

    One concrete attempt to fulfil a rule for an occasion instance. Every
    status write is a compare-and-set on (status, version).
    """

    __tablename__ = "auto_gift_executions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Foreign Keys
    rule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("auto_gift_rules.id"), nullable=False, index=True
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Occasion instance
    occasion_date: Mapped[date] = mapped_column(Date, nullable=False)
    occasion_key: Mapped[str] = mapped_column(String(80), nullable=False)

    # State
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Money
    total_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    budget_limit_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timeout_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    awaiting_payment_update: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    placement_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Outcome
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Shipping
    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    address_source: Mapped[str] = mapped_column(String(30), nullable=False, default="missing")
    address_needs_confirmation: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Audit timestamps
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    products: Mapped[list["ExecutionProduct"]] = relationship(
        "ExecutionProduct",
        lazy="selectin",
        order_by="ExecutionProduct.rank",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("total_amount_minor >= 0", name="ck_executions_total_non_negative"),
        CheckConstraint("retry_count >= 0", name="ck_executions_retry_non_negative"),
        CheckConstraint("version > 0", name="ck_executions_version_positive"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'pending_approval', 'approved', "
            "'order_placed', 'order_failed', 'completed', 'failed', 'cancelled', 'rejected')",
            name="ck_executions_status",
        ),
        CheckConstraint(
            "status NOT IN ('approved', 'order_placed', 'completed') "
            "OR total_amount_minor <= budget_limit_minor",
            name="ck_executions_within_budget",
        ),
        Index("idx_executions_rule_occasion", "rule_id", "occasion_key"),
        Index(
            "idx_executions_live",
            "rule_id",
            "occasion_key",
            postgresql_where=_LIVE_STATUS_FILTER,
        ),
        Index("idx_executions_status_retry", "status", "next_retry_at"),
        Index("idx_executions_user_status", "user_id", "status"),
    )


class ExecutionProduct(Base):
    """
    ORM model for auto_gift_execution_products table.

    Candidate products with prices frozen at selection time.
    """

    __tablename__ = "auto_gift_execution_products"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    execution_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("auto_gift_executions.id", ondelete="CASCADE"), nullable=False
    )
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    retailer: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    review_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("price_minor >= 0", name="ck_execution_products_price"),
        UniqueConstraint("execution_id", "product_id", name="uq_execution_product"),
        Index("idx_execution_products_execution", "execution_id"),
    )


class OrderAttempt(Base):
    """
    ORM model for order_attempts table.

    Immutable audit row per Order Placer call.
    """

    __tablename__ = "order_attempts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    execution_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("auto_gift_executions.id"), nullable=False
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "outcome IN ('succeeded', 'failed', 'timeout')", name="ck_order_attempts_outcome"
        ),
        Index("idx_order_attempts_execution", "execution_id", "attempt_number"),
    )


class APIKey(Base):
    """
    ORM model for api_keys table.

    Stores hashed API keys for service authentication.
    """

    __tablename__ = "api_keys"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Key storage (hashed with Argon2id)
    key_hash: Mapped[str] = mapped_column(Text, nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)

    # Metadata
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    environment: Mapped[str] = mapped_column(String(10), nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    __table_args__ = (
        CheckConstraint("environment IN ('test', 'live')", name="ck_api_keys_environment"),
        CheckConstraint("status IN ('active', 'revoked')", name="ck_api_keys_status"),
        Index("idx_api_keys_status", "status"),
    )
