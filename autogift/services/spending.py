"""
Spending Limits - per-user monthly and annual caps on committed gift spend.

Committed spend is the total of every execution approved in the current
calendar period (UTC) that is still headed for, or has reached, a placed
order. Amounts are only compared within one currency.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.config import Settings
from autogift.db.models import AutoGiftRule, Execution
from autogift.exceptions import SpendingLimitExceededError
from autogift.models.api import ExecutionStatus
from autogift.observability.logging import get_logger

logger = get_logger(__name__)

COMMITTED_STATUSES = (
    ExecutionStatus.APPROVED.value,
    ExecutionStatus.ORDER_PLACED.value,
    ExecutionStatus.COMPLETED.value,
)


@dataclass(frozen=True)
class SpendingLimits:
    """Limits in minor units. None means unlimited."""

    monthly_limit_minor: int | None = None
    annual_limit_minor: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SpendingLimits":
        return cls(
            monthly_limit_minor=settings.monthly_spending_limit_minor,
            annual_limit_minor=settings.annual_spending_limit_minor,
        )

    @property
    def enabled(self) -> bool:
        return self.monthly_limit_minor is not None or self.annual_limit_minor is not None


def month_start(now: datetime) -> datetime:
    now = now.astimezone(UTC)
    return datetime(now.year, now.month, 1, tzinfo=UTC)


def year_start(now: datetime) -> datetime:
    return datetime(now.astimezone(UTC).year, 1, 1, tzinfo=UTC)


async def committed_spend(
    session: AsyncSession, user_id: UUID, currency: str, since: datetime
) -> int:
    """Sum of committed execution totals approved at or after `since`."""
    result = await session.execute(
        select(func.coalesce(func.sum(Execution.total_amount_minor), 0))
        .join(AutoGiftRule, AutoGiftRule.id == Execution.rule_id)
        .where(
            Execution.user_id == user_id,
            AutoGiftRule.currency == currency,
            Execution.status.in_(COMMITTED_STATUSES),
            Execution.approved_at >= since,
        )
    )
    return int(result.scalar_one())


async def check_spending_limits(
    session: AsyncSession,
    limits: SpendingLimits,
    user_id: UUID,
    currency: str,
    amount_minor: int,
    now: datetime,
) -> None:
    """
    Raise if committing `amount_minor` now would break a spending limit.

    Raises:
        SpendingLimitExceededError: monthly limit checked first, then annual
    """
    checks = (
        ("monthly", limits.monthly_limit_minor, month_start(now)),
        ("annual", limits.annual_limit_minor, year_start(now)),
    )
    for period, limit, since in checks:
        if limit is None:
            continue
        spent = await committed_spend(session, user_id, currency, since)
        if spent + amount_minor > limit:
            logger.warning(
                "spending_limit_exceeded",
                period=period,
                spent_minor=spent,
                amount_minor=amount_minor,
                limit_minor=limit,
            )
            raise SpendingLimitExceededError(period, spent, amount_minor, limit)
