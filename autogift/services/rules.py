"""
Rule Store - durable CRUD for auto-gift rules with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Rules are soft-retired by deactivation and never hard-deleted. Defaults for
unspecified settings come from an explicit RuleDefaults value supplied by the
caller.
"""

from datetime import UTC, date, datetime
from typing import assert_never
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.db.models import AutoGiftRule
from autogift.exceptions import InvalidRuleError, RuleNotFoundError, WriteVerificationError
from autogift.models.api import PaymentMethodFlag, SelectionSource
from autogift.models.domain import (
    AISelection,
    HybridSelection,
    NotificationPreferences,
    RuleData,
    RuleDefaults,
    RuleIntent,
    RuleUpdate,
    SelectionCriteria,
    SpecificProductSelection,
    WishlistSelection,
    default_criteria,
    validate_target,
)
from autogift.observability.logging import get_logger
from autogift.services.occasions import is_schedulable
from autogift.services.payment_health import rearm_blocked_executions

logger = get_logger(__name__)


def criteria_from_row(rule: AutoGiftRule) -> SelectionCriteria:
    """Rebuild the selection criteria variant from its columns."""
    common = {
        "min_price_minor": rule.min_price_minor,
        "max_price_minor": rule.max_price_minor,
        "categories": tuple(rule.categories or ()),
        "exclude_items": tuple(rule.exclude_items or ()),
        "preferred_brands": tuple(rule.preferred_brands or ()),
    }
    source = SelectionSource(rule.selection_source)
    if source is SelectionSource.WISHLIST:
        return WishlistSelection(**common)
    if source is SelectionSource.AI:
        return AISelection(**common)
    if source is SelectionSource.BOTH:
        return HybridSelection(**common)
    if source is SelectionSource.SPECIFIC:
        return SpecificProductSelection(product_id=rule.specific_product_id or "", **common)
    assert_never(source)


def apply_criteria(rule: AutoGiftRule, criteria: SelectionCriteria) -> None:
    """Write a selection criteria variant onto the rule's columns."""
    rule.selection_source = criteria.source.value
    rule.min_price_minor = criteria.min_price_minor
    rule.max_price_minor = criteria.max_price_minor
    rule.categories = list(criteria.categories)
    rule.exclude_items = list(criteria.exclude_items)
    rule.preferred_brands = list(criteria.preferred_brands)
    if isinstance(criteria, SpecificProductSelection):
        rule.specific_product_id = criteria.product_id
    elif isinstance(criteria, (WishlistSelection, AISelection, HybridSelection)):
        rule.specific_product_id = None
    else:
        assert_never(criteria)


def rule_to_data(rule: AutoGiftRule) -> RuleData:
    """Convert ORM rule to immutable snapshot."""
    return RuleData(
        rule_id=rule.id,
        user_id=rule.user_id,
        recipient_id=rule.recipient_id,
        pending_recipient_email=rule.pending_recipient_email,
        date_type=rule.date_type,
        scheduled_date=rule.scheduled_date,
        occasion_anchor_date=rule.occasion_anchor_date,
        budget_limit_minor=rule.budget_limit_minor,
        currency=rule.currency,
        is_active=rule.is_active,
        auto_approve=rule.auto_approve,
        payment_method_id=rule.payment_method_id,
        payment_method_status=PaymentMethodFlag(rule.payment_method_status),
        payment_method_last_verified=rule.payment_method_last_verified,
        criteria=criteria_from_row(rule),
        notifications=NotificationPreferences(
            enabled=rule.notifications_enabled,
            days_before=tuple(rule.notification_days or ()),
        ),
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _check_schedulable(date_type: str, scheduled: date | None, anchor: date | None) -> None:
    if not is_schedulable(date_type, scheduled, anchor):
        raise InvalidRuleError(
            f"occasion '{date_type}' needs a scheduled_date or occasion_anchor_date"
        )


class RuleService:
    """
    Rule CRUD.

    Every write is flushed, re-read and verified before commit.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_rule(self, intent: RuleIntent, defaults: RuleDefaults) -> RuleData:
        """
        Create a rule, seeding unspecified settings from defaults.

        Raises:
            InvalidRuleError: target or occasion is incomplete
            WriteVerificationError: the insert could not be read back
        """
        _check_schedulable(intent.date_type, intent.scheduled_date, intent.occasion_anchor_date)

        criteria = intent.criteria or default_criteria(defaults.selection_source)
        notifications = intent.notifications or NotificationPreferences(
            enabled=True, days_before=defaults.notification_days
        )

        rule = AutoGiftRule(
            user_id=intent.user_id,
            recipient_id=intent.recipient_id,
            pending_recipient_email=intent.pending_recipient_email,
            date_type=intent.date_type,
            scheduled_date=intent.scheduled_date,
            occasion_anchor_date=intent.occasion_anchor_date,
            budget_limit_minor=intent.budget_limit_minor or defaults.budget_limit_minor,
            currency=intent.currency or defaults.currency,
            is_active=True,
            auto_approve=(
                intent.auto_approve if intent.auto_approve is not None else defaults.auto_approve
            ),
            payment_method_id=intent.payment_method_id,
            payment_method_status=PaymentMethodFlag.VALID.value,
            notifications_enabled=notifications.enabled,
            notification_days=list(notifications.days_before),
        )
        apply_criteria(rule, criteria)

        self.session.add(rule)
        await self.session.flush()

        verified = await self.session.get(AutoGiftRule, rule.id)
        if verified is None:
            raise WriteVerificationError(f"Rule {rule.id} not found after insert")

        await self.session.commit()

        logger.info(
            "rule_created",
            rule_id=str(rule.id),
            user_id=str(rule.user_id),
            date_type=rule.date_type,
            budget_limit_minor=rule.budget_limit_minor,
            auto_approve=rule.auto_approve,
            selection_source=rule.selection_source,
        )
        return rule_to_data(rule)

    async def update_rule(self, rule_id: UUID, changes: RuleUpdate) -> RuleData:
        """
        Apply a settings edit.

        Changing the payment method clears the sticky payment flag.

        Raises:
            RuleNotFoundError: no such rule
            InvalidRuleError: rule is inactive, or the edit breaks an invariant
        """
        rule = await self.get_rule_row(rule_id)
        if not rule.is_active:
            raise InvalidRuleError(f"rule {rule_id} is inactive")

        if changes.recipient_id is not None:
            rule.recipient_id = changes.recipient_id
            rule.pending_recipient_email = None
        elif changes.pending_recipient_email:
            rule.recipient_id = None
            rule.pending_recipient_email = changes.pending_recipient_email
        validate_target(rule.recipient_id, rule.pending_recipient_email)

        if changes.date_type is not None:
            rule.date_type = changes.date_type
        if changes.scheduled_date is not None:
            rule.scheduled_date = changes.scheduled_date
        if changes.occasion_anchor_date is not None:
            rule.occasion_anchor_date = changes.occasion_anchor_date
        _check_schedulable(rule.date_type, rule.scheduled_date, rule.occasion_anchor_date)

        if changes.budget_limit_minor is not None:
            rule.budget_limit_minor = changes.budget_limit_minor
        if changes.auto_approve is not None:
            rule.auto_approve = changes.auto_approve
        if changes.criteria is not None:
            apply_criteria(rule, changes.criteria)
        if changes.notifications is not None:
            rule.notifications_enabled = changes.notifications.enabled
            rule.notification_days = list(changes.notifications.days_before)

        if (
            changes.payment_method_id is not None
            and changes.payment_method_id != rule.payment_method_id
        ):
            rule.payment_method_id = changes.payment_method_id
            rule.payment_method_status = PaymentMethodFlag.VALID.value
            rule.payment_method_last_verified = None
            await rearm_blocked_executions(self.session, [rule.id], datetime.now(UTC))

        await self.session.flush()
        await self.session.commit()

        logger.info("rule_updated", rule_id=str(rule_id))
        return rule_to_data(rule)

    async def deactivate_rule(self, rule_id: UUID) -> RuleData:
        """
        Soft-retire a rule. In-flight executions continue to a terminal state.

        Idempotent on already inactive rules.
        """
        rule = await self.get_rule_row(rule_id)
        if rule.is_active:
            rule.is_active = False
            rule.deactivated_at = datetime.now(UTC)
            await self.session.flush()
            await self.session.commit()
            logger.info("rule_deactivated", rule_id=str(rule_id))
        return rule_to_data(rule)

    async def get_rule(self, rule_id: UUID) -> RuleData:
        return rule_to_data(await self.get_rule_row(rule_id))

    async def list_rules(self, user_id: UUID, include_inactive: bool = False) -> list[RuleData]:
        stmt = select(AutoGiftRule).where(AutoGiftRule.user_id == user_id)
        if not include_inactive:
            stmt = stmt.where(AutoGiftRule.is_active.is_(True))
        stmt = stmt.order_by(AutoGiftRule.created_at)
        result = await self.session.execute(stmt)
        return [rule_to_data(rule) for rule in result.scalars().all()]

    async def get_rule_row(self, rule_id: UUID) -> AutoGiftRule:
        rule = await self.session.get(AutoGiftRule, rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule
