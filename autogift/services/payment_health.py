"""
Payment Health Monitor - derived health of payment methods referenced by rules.

Health is never stored. It is recomputed from the payment domain's card
record plus the sticky invalid/detached flags that order failures leave on
rules. The flag stays until the user replaces the method.
"""

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.db.models import AutoGiftRule, Execution
from autogift.exceptions import ConcurrencyError
from autogift.models.api import ExecutionStatus, PaymentHealthStatus, PaymentMethodFlag
from autogift.models.domain import PaymentMethodHealth, PaymentMethodRecord
from autogift.observability.logging import get_logger
from autogift.services.providers import PaymentMethodDirectory
from autogift.services.state_machine import compare_and_set

logger = get_logger(__name__)


def card_expires_at(exp_month: int, exp_year: int) -> datetime:
    """Cards are valid through the last day of their expiry month."""
    if exp_month == 12:
        return datetime(exp_year + 1, 1, 1, tzinfo=UTC)
    return datetime(exp_year, exp_month + 1, 1, tzinfo=UTC)


def evaluate(
    record: PaymentMethodRecord | None,
    flags: Iterable[PaymentMethodFlag],
    now: datetime,
    expiring_soon_days: int = 30,
) -> PaymentHealthStatus:
    """
    Classify a payment method.

    Sticky flags outrank the card record: detached, then invalid. A method the
    payment domain doesn't know is invalid. Otherwise expiry decides.
    """
    observed = set(flags)
    if PaymentMethodFlag.DETACHED in observed:
        return PaymentHealthStatus.DETACHED
    if PaymentMethodFlag.INVALID in observed:
        return PaymentHealthStatus.INVALID
    if record is None:
        return PaymentHealthStatus.INVALID
    if not record.attached:
        return PaymentHealthStatus.DETACHED

    expires_at = card_expires_at(record.exp_month, record.exp_year)
    if expires_at <= now:
        return PaymentHealthStatus.EXPIRED
    if expires_at - now <= timedelta(days=expiring_soon_days):
        return PaymentHealthStatus.EXPIRING_SOON
    return PaymentHealthStatus.VALID


async def rearm_blocked_executions(
    session: AsyncSession, rule_ids: Sequence[UUID], now: datetime
) -> int:
    """Let order_failed executions parked on a declined card retry right away."""
    if not rule_ids:
        return 0
    result = await session.execute(
        select(Execution).where(
            Execution.rule_id.in_(rule_ids),
            Execution.status == ExecutionStatus.ORDER_FAILED.value,
            Execution.awaiting_payment_update.is_(True),
        )
    )
    rearmed = 0
    for execution in result.scalars().all():
        try:
            await compare_and_set(
                session, execution, awaiting_payment_update=False, next_retry_at=now
            )
        except ConcurrencyError:
            continue
        rearmed += 1
        logger.info("execution_rearmed_after_payment_update", execution_id=str(execution.id))
    return rearmed


class PaymentHealthService:
    """Health summaries, on-demand verification and payment method replacement."""

    def __init__(
        self,
        session: AsyncSession,
        directory: PaymentMethodDirectory,
        expiring_soon_days: int = 30,
    ) -> None:
        self.session = session
        self.directory = directory
        self.expiring_soon_days = expiring_soon_days

    async def evaluate_method(
        self, user_id: UUID, payment_method_id: str, now: datetime
    ) -> PaymentHealthStatus:
        """Health of one method as seen across all of the user's rules."""
        rules = await self._rules_for_method(user_id, payment_method_id)
        record = await self.directory.get(payment_method_id)
        return evaluate(
            record,
            (PaymentMethodFlag(r.payment_method_status) for r in rules),
            now,
            self.expiring_soon_days,
        )

    async def summary(self, user_id: UUID, now: datetime) -> list[PaymentMethodHealth]:
        """Health for every payment method referenced by the user's rules."""
        by_method = await self._rules_by_method(user_id)
        health: list[PaymentMethodHealth] = []
        for payment_method_id, rules in by_method.items():
            record = await self.directory.get(payment_method_id)
            status = evaluate(
                record,
                (PaymentMethodFlag(r.payment_method_status) for r in rules),
                now,
                self.expiring_soon_days,
            )
            active = [r for r in rules if r.is_active]
            verified = [
                r.payment_method_last_verified for r in rules if r.payment_method_last_verified
            ]
            health.append(
                PaymentMethodHealth(
                    payment_method_id=payment_method_id,
                    status=status,
                    rules_count=len(active),
                    rule_ids=tuple(r.id for r in active),
                    last_verified=max(verified) if verified else None,
                    brand=record.brand if record else None,
                    last_four=record.last_four if record else None,
                    exp_month=record.exp_month if record else None,
                    exp_year=record.exp_year if record else None,
                )
            )
        return health

    async def refresh(self, user_id: UUID, now: datetime) -> list[PaymentMethodHealth]:
        """
        Verify each referenced method against the payment domain.

        Detached or unknown methods get a sticky flag; every checked rule gets
        payment_method_last_verified = now.
        """
        by_method = await self._rules_by_method(user_id)
        for payment_method_id, rules in by_method.items():
            record = await self.directory.get(payment_method_id)
            flag: PaymentMethodFlag | None = None
            if record is None:
                flag = PaymentMethodFlag.INVALID
            elif not record.attached:
                flag = PaymentMethodFlag.DETACHED

            for rule in rules:
                rule.payment_method_last_verified = now
                if flag is not None and not _outranks(rule.payment_method_status, flag):
                    rule.payment_method_status = flag.value

            if flag is not None:
                logger.warning(
                    "payment_method_flagged_on_verify",
                    user_id=str(user_id),
                    payment_method_id=payment_method_id,
                    flag=flag.value,
                )

        await self.session.flush()
        await self.session.commit()
        return await self.summary(user_id, now)

    async def mark_payment_failure(
        self, user_id: UUID, payment_method_id: str, detached: bool
    ) -> None:
        """Write the sticky flag on every rule of the user that uses this method."""
        flag = PaymentMethodFlag.DETACHED if detached else PaymentMethodFlag.INVALID
        stmt = update(AutoGiftRule).where(
            AutoGiftRule.user_id == user_id,
            AutoGiftRule.payment_method_id == payment_method_id,
        )
        if detached:
            await self.session.execute(stmt.values(payment_method_status=flag.value))
        else:
            await self.session.execute(
                stmt.where(
                    AutoGiftRule.payment_method_status == PaymentMethodFlag.VALID.value
                ).values(payment_method_status=flag.value)
            )
        logger.warning(
            "payment_method_flagged",
            user_id=str(user_id),
            payment_method_id=payment_method_id,
            flag=flag.value,
        )

    async def replace_payment_method(
        self, user_id: UUID, old_payment_method_id: str, new_payment_method_id: str, now: datetime
    ) -> tuple[int, int]:
        """
        Re-point the user's rules to a new method and clear the sticky flag.

        Returns:
            (rules updated, executions re-armed for retry)
        """
        rules = await self._rules_for_method(user_id, old_payment_method_id)
        for rule in rules:
            rule.payment_method_id = new_payment_method_id
            rule.payment_method_status = PaymentMethodFlag.VALID.value
            rule.payment_method_last_verified = None

        rearmed = await rearm_blocked_executions(self.session, [r.id for r in rules], now)
        await self.session.commit()

        logger.info(
            "payment_method_replaced",
            user_id=str(user_id),
            rules_updated=len(rules),
            executions_rearmed=rearmed,
        )
        return len(rules), rearmed

    async def _rules_for_method(
        self, user_id: UUID, payment_method_id: str
    ) -> list[AutoGiftRule]:
        result = await self.session.execute(
            select(AutoGiftRule).where(
                AutoGiftRule.user_id == user_id,
                AutoGiftRule.payment_method_id == payment_method_id,
            )
        )
        return list(result.scalars().all())

    async def _rules_by_method(self, user_id: UUID) -> dict[str, list[AutoGiftRule]]:
        result = await self.session.execute(
            select(AutoGiftRule)
            .where(
                AutoGiftRule.user_id == user_id,
                AutoGiftRule.payment_method_id.is_not(None),
            )
            .order_by(AutoGiftRule.created_at)
        )
        grouped: dict[str, list[AutoGiftRule]] = defaultdict(list)
        for rule in result.scalars().all():
            assert rule.payment_method_id is not None
            grouped[rule.payment_method_id].append(rule)
        return dict(grouped)


def _outranks(current: str, incoming: PaymentMethodFlag) -> bool:
    """A detached flag is never downgraded to invalid."""
    return current == PaymentMethodFlag.DETACHED.value and incoming is PaymentMethodFlag.INVALID
