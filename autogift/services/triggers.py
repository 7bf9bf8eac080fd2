"""
Trigger Evaluator - turns due rules into pending executions.

NO DICTIONARIES - All data uses strongly typed models.

An occasion instance is identified by its occasion key ("birthday:2026-03-14").
The evaluator creates at most one execution per key; if concurrent runs both
insert, duplicate resolution cancels all but the newest live execution.
"""

import time
from datetime import date, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.db.models import AutoGiftRule, Execution
from autogift.exceptions import ConcurrencyError, GiftingError, InvalidRuleError, RuleNotFoundError
from autogift.models.api import ExecutionStatus, NotificationEvent
from autogift.models.domain import ExecutionData, RuleData, TriggerResult
from autogift.observability.logging import get_logger
from autogift.observability.metrics import metrics
from autogift.observability.tracing import trace_operation
from autogift.services.executions import execution_to_data, load_execution
from autogift.services.notifications import NotificationDispatcher
from autogift.services.occasions import next_occurrence, occasion_key
from autogift.services.providers import NotificationPayload
from autogift.services.rules import rule_to_data
from autogift.services.state_machine import LIVE_STATUSES, transition

logger = get_logger(__name__)

_LIVE = [status.value for status in LIVE_STATUSES]


class TriggerEvaluator:
    """Finds rules with an occasion coming up and opens executions for them."""

    def __init__(
        self,
        session: AsyncSession,
        notifier: NotificationDispatcher,
        window_days: int = 7,
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.window_days = window_days

    async def due_rules(self, as_of: date) -> list[tuple[RuleData, date]]:
        """Active rules whose next occasion falls in [as_of, as_of + window]."""
        horizon = as_of + timedelta(days=self.window_days)
        due: list[tuple[RuleData, date]] = []
        for rule in await self._active_rules():
            occasion_date = next_occurrence(
                rule.date_type, rule.scheduled_date, rule.occasion_anchor_date, as_of
            )
            if occasion_date is not None and occasion_date <= horizon:
                due.append((rule, occasion_date))
        return due

    async def evaluate(self, as_of: date) -> TriggerResult:
        """
        Create executions for every due rule.

        Each rule commits on its own; one rule failing is logged and counted
        without stopping the run.
        """
        result = TriggerResult()
        started = time.perf_counter()

        with trace_operation("trigger_evaluation", as_of=as_of.isoformat()):
            due = await self.due_rules(as_of)
            result.due = len(due)

            for rule, occasion_date in due:
                key = occasion_key(rule.date_type, occasion_date)
                try:
                    if await self._has_execution(rule.rule_id, key):
                        result.skipped += 1
                        continue
                    execution = await self._create(rule, occasion_date, key)
                    result.cancelled_duplicates += await self.resolve_duplicates(rule.rule_id, key)
                except (GiftingError, SQLAlchemyError) as exc:
                    await self.session.rollback()
                    result.failed += 1
                    metrics.record_error(type(exc).__name__, "trigger")
                    logger.error(
                        "trigger_rule_failed",
                        rule_id=str(rule.rule_id),
                        occasion_key=key,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    continue
                result.created += 1
                result.execution_ids.append(execution.id)

        metrics.trigger_duration_seconds.observe(time.perf_counter() - started)
        logger.info(
            "trigger_evaluation_completed",
            as_of=as_of.isoformat(),
            due=result.due,
            created=result.created,
            skipped=result.skipped,
            failed=result.failed,
            cancelled_duplicates=result.cancelled_duplicates,
        )
        return result

    async def trigger_rule(self, rule_id: UUID, as_of: date) -> ExecutionData:
        """
        Manually open an execution for the rule's next occasion.

        Returns the live execution instead if one already exists.

        Raises:
            RuleNotFoundError: no such rule
            InvalidRuleError: rule is inactive or has no upcoming occasion
        """
        row = await self.session.get(AutoGiftRule, rule_id)
        if row is None:
            raise RuleNotFoundError(rule_id)
        rule = rule_to_data(row)
        if not rule.is_active:
            raise InvalidRuleError(f"rule {rule_id} is inactive")

        occasion_date = next_occurrence(
            rule.date_type, rule.scheduled_date, rule.occasion_anchor_date, as_of
        )
        if occasion_date is None:
            raise InvalidRuleError(f"rule {rule_id} has no upcoming occasion")

        key = occasion_key(rule.date_type, occasion_date)
        live = await self._live_executions(rule_id, key)
        if live:
            logger.info(
                "manual_trigger_found_live_execution", rule_id=str(rule_id), occasion_key=key
            )
            return execution_to_data(live[0])

        execution = await self._create(rule, occasion_date, key)
        await self.resolve_duplicates(rule_id, key)
        return execution_to_data(await load_execution(self.session, execution.id))

    async def resolve_duplicates(self, rule_id: UUID, key: str) -> int:
        """
        Cancel every live execution for the key except the newest.

        Returns:
            Number of executions cancelled
        """
        live = await self._live_executions(rule_id, key)
        if len(live) < 2:
            return 0

        survivor, older = live[0], live[1:]
        cancelled = 0
        for execution in older:
            try:
                await transition(
                    self.session,
                    execution,
                    ExecutionStatus.CANCELLED,
                    error_message=f"Superseded by execution {survivor.id}",
                )
            except ConcurrencyError:
                continue
            await self.session.commit()
            cancelled += 1

        logger.warning(
            "duplicate_executions_cancelled",
            rule_id=str(rule_id),
            occasion_key=key,
            survivor_id=str(survivor.id),
            cancelled=cancelled,
        )
        return cancelled

    async def upcoming_notifications(self, as_of: date) -> int:
        """Remind owners whose occasion is exactly one of their reminder offsets away."""
        notified = 0
        for rule in await self._active_rules():
            if not rule.notifications.enabled:
                continue
            occasion_date = next_occurrence(
                rule.date_type, rule.scheduled_date, rule.occasion_anchor_date, as_of
            )
            if occasion_date is None:
                continue
            days_away = (occasion_date - as_of).days
            if days_away not in rule.notifications.days_before:
                continue

            self.notifier.emit(
                rule.user_id,
                NotificationEvent.OCCASION_UPCOMING,
                NotificationPayload(
                    message=f"{rule.date_type.replace('_', ' ').title()} is in {days_away} days.",
                    rule_id=rule.rule_id,
                    occasion_date=occasion_date,
                ),
            )
            notified += 1
        return notified

    async def _create(self, rule: RuleData, occasion_date: date, key: str) -> Execution:
        execution = Execution(
            rule_id=rule.rule_id,
            user_id=rule.user_id,
            occasion_date=occasion_date,
            occasion_key=key,
            status=ExecutionStatus.PENDING.value,
            budget_limit_minor=rule.budget_limit_minor,
        )
        self.session.add(execution)
        await self.session.flush()
        await self.session.commit()

        metrics.executions_created_total.inc()
        logger.info(
            "execution_created",
            execution_id=str(execution.id),
            rule_id=str(rule.rule_id),
            occasion_key=key,
        )
        return execution

    async def _active_rules(self) -> list[RuleData]:
        result = await self.session.execute(
            select(AutoGiftRule)
            .where(AutoGiftRule.is_active.is_(True))
            .order_by(AutoGiftRule.created_at)
        )
        return [rule_to_data(rule) for rule in result.scalars().all()]

    async def _live_executions(self, rule_id: UUID, key: str) -> list[Execution]:
        """Newest first."""
        result = await self.session.execute(
            select(Execution)
            .where(
                Execution.rule_id == rule_id,
                Execution.occasion_key == key,
                Execution.status.in_(_LIVE),
            )
            .order_by(Execution.created_at.desc(), Execution.id.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _has_execution(self, rule_id: UUID, key: str) -> bool:
        """Any execution for the key that wasn't cancelled, finished or not."""
        result = await self.session.execute(
            select(Execution.id)
            .where(
                Execution.rule_id == rule_id,
                Execution.occasion_key == key,
                Execution.status != ExecutionStatus.CANCELLED.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
