#!/usr/bin/env python3
"""
Scheduler Tick Script

Runs one scheduler cycle without the HTTP surface:
1. Open executions for rules whose occasion is inside the trigger window
2. Sweep pending, stale, retry-due and placement-due executions
3. Send upcoming-occasion reminders

Meant for cron or a Kubernetes CronJob. Safe to overlap with itself.
"""

import argparse
import asyncio
import os
import sys
from datetime import UTC, datetime

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from autogift.api.dependencies import close_providers, get_providers
from autogift.config import get_settings
from autogift.db.session import close_engines, get_write_session
from autogift.observability import get_logger, setup_logging
from autogift.services.orchestrator import ExecutionOrchestrator, OrchestratorConfig
from autogift.services.payment_health import PaymentHealthService
from autogift.services.triggers import TriggerEvaluator

setup_logging()
logger = get_logger(__name__)


async def run_tick(as_of: datetime, skip_notifications: bool) -> None:
    """Run trigger, sweep and reminders once."""
    settings = get_settings()
    providers = get_providers()

    async with get_write_session() as session:
        evaluator = TriggerEvaluator(
            session, providers.dispatcher, settings.trigger_window_days
        )
        triggered = await evaluator.evaluate(as_of.date())

        orchestrator = ExecutionOrchestrator(
            session=session,
            selector=providers.selector,
            recipients=providers.recipients,
            placer=providers.placer,
            payment_health=PaymentHealthService(
                session, providers.payment_methods, settings.expiring_soon_days
            ),
            notifier=providers.dispatcher,
            config=OrchestratorConfig.from_settings(settings),
        )
        swept = await orchestrator.sweep(as_of, settings.sweep_batch_size)

        notified = 0
        if not skip_notifications:
            notified = await evaluator.upcoming_notifications(as_of.date())

    logger.info(
        "scheduler_tick_completed",
        created=triggered.created,
        skipped=triggered.skipped,
        trigger_failures=triggered.failed,
        processed=swept.processed,
        placed=swept.placed,
        retrying=swept.retrying,
        sweep_errors=swept.errors,
        notified=notified,
    )


async def run(as_of: datetime, skip_notifications: bool) -> None:
    try:
        await run_tick(as_of, skip_notifications)
    finally:
        await close_providers()
        await close_engines()


def main():
    parser = argparse.ArgumentParser(
        description="Run one auto-gift scheduler cycle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a cycle for now (for cron jobs)
  python3 run_scheduler_tick.py

  # Replay a cycle as of a given instant
  python3 run_scheduler_tick.py --as-of 2026-12-18T09:00:00+00:00
        """,
    )
    parser.add_argument("--as-of", help="ISO-8601 instant to evaluate (default: now, UTC)")
    parser.add_argument(
        "--skip-notifications", action="store_true", help="Don't send occasion reminders"
    )

    args = parser.parse_args()

    as_of = datetime.now(UTC)
    if args.as_of:
        as_of = datetime.fromisoformat(args.as_of)
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=UTC)

    try:
        asyncio.run(run(as_of, args.skip_notifications))
    except KeyboardInterrupt:
        logger.info("scheduler_tick_interrupted")
        sys.exit(1)


if __name__ == "__main__":
    main()
