"""
Scheduler Routes - hooks an external scheduler calls on a timer.

Each hook is safe to call repeatedly; overlapping calls are resolved by the
execution compare-and-set.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends

from autogift.api.dependencies import (
    get_orchestrator,
    get_trigger_evaluator,
    require_permission,
)
from autogift.models.api import (
    NotificationRunResponse,
    SchedulerRunRequest,
    SweepRunResponse,
    TriggerRunResponse,
)
from autogift.observability.logging import get_logger
from autogift.services.api_key import PERMISSION_SCHEDULER, APIKeyData
from autogift.services.orchestrator import ExecutionOrchestrator
from autogift.services.triggers import TriggerEvaluator

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/scheduler", tags=["scheduler"])


def _as_of(request: SchedulerRunRequest) -> datetime:
    if request.as_of is None:
        return datetime.now(UTC)
    if request.as_of.tzinfo is None:
        return request.as_of.replace(tzinfo=UTC)
    return request.as_of.astimezone(UTC)


@router.post("/trigger", response_model=TriggerRunResponse)
async def run_trigger(
    request: SchedulerRunRequest,
    evaluator: TriggerEvaluator = Depends(get_trigger_evaluator),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_SCHEDULER)),
) -> TriggerRunResponse:
    """
    Open pending executions for rules whose occasion is inside the window.

    Selection runs on the next sweep.
    """
    result = await evaluator.evaluate(_as_of(request).date())
    return TriggerRunResponse(
        due=result.due,
        created=result.created,
        skipped=result.skipped,
        failed=result.failed,
        cancelled_duplicates=result.cancelled_duplicates,
        execution_ids=result.execution_ids,
    )


@router.post("/sweep", response_model=SweepRunResponse)
async def run_sweep(
    request: SchedulerRunRequest,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_SCHEDULER)),
) -> SweepRunResponse:
    """Advance pending, stale, retry-due and reconciliation-due executions."""
    result = await orchestrator.sweep(_as_of(request), request.limit)
    return SweepRunResponse(
        processed=result.processed,
        placed=result.placed,
        retrying=result.retrying,
        failed=result.failed,
        awaiting_approval=result.awaiting_approval,
        errors=result.errors,
    )


@router.post("/notifications", response_model=NotificationRunResponse)
async def run_notifications(
    request: SchedulerRunRequest,
    evaluator: TriggerEvaluator = Depends(get_trigger_evaluator),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_SCHEDULER)),
) -> NotificationRunResponse:
    """Send upcoming-occasion reminders due today."""
    notified = await evaluator.upcoming_notifications(_as_of(request).date())
    logger.info("occasion_reminders_sent", notified=notified)
    return NotificationRunResponse(notified=notified)
