"""
Payment Health Routes - health summaries, verification and method replacement.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends

from autogift.api.dependencies import get_payment_health_service, require_permission
from autogift.api.routes import http_error
from autogift.exceptions import GiftingError
from autogift.models.api import (
    PaymentHealthStatus,
    PaymentHealthSummaryResponse,
    PaymentMethodHealthResponse,
    RefreshPaymentHealthRequest,
    ReplacePaymentMethodRequest,
    ReplacePaymentMethodResponse,
)
from autogift.models.domain import PaymentMethodHealth
from autogift.services.api_key import PERMISSION_READ, PERMISSION_WRITE, APIKeyData
from autogift.services.payment_health import PaymentHealthService

router = APIRouter(tags=["payment-health"])


def summary_response(
    user_id: UUID, health: list[PaymentMethodHealth]
) -> PaymentHealthSummaryResponse:
    return PaymentHealthSummaryResponse(
        user_id=user_id,
        payment_methods=[
            PaymentMethodHealthResponse(
                payment_method_id=h.payment_method_id,
                status=h.status,
                rules_count=h.rules_count,
                rule_ids=list(h.rule_ids),
                last_verified=h.last_verified,
                brand=h.brand,
                last_four=h.last_four,
                exp_month=h.exp_month,
                exp_year=h.exp_year,
            )
            for h in health
        ],
        unhealthy_count=sum(1 for h in health if h.status is not PaymentHealthStatus.VALID),
    )


@router.get("/v1/payment-health", response_model=PaymentHealthSummaryResponse)
async def get_payment_health(
    user_id: UUID,
    service: PaymentHealthService = Depends(get_payment_health_service),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_READ)),
) -> PaymentHealthSummaryResponse:
    """
    Health of every payment method the user's rules reference.

    Computed on every call from the card record and any invalid/detached
    flags left by failed orders.
    """
    try:
        health = await service.summary(user_id, datetime.now(UTC))
    except GiftingError as exc:
        raise http_error(exc) from exc
    return summary_response(user_id, health)


@router.post("/v1/payment-health/refresh", response_model=PaymentHealthSummaryResponse)
async def refresh_payment_health(
    request: RefreshPaymentHealthRequest,
    service: PaymentHealthService = Depends(get_payment_health_service),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> PaymentHealthSummaryResponse:
    """Verify payment methods with the payment provider now."""
    try:
        health = await service.refresh(request.user_id, datetime.now(UTC))
    except GiftingError as exc:
        raise http_error(exc) from exc
    return summary_response(request.user_id, health)


@router.post("/v1/payment-methods/replace", response_model=ReplacePaymentMethodResponse)
async def replace_payment_method(
    request: ReplacePaymentMethodRequest,
    service: PaymentHealthService = Depends(get_payment_health_service),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> ReplacePaymentMethodResponse:
    """
    Point every rule using the old method at the new one.

    Orders that failed on the old card become eligible to retry immediately.
    """
    try:
        rules_updated, rearmed = await service.replace_payment_method(
            request.user_id,
            request.old_payment_method_id,
            request.new_payment_method_id,
            datetime.now(UTC),
        )
    except GiftingError as exc:
        raise http_error(exc) from exc
    return ReplacePaymentMethodResponse(rules_updated=rules_updated, executions_rearmed=rearmed)
