"""
API Routes - FastAPI endpoints for rules, executions and approvals.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, date, datetime
from typing import assert_never
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.api.dependencies import (
    get_approval_gateway,
    get_orchestrator,
    get_rule_defaults,
    get_trigger_evaluator,
    require_permission,
)
from autogift.db.session import get_read_db, get_write_db
from autogift.exceptions import (
    AuthenticationError,
    BudgetExceededError,
    ConcurrencyError,
    DataIntegrityError,
    ExecutionNotFoundError,
    GiftingError,
    InvalidTransitionError,
    OrderPlacementError,
    ProviderError,
    RuleNotFoundError,
    SpendingLimitExceededError,
    UnknownProductError,
    ValidationError,
    WriteVerificationError,
)
from autogift.models.api import (
    AICriteriaModel,
    ApproveExecutionRequest,
    CreateRuleRequest,
    ExecutionListResponse,
    ExecutionProductResponse,
    ExecutionResponse,
    ExecutionStatus,
    FulfillmentConfirmationRequest,
    GiftSelectionCriteriaModel,
    HealthResponse,
    HybridCriteriaModel,
    NotificationPreferencesModel,
    RejectExecutionRequest,
    RuleListResponse,
    RuleResponse,
    ShippingAddressModel,
    SpecificCriteriaModel,
    UpdateRuleRequest,
    WishlistCriteriaModel,
)
from autogift.models.domain import (
    AISelection,
    ExecutionData,
    HybridSelection,
    NotificationPreferences,
    RuleData,
    RuleDefaults,
    RuleIntent,
    RuleUpdate,
    SelectionCriteria,
    ShippingAddress,
    SpecificProductSelection,
    WishlistSelection,
)
from autogift.observability.logging import get_logger
from autogift.services.api_key import (
    PERMISSION_READ,
    PERMISSION_WRITE,
    APIKeyData,
)
from autogift.services.approvals import ApprovalGateway
from autogift.services.executions import ExecutionQueryService
from autogift.services.occasions import next_occurrence
from autogift.services.orchestrator import ExecutionOrchestrator
from autogift.services.rules import RuleService
from autogift.services.triggers import TriggerEvaluator

logger = get_logger(__name__)

router = APIRouter()


# ============================================================================
# Error mapping
# ============================================================================


def http_error(exc: GiftingError) -> HTTPException:
    """Map a domain exception to its HTTP status."""
    if isinstance(exc, BudgetExceededError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": str(exc),
                "total_minor": exc.total_minor,
                "budget_minor": exc.budget_minor,
            },
        )
    if isinstance(exc, SpendingLimitExceededError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": str(exc),
                "period": exc.period,
                "spent_minor": exc.spent_minor,
                "amount_minor": exc.amount_minor,
                "limit_minor": exc.limit_minor,
            },
        )
    if isinstance(exc, UnknownProductError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "product_ids": exc.product_ids},
        )
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, (RuleNotFoundError, ExecutionNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidTransitionError, ConcurrencyError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (ProviderError, OrderPlacementError)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, AuthenticationError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, (WriteVerificationError, DataIntegrityError)):
        logger.error("data_integrity_failure", error=str(exc))
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        )
    logger.error("unmapped_domain_error", error=str(exc), error_type=type(exc).__name__)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


# ============================================================================
# Converters
# ============================================================================


def criteria_from_model(model: GiftSelectionCriteriaModel) -> SelectionCriteria:
    common = {
        "min_price_minor": model.min_price_minor,
        "max_price_minor": model.max_price_minor,
        "categories": tuple(model.categories),
        "exclude_items": tuple(model.exclude_items),
        "preferred_brands": tuple(model.preferred_brands),
    }
    if isinstance(model, WishlistCriteriaModel):
        return WishlistSelection(**common)
    if isinstance(model, AICriteriaModel):
        return AISelection(**common)
    if isinstance(model, HybridCriteriaModel):
        return HybridSelection(**common)
    if isinstance(model, SpecificCriteriaModel):
        return SpecificProductSelection(product_id=model.specific_product_id, **common)
    assert_never(model)


def criteria_to_model(criteria: SelectionCriteria) -> GiftSelectionCriteriaModel:
    common = {
        "min_price_minor": criteria.min_price_minor,
        "max_price_minor": criteria.max_price_minor,
        "categories": list(criteria.categories),
        "exclude_items": list(criteria.exclude_items),
        "preferred_brands": list(criteria.preferred_brands),
    }
    if isinstance(criteria, WishlistSelection):
        return WishlistCriteriaModel(**common)
    if isinstance(criteria, AISelection):
        return AICriteriaModel(**common)
    if isinstance(criteria, HybridSelection):
        return HybridCriteriaModel(**common)
    if isinstance(criteria, SpecificProductSelection):
        return SpecificCriteriaModel(specific_product_id=criteria.product_id, **common)
    assert_never(criteria)


def notifications_from_model(
    model: NotificationPreferencesModel, fallback_days: tuple[int, ...]
) -> NotificationPreferences:
    days = tuple(model.days_before) if model.days_before is not None else fallback_days
    return NotificationPreferences(enabled=model.enabled, days_before=days)


def address_from_model(model: ShippingAddressModel) -> ShippingAddress:
    return ShippingAddress(
        name=model.name,
        line1=model.line1,
        line2=model.line2,
        city=model.city,
        state=model.state,
        postal_code=model.postal_code,
        country=model.country.upper(),
    )


def rule_response(rule: RuleData, today: date) -> RuleResponse:
    return RuleResponse(
        rule_id=rule.rule_id,
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
        payment_method_status=rule.payment_method_status,
        payment_method_last_verified=rule.payment_method_last_verified,
        gift_selection_criteria=criteria_to_model(rule.criteria),
        notification_preferences=NotificationPreferencesModel(
            enabled=rule.notifications.enabled,
            days_before=list(rule.notifications.days_before),
        ),
        next_occasion_date=(
            next_occurrence(
                rule.date_type, rule.scheduled_date, rule.occasion_anchor_date, today
            )
            if rule.is_active
            else None
        ),
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def execution_response(execution: ExecutionData) -> ExecutionResponse:
    return ExecutionResponse(
        execution_id=execution.execution_id,
        rule_id=execution.rule_id,
        user_id=execution.user_id,
        occasion_date=execution.occasion_date,
        occasion_key=execution.occasion_key,
        status=execution.status,
        products=[
            ExecutionProductResponse(
                product_id=p.product_id,
                title=p.title,
                price_minor=p.price_minor,
                currency=p.currency,
                rank=p.rank,
                is_selected=p.is_selected,
                image_url=p.image_url,
                retailer=p.retailer,
            )
            for p in execution.products
        ],
        total_amount_minor=execution.total_amount_minor,
        budget_limit_minor=execution.budget_limit_minor,
        retry_count=execution.retry_count,
        timeout_count=execution.timeout_count,
        next_retry_at=execution.next_retry_at,
        awaiting_payment_update=execution.awaiting_payment_update,
        order_id=execution.order_id,
        error_message=execution.error_message,
        address_source=execution.address_source,
        address_needs_confirmation=execution.address_needs_confirmation,
        created_at=execution.created_at,
        updated_at=execution.updated_at,
    )


def _execution_list(executions: list[ExecutionData]) -> ExecutionListResponse:
    return ExecutionListResponse(
        executions=[execution_response(e) for e in executions],
        total_count=len(executions),
    )


def _today() -> date:
    return datetime.now(UTC).date()


# ============================================================================
# Rules
# ============================================================================


@router.post(
    "/v1/rules",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_rule(
    request: CreateRuleRequest,
    db: AsyncSession = Depends(get_write_db),
    defaults: RuleDefaults = Depends(get_rule_defaults),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> RuleResponse:
    """
    Create an auto-gift rule.

    Unspecified budget, reminder days, auto-approve and selection source
    are seeded from configured defaults.
    """
    try:
        intent = RuleIntent(
            user_id=request.user_id,
            recipient_id=request.recipient_id,
            pending_recipient_email=request.pending_recipient_email,
            date_type=request.date_type,
            scheduled_date=request.scheduled_date,
            occasion_anchor_date=request.occasion_anchor_date,
            budget_limit_minor=request.budget_limit_minor,
            currency=request.currency.upper() if request.currency else None,
            auto_approve=request.auto_approve,
            payment_method_id=request.payment_method_id,
            criteria=(
                criteria_from_model(request.gift_selection_criteria)
                if request.gift_selection_criteria
                else None
            ),
            notifications=(
                notifications_from_model(
                    request.notification_preferences, defaults.notification_days
                )
                if request.notification_preferences
                else None
            ),
        )
        rule = await RuleService(db).create_rule(intent, defaults)
    except GiftingError as exc:
        raise http_error(exc) from exc

    return rule_response(rule, _today())


@router.get("/v1/rules", response_model=RuleListResponse)
async def list_rules(
    user_id: UUID,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_read_db),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_READ)),
) -> RuleListResponse:
    """List a user's rules. Read operation - uses replica if configured."""
    rules = await RuleService(db).list_rules(user_id, include_inactive=include_inactive)
    today = _today()
    return RuleListResponse(
        rules=[rule_response(rule, today) for rule in rules],
        total_count=len(rules),
    )


@router.get("/v1/rules/{rule_id}", response_model=RuleResponse)
async def get_rule(
    rule_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_READ)),
) -> RuleResponse:
    try:
        rule = await RuleService(db).get_rule(rule_id)
    except GiftingError as exc:
        raise http_error(exc) from exc
    return rule_response(rule, _today())


@router.patch("/v1/rules/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: UUID,
    request: UpdateRuleRequest,
    db: AsyncSession = Depends(get_write_db),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> RuleResponse:
    """
    Edit a rule's settings.

    Changing the payment method clears its invalid/detached flag and lets
    executions parked on a declined card retry.
    """
    service = RuleService(db)
    try:
        notifications = None
        if request.notification_preferences is not None:
            current = await service.get_rule(rule_id)
            notifications = notifications_from_model(
                request.notification_preferences, current.notifications.days_before
            )
        changes = RuleUpdate(
            recipient_id=request.recipient_id,
            pending_recipient_email=request.pending_recipient_email,
            date_type=request.date_type,
            scheduled_date=request.scheduled_date,
            occasion_anchor_date=request.occasion_anchor_date,
            budget_limit_minor=request.budget_limit_minor,
            auto_approve=request.auto_approve,
            payment_method_id=request.payment_method_id,
            criteria=(
                criteria_from_model(request.gift_selection_criteria)
                if request.gift_selection_criteria
                else None
            ),
            notifications=notifications,
        )
        rule = await service.update_rule(rule_id, changes)
    except GiftingError as exc:
        raise http_error(exc) from exc

    return rule_response(rule, _today())


@router.post("/v1/rules/{rule_id}/deactivate", response_model=RuleResponse)
async def deactivate_rule(
    rule_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> RuleResponse:
    """Soft-retire a rule. Executions already in flight run to completion."""
    try:
        rule = await RuleService(db).deactivate_rule(rule_id)
    except GiftingError as exc:
        raise http_error(exc) from exc
    return rule_response(rule, _today())


@router.post(
    "/v1/rules/{rule_id}/trigger",
    response_model=ExecutionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def trigger_rule(
    rule_id: UUID,
    evaluator: TriggerEvaluator = Depends(get_trigger_evaluator),
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> ExecutionResponse:
    """
    Open an execution for the rule's next occasion and run selection now.

    Returns the existing live execution if there is one.
    """
    try:
        execution = await evaluator.trigger_rule(rule_id, _today())
        if execution.status is ExecutionStatus.PENDING:
            execution = await orchestrator.process(execution.execution_id)
    except GiftingError as exc:
        raise http_error(exc) from exc
    return execution_response(execution)


@router.get("/v1/rules/{rule_id}/executions", response_model=ExecutionListResponse)
async def list_rule_executions(
    rule_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_READ)),
) -> ExecutionListResponse:
    return _execution_list(await ExecutionQueryService(db).list_by_rule(rule_id))


# ============================================================================
# Executions
# ============================================================================


@router.get("/v1/executions", response_model=ExecutionListResponse)
async def list_executions(
    user_id: UUID,
    status_filter: ExecutionStatus | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_read_db),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_READ)),
) -> ExecutionListResponse:
    """List a user's executions, optionally filtered by status."""
    return _execution_list(
        await ExecutionQueryService(db).list_by_user(user_id, status=status_filter)
    )


@router.get("/v1/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_READ)),
) -> ExecutionResponse:
    try:
        execution = await ExecutionQueryService(db).get_execution(execution_id)
    except GiftingError as exc:
        raise http_error(exc) from exc
    return execution_response(execution)


@router.get("/v1/approvals", response_model=ExecutionListResponse)
async def list_pending_approvals(
    user_id: UUID,
    gateway: ApprovalGateway = Depends(get_approval_gateway),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_READ)),
) -> ExecutionListResponse:
    """Executions waiting on the user's decision."""
    return _execution_list(await gateway.list_pending(user_id))


@router.post("/v1/executions/{execution_id}/approve", response_model=ExecutionResponse)
async def approve_execution(
    execution_id: UUID,
    request: ApproveExecutionRequest,
    gateway: ApprovalGateway = Depends(get_approval_gateway),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> ExecutionResponse:
    """
    Approve selected products and place the order.

    Blocks until the first placement attempt finishes. Repeating the call
    returns the current state without ordering twice.
    """
    try:
        address = (
            address_from_model(request.shipping_address) if request.shipping_address else None
        )
        execution = await gateway.approve(execution_id, request.selected_product_ids, address)
    except GiftingError as exc:
        raise http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    return execution_response(execution)


@router.post("/v1/executions/{execution_id}/reject", response_model=ExecutionResponse)
async def reject_execution(
    execution_id: UUID,
    request: RejectExecutionRequest,
    gateway: ApprovalGateway = Depends(get_approval_gateway),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> ExecutionResponse:
    try:
        execution = await gateway.reject(execution_id, request.reason)
    except GiftingError as exc:
        raise http_error(exc) from exc
    return execution_response(execution)


@router.post("/v1/executions/{execution_id}/retry", response_model=ExecutionResponse)
async def retry_execution(
    execution_id: UUID,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> ExecutionResponse:
    """Retry a failed order now instead of waiting for the backoff."""
    try:
        execution = await orchestrator.retry(execution_id, force=True)
    except GiftingError as exc:
        raise http_error(exc) from exc
    return execution_response(execution)


@router.post("/v1/executions/{execution_id}/fulfillment", response_model=ExecutionResponse)
async def confirm_fulfillment(
    execution_id: UUID,
    request: FulfillmentConfirmationRequest,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    api_key: APIKeyData = Depends(require_permission(PERMISSION_WRITE)),
) -> ExecutionResponse:
    """Fulfilment provider signal that the order was delivered."""
    try:
        execution = await orchestrator.confirm_fulfillment(execution_id, request.order_id)
    except GiftingError as exc:
        raise http_error(exc) from exc
    return execution_response(execution)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
