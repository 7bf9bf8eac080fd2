"""
FastAPI Dependencies - Authentication, authorization and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.config import get_settings
from autogift.db.session import get_write_db
from autogift.exceptions import AuthenticationError
from autogift.models.domain import RuleDefaults
from autogift.observability.logging import get_logger
from autogift.services.api_key import APIKeyData, APIKeyService
from autogift.services.approvals import ApprovalGateway
from autogift.services.fulfillment import HttpOrderPlacer
from autogift.services.notifications import (
    LoggingNotificationEmitter,
    NotificationDispatcher,
    WebhookNotificationEmitter,
)
from autogift.services.orchestrator import ExecutionOrchestrator, OrchestratorConfig
from autogift.services.payment_health import PaymentHealthService
from autogift.services.product_selector import CatalogProductSelector
from autogift.services.recipients import HttpRecipientDirectory
from autogift.services.stripe_payment_methods import StripePaymentMethodDirectory
from autogift.services.triggers import TriggerEvaluator

logger = get_logger(__name__)

# ============================================================================
# API Key Authentication (for service-to-service)
# ============================================================================


async def get_api_key(
    x_api_key: str = Header(..., description="Service API key"),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyData:
    """
    FastAPI dependency to validate API key from X-API-Key header.

    Raises:
        HTTPException 401 if invalid
    """
    api_key_service = APIKeyService(db)

    try:
        return await api_key_service.validate_api_key(x_api_key)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


def require_permission(required_permission: str) -> Callable[..., Awaitable[APIKeyData]]:
    """
    FastAPI dependency factory to check specific permission.

    Usage:
        @router.post("/v1/executions/{execution_id}/approve")
        async def approve_execution(
            api_key: APIKeyData = Depends(require_permission("gifting:write"))
        ):
            pass
    """

    async def permission_checker(
        api_key: APIKeyData = Depends(get_api_key),
    ) -> APIKeyData:
        """Check if API key has required permission."""
        if required_permission not in api_key.permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required permission: {required_permission}",
            )
        return api_key

    return permission_checker


# ============================================================================
# Capability providers (shared across requests)
# ============================================================================


@dataclass
class Providers:
    """Concrete capability implementations built from settings."""

    selector: CatalogProductSelector
    recipients: HttpRecipientDirectory
    placer: HttpOrderPlacer
    payment_methods: StripePaymentMethodDirectory
    emitter: LoggingNotificationEmitter | WebhookNotificationEmitter
    dispatcher: NotificationDispatcher

    async def close(self) -> None:
        await self.dispatcher.drain()
        await self.selector.close()
        await self.recipients.close()
        await self.placer.close()
        if isinstance(self.emitter, WebhookNotificationEmitter):
            await self.emitter.close()


# Singleton provider bundle (shared across all requests)
_providers: Providers | None = None


def get_providers() -> Providers:
    """Get provider singleton instance."""
    global _providers

    if _providers is None:
        settings = get_settings()
        emitter: LoggingNotificationEmitter | WebhookNotificationEmitter
        if settings.notification_webhook_url:
            emitter = WebhookNotificationEmitter(
                settings.notification_webhook_url, settings.provider_timeout_seconds
            )
        else:
            emitter = LoggingNotificationEmitter()

        _providers = Providers(
            selector=CatalogProductSelector(
                settings.product_search_api_url, settings.provider_timeout_seconds
            ),
            recipients=HttpRecipientDirectory(
                settings.recipient_api_url, settings.provider_timeout_seconds
            ),
            placer=HttpOrderPlacer(
                settings.fulfillment_api_url,
                settings.fulfillment_api_key,
                settings.order_placement_timeout_seconds,
            ),
            payment_methods=StripePaymentMethodDirectory(settings.stripe_api_key),
            emitter=emitter,
            dispatcher=NotificationDispatcher(emitter),
        )
        logger.info(
            "providers_initialized",
            notifications="webhook" if settings.notification_webhook_url else "log",
        )

    return _providers


async def close_providers() -> None:
    """Release provider HTTP clients (called on shutdown)."""
    global _providers

    if _providers is not None:
        await _providers.close()
        _providers = None


# ============================================================================
# Service factories
# ============================================================================


def get_rule_defaults() -> RuleDefaults:
    return RuleDefaults.from_settings(get_settings())


def get_payment_health_service(
    db: AsyncSession = Depends(get_write_db),
    providers: Providers = Depends(get_providers),
) -> PaymentHealthService:
    return PaymentHealthService(
        db, providers.payment_methods, get_settings().expiring_soon_days
    )


def get_orchestrator(
    db: AsyncSession = Depends(get_write_db),
    providers: Providers = Depends(get_providers),
    payment_health: PaymentHealthService = Depends(get_payment_health_service),
) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(
        session=db,
        selector=providers.selector,
        recipients=providers.recipients,
        placer=providers.placer,
        payment_health=payment_health,
        notifier=providers.dispatcher,
        config=OrchestratorConfig.from_settings(get_settings()),
    )


def get_approval_gateway(
    db: AsyncSession = Depends(get_write_db),
    providers: Providers = Depends(get_providers),
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
) -> ApprovalGateway:
    return ApprovalGateway(db, orchestrator, providers.dispatcher)


def get_trigger_evaluator(
    db: AsyncSession = Depends(get_write_db),
    providers: Providers = Depends(get_providers),
) -> TriggerEvaluator:
    return TriggerEvaluator(db, providers.dispatcher, get_settings().trigger_window_days)
