"""
Notification Emitters - fire-and-forget delivery of lifecycle events.

The dispatcher schedules delivery as background tasks so the state machine
never waits on, or fails because of, a notification.
"""

import asyncio
from dataclasses import asdict
from uuid import UUID

import httpx

from autogift.models.api import NotificationEvent
from autogift.observability.logging import get_logger
from autogift.observability.metrics import metrics
from autogift.services.providers import NotificationEmitter, NotificationPayload

logger = get_logger(__name__)


def _jsonable(value: object) -> object:
    if value is None or isinstance(value, (int, str)):
        return value
    return str(value)


class LoggingNotificationEmitter:
    """Emits notifications as structured log events."""

    async def notify(
        self, user_id: UUID, event_type: NotificationEvent, payload: NotificationPayload
    ) -> None:
        logger.info(
            "notification_emitted",
            user_id=str(user_id),
            event_type=event_type.value,
            execution_id=str(payload.execution_id) if payload.execution_id else None,
            rule_id=str(payload.rule_id) if payload.rule_id else None,
            message=payload.message,
        )


class WebhookNotificationEmitter:
    """POSTs notifications to a webhook endpoint."""

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def notify(
        self, user_id: UUID, event_type: NotificationEvent, payload: NotificationPayload
    ) -> None:
        body = {
            "user_id": str(user_id),
            "event_type": event_type.value,
            "payload": {key: _jsonable(value) for key, value in asdict(payload).items()},
        }
        response = await self.http_client.post(self.webhook_url, json=body)
        response.raise_for_status()

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class NotificationDispatcher:
    """
    Schedules notifications on the running loop and forgets about them.

    Failures are logged and counted, never raised. drain() awaits anything
    still in flight (used at shutdown and in tests).
    """

    def __init__(self, emitter: NotificationEmitter) -> None:
        self.emitter = emitter
        self._pending: set[asyncio.Task[None]] = set()

    def emit(
        self, user_id: UUID, event_type: NotificationEvent, payload: NotificationPayload
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._deliver(user_id, event_type, payload)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(
        self, user_id: UUID, event_type: NotificationEvent, payload: NotificationPayload
    ) -> None:
        try:
            await self.emitter.notify(user_id, event_type, payload)
        except Exception as exc:
            metrics.record_error(type(exc).__name__, "notification")
            logger.warning(
                "notification_delivery_failed",
                user_id=str(user_id),
                event_type=event_type.value,
                error=str(exc),
            )

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))
