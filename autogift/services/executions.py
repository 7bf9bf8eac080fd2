"""
Execution Queries - read side of the execution lifecycle.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.db.models import Execution
from autogift.exceptions import ExecutionNotFoundError
from autogift.models.api import AddressSource, ExecutionStatus
from autogift.models.domain import ExecutionData, ExecutionProductData, ShippingAddress
from autogift.services.recipients import parse_shipping_address


def address_to_json(address: ShippingAddress) -> dict[str, Any]:
    return {
        "name": address.name,
        "line1": address.line1,
        "line2": address.line2,
        "city": address.city,
        "state": address.state,
        "postal_code": address.postal_code,
        "country": address.country,
    }


def execution_to_data(execution: Execution) -> ExecutionData:
    """Convert ORM execution to immutable snapshot."""
    return ExecutionData(
        execution_id=execution.id,
        rule_id=execution.rule_id,
        user_id=execution.user_id,
        occasion_date=execution.occasion_date,
        occasion_key=execution.occasion_key,
        status=ExecutionStatus(execution.status),
        version=execution.version,
        products=tuple(
            ExecutionProductData(
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
        ),
        total_amount_minor=execution.total_amount_minor,
        budget_limit_minor=execution.budget_limit_minor,
        retry_count=execution.retry_count,
        timeout_count=execution.timeout_count,
        next_retry_at=execution.next_retry_at,
        awaiting_payment_update=execution.awaiting_payment_update,
        order_id=execution.order_id,
        error_message=execution.error_message,
        shipping_address=parse_shipping_address(execution.shipping_address),
        address_source=AddressSource(execution.address_source),
        address_needs_confirmation=execution.address_needs_confirmation,
        created_at=execution.created_at,
        updated_at=execution.updated_at,
    )


async def load_execution(session: AsyncSession, execution_id: UUID) -> Execution:
    """Fetch the row fresh from the database, bypassing stale identity-map state."""
    execution = await session.get(Execution, execution_id, populate_existing=True)
    if execution is None:
        raise ExecutionNotFoundError(execution_id)
    return execution


class ExecutionQueryService:
    """Lists executions by rule, status and user."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_execution(self, execution_id: UUID) -> ExecutionData:
        return execution_to_data(await load_execution(self.session, execution_id))

    async def list_by_rule(self, rule_id: UUID) -> list[ExecutionData]:
        return await self._list(Execution.rule_id == rule_id)

    async def list_by_status(
        self, status: ExecutionStatus, limit: int = 100
    ) -> list[ExecutionData]:
        return await self._list(Execution.status == status.value, limit=limit)

    async def list_by_user(
        self, user_id: UUID, status: ExecutionStatus | None = None
    ) -> list[ExecutionData]:
        if status is None:
            return await self._list(Execution.user_id == user_id)
        return await self._list(Execution.user_id == user_id, Execution.status == status.value)

    async def _list(self, *criteria: Any, limit: int | None = None) -> list[ExecutionData]:
        stmt = select(Execution).where(*criteria).order_by(Execution.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [execution_to_data(e) for e in result.scalars().all()]
