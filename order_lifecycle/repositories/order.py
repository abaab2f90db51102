import logging
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_lifecycle.core.exceptions import InvalidTransition, OrderAlreadyExists, OrderNotFound
from order_lifecycle.models.order import Order, is_valid_status_transition

logger = logging.getLogger(__name__)


class OrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_if_absent(self, order: Order) -> Order:
        """Insert ``order`` unless a record with the same id already exists.

        The primary key is the guard: a concurrent or repeated run for the same
        order id fails with ``OrderAlreadyExists`` and leaves the stored record
        untouched.
        """
        self.session.add(order)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise OrderAlreadyExists(order.order_id)
        await self.session.refresh(order)
        return order

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(Order.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def update(self, order_id: str, fields: Dict[str, Any]) -> Order:
        result = await self.session.execute(
            select(Order).where(Order.order_id == order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)

        if "order_id" in fields and fields["order_id"] != order_id:
            raise ValueError("order_id is immutable")

        status = fields.get("status")
        if status is not None and not is_valid_status_transition(order.status, status):
            await self.session.rollback()
            raise InvalidTransition(order.status, status, order_id=order_id)

        for key, value in fields.items():
            setattr(order, key, value)

        await self.session.commit()
        await self.session.refresh(order)
        logger.debug(f"Updated order {order_id}: {sorted(fields)}")
        return order
