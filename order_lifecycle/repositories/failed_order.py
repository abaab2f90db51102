import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_lifecycle.models.failed_order import FailedOrder

logger = logging.getLogger(__name__)


class FailedOrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, record: FailedOrder) -> FailedOrder:
        """Write a failure record once; a repeat append returns the stored one."""
        self.session.add(record)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self.get_by_order_id(record.order_id)
            if existing is None:
                raise
            logger.info(f"Failure record for order {record.order_id} already exists, keeping original")
            return existing
        await self.session.refresh(record)
        return record

    async def get_by_order_id(self, order_id: str) -> Optional[FailedOrder]:
        result = await self.session.execute(
            select(FailedOrder).where(FailedOrder.order_id == order_id)
        )
        return result.scalar_one_or_none()
