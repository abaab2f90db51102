import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_lifecycle.core.config import Settings
from order_lifecycle.core.exceptions import FulfillmentExhausted
from order_lifecycle.core.queue import Delivery
from order_lifecycle.models.failed_order import FULFILLMENT_PROCESSING_FAILED, FailedOrder
from order_lifecycle.models.order import OrderStatus, TERMINAL_STATUSES
from order_lifecycle.repositories.failed_order import FailedOrderRepository
from order_lifecycle.repositories.order import OrderRepository
from order_lifecycle.schemas.events import FulfillmentRequest
from order_lifecycle.schemas.order import FulfillmentDetails
from order_lifecycle.services.fulfillment import Fulfiller

logger = logging.getLogger(__name__)


class ProcessingOutcome(str, Enum):
    FULFILLED = "FULFILLED"
    RETRY = "RETRY"
    EXHAUSTED = "EXHAUSTED"
    SKIPPED = "SKIPPED"


class FulfillmentWorker:
    """Handles one delivery of a fulfillment message per call.

    Retries belong to the queue: a failed attempt is handed back with
    ``fail_and_redeliver`` and the queue decides whether to redeliver or
    dead-letter. On the final attempt the worker writes the failure record and
    marks the order FAILED before handing the message back.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        fulfiller: Fulfiller,
        settings: Settings
    ) -> None:
        self.session_maker = session_maker
        self.fulfiller = fulfiller
        self.settings = settings

    @property
    def max_receive_count(self) -> int:
        return self.settings.dlq_max_receive_count

    async def process_message(self, delivery: Delivery) -> ProcessingOutcome:
        attempt = delivery.delivery_attempt
        request: Optional[FulfillmentRequest] = None

        try:
            request = FulfillmentRequest.from_body(delivery.body)
            logger.info(f"Processing order {request.order_id} (attempt {attempt}/{self.max_receive_count})")

            if await self._already_resolved(request.order_id):
                await delivery.ack()
                return ProcessingOutcome.SKIPPED

            details = await asyncio.wait_for(
                self.fulfiller.fulfill(request),
                timeout=self.settings.fulfillment_timeout_seconds
            )
            await self._mark_fulfilled(request.order_id, details)
        except Exception as e:
            error_message = _describe(e)
            logger.error(f"Error processing message {delivery.message_id}: {error_message}")

            outcome = ProcessingOutcome.RETRY
            if attempt >= self.max_receive_count:
                outcome = ProcessingOutcome.EXHAUSTED
                await self._record_exhaustion(request, error_message, attempt)

            await delivery.fail_and_redeliver()
            return outcome

        await delivery.ack()
        logger.info(f"Order fulfilled successfully: {request.order_id}")
        return ProcessingOutcome.FULFILLED

    async def _already_resolved(self, order_id: str) -> bool:
        async with self.session_maker() as session:
            order = await asyncio.wait_for(
                OrderRepository(session).get_by_id(order_id),
                timeout=self.settings.store_timeout_seconds
            )
        if order is not None and OrderStatus(order.status) in TERMINAL_STATUSES:
            logger.info(f"Order {order_id} already {order.status}, skipping redelivered message")
            return True
        return False

    async def _mark_fulfilled(self, order_id: str, details: FulfillmentDetails) -> None:
        async with self.session_maker() as session:
            await asyncio.wait_for(
                OrderRepository(session).update(order_id, {
                    "status": OrderStatus.FULFILLED.value,
                    "fulfilled_at": datetime.now(timezone.utc),
                    "fulfillment_details": details.model_dump(mode="json")
                }),
                timeout=self.settings.store_timeout_seconds
            )

    async def _record_exhaustion(
        self,
        request: Optional[FulfillmentRequest],
        error_message: str,
        attempt: int
    ) -> None:
        if request is None:
            logger.error(f"Cannot record failure for unparseable message after {attempt} attempts: {error_message}")
            return

        exhausted = FulfillmentExhausted(request.order_id, attempt, error_message)
        logger.error(str(exhausted))

        failed_at = datetime.now(timezone.utc)
        record = FailedOrder(
            order_id=request.order_id,
            customer_id=request.customer_id,
            product_id=request.product_id,
            quantity=request.quantity,
            price=request.price,
            total_amount=request.total_amount,
            original_timestamp=request.timestamp,
            failed_at=failed_at,
            error_message=error_message,
            receive_count=attempt,
            failure_reason=FULFILLMENT_PROCESSING_FAILED
        )

        try:
            async with self.session_maker() as session:
                await asyncio.wait_for(
                    FailedOrderRepository(session).append(record),
                    timeout=self.settings.store_timeout_seconds
                )
                await asyncio.wait_for(
                    OrderRepository(session).update(request.order_id, {
                        "status": OrderStatus.FAILED.value,
                        "failure_reason": FULFILLMENT_PROCESSING_FAILED,
                        "failed_at": failed_at,
                        "error_message": error_message
                    }),
                    timeout=self.settings.store_timeout_seconds
                )
            logger.info(f"Failed order saved to failed_orders table: {request.order_id}")
        except Exception as e:
            logger.error(f"Error saving failed order {request.order_id}: {e}", exc_info=True)


def _describe(error: Exception) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Operation timed out"
    return str(error) or type(error).__name__
