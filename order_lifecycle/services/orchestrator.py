import asyncio
import logging
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_lifecycle.core.config import Settings
from order_lifecycle.core.exceptions import InvalidTransition, OrderAlreadyExists
from order_lifecycle.core.queue import FulfillmentQueue
from order_lifecycle.models.order import Order, OrderStatus
from order_lifecycle.repositories.order import OrderRepository
from order_lifecycle.schemas.events import FulfillmentRequest
from order_lifecycle.schemas.lifecycle import (
    LifecycleState,
    RunResult,
    StageOutcome,
    StorageFailed,
    StorageFailureReason,
    StorageOutcome,
    Stored,
    Validated,
    ValidationOutcome,
    is_valid_transition,
)
from order_lifecycle.schemas.order import OrderDraft, ValidatedOrder
from order_lifecycle.services.validator import validate_order

logger = logging.getLogger(__name__)

StateListener = Callable[[LifecycleState], None]


class OrderRun:
    """State of a single lifecycle run. Transitions are checked against the graph."""

    def __init__(self, order_id: Optional[str], listener: Optional[StateListener] = None) -> None:
        self.order_id = order_id
        self.state = LifecycleState.PENDING
        self.history: List[LifecycleState] = [LifecycleState.PENDING]
        self._listener = listener

    def advance(self, new_state: LifecycleState) -> None:
        if not is_valid_transition(self.state, new_state):
            raise InvalidTransition(self.state.value, new_state.value, order_id=self.order_id)
        logger.info(f"Order {self.order_id} state: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        if self._listener:
            self._listener(new_state)

    def finish(self, outcome: StageOutcome) -> RunResult:
        return RunResult(order_id=self.order_id, state=self.state, history=list(self.history), outcome=outcome)


class LifecycleOrchestrator:
    """Drives one order through VALIDATING and STORING, then hands it to the queue."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        queue: FulfillmentQueue,
        settings: Settings
    ) -> None:
        self.session_maker = session_maker
        self.queue = queue
        self.settings = settings

    async def run(self, draft: OrderDraft, listener: Optional[StateListener] = None) -> RunResult:
        order_run = OrderRun(draft.order_id, listener)
        logger.info(f"Starting lifecycle run for order {draft.order_id}")

        order_run.advance(LifecycleState.VALIDATING)
        validation = self.validate(draft)
        if not isinstance(validation, Validated):
            order_run.advance(LifecycleState.VALIDATION_FAILED)
            logger.warning(f"Order {draft.order_id} failed validation: {validation.errors}")
            return order_run.finish(validation)

        order_run.advance(LifecycleState.VALIDATED)

        order_run.advance(LifecycleState.STORING)
        storage = await self.store(validation.order)
        if not isinstance(storage, Stored):
            order_run.advance(LifecycleState.STORAGE_FAILED)
            logger.error(f"Order {draft.order_id} storage failed ({storage.reason.value}): {storage.message}")
            return order_run.finish(storage)

        order_run.advance(LifecycleState.STORED)
        return order_run.finish(storage)

    def validate(self, draft: OrderDraft) -> ValidationOutcome:
        return validate_order(draft)

    async def store(self, order: ValidatedOrder) -> StorageOutcome:
        """Conditionally create the order record, then enqueue it for fulfillment.

        ``ALREADY_EXISTS`` means a previous run stored this order and no message
        is sent. ``QUEUE_ERROR`` means the record exists but nothing will
        fulfill it until the message is re-enqueued.
        """
        original_payload = order.model_dump(mode="json")

        try:
            await asyncio.wait_for(self._create_record(order), timeout=self.settings.store_timeout_seconds)
        except OrderAlreadyExists as e:
            return StorageFailed(
                reason=StorageFailureReason.ALREADY_EXISTS,
                message=str(e),
                original_payload=original_payload
            )
        except Exception as e:
            logger.error(f"Error storing order {order.order_id}: {e}", exc_info=True)
            return StorageFailed(
                reason=StorageFailureReason.STORE_ERROR,
                message=_describe(e),
                original_payload=original_payload
            )

        logger.info(f"Order {order.order_id} stored, sending to fulfillment queue")

        request = FulfillmentRequest(
            order_id=order.order_id,
            customer_id=order.customer_id,
            product_id=order.product_id,
            quantity=order.quantity,
            price=order.price,
            total_amount=order.total_amount
        )
        try:
            message_id = await asyncio.wait_for(self.queue.send(request), timeout=self.settings.queue_timeout_seconds)
        except Exception as e:
            logger.error(f"Error sending order {order.order_id} to fulfillment queue: {e}", exc_info=True)
            return StorageFailed(
                reason=StorageFailureReason.QUEUE_ERROR,
                message=_describe(e),
                original_payload=original_payload
            )

        logger.info(f"Fulfillment message {message_id} sent for order {order.order_id}")
        return Stored(order_id=order.order_id, message_id=message_id)

    async def _create_record(self, order: ValidatedOrder) -> Order:
        record = Order(
            order_id=order.order_id,
            customer_id=order.customer_id,
            product_id=order.product_id,
            quantity=order.quantity,
            price=order.price,
            total_amount=order.total_amount,
            status=OrderStatus.PROCESSING.value,
            validation_status=order.validation_status,
            order_metadata=order.metadata,
            created_at=order.timestamp,
            validated_at=order.validated_at
        )
        async with self.session_maker() as session:
            repository = OrderRepository(session)
            return await repository.create_if_absent(record)


def _describe(error: Exception) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Operation timed out"
    return f"{type(error).__name__}: {error}"
