"""Fulfillment queue interface and an in-memory implementation.

The queue owns delivery bookkeeping: it counts how many times a message has
been handed out and decides when a failed message is dead-lettered instead of
redelivered. Consumers only ever ``ack`` or ``fail_and_redeliver``.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

from order_lifecycle.core.exceptions import QueueError
from order_lifecycle.schemas.events import FulfillmentRequest

logger = logging.getLogger(__name__)


class Delivery(ABC):
    message_id: str
    body: bytes
    delivery_attempt: int

    @property
    @abstractmethod
    def settled(self) -> bool:
        ...

    @abstractmethod
    async def ack(self) -> None:
        ...

    @abstractmethod
    async def fail_and_redeliver(self) -> None:
        ...


DeliveryHandler = Callable[[Delivery], Awaitable[Any]]


class FulfillmentQueue(ABC):
    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def send(self, message: FulfillmentRequest) -> str:
        ...

    @abstractmethod
    async def consume(self, handler: DeliveryHandler) -> None:
        ...

    @abstractmethod
    def is_healthy(self) -> bool:
        ...


@dataclass
class QueuedMessage:
    message_id: str
    body: bytes
    receive_count: int = 0


class InMemoryDelivery(Delivery):
    def __init__(self, queue: "InMemoryFulfillmentQueue", message: QueuedMessage) -> None:
        self._queue = queue
        self._message = message
        self._settled = False
        self.message_id = message.message_id
        self.body = message.body
        self.delivery_attempt = message.receive_count

    @property
    def settled(self) -> bool:
        return self._settled

    async def ack(self) -> None:
        self._settle()
        self._queue._acknowledge(self._message)

    async def fail_and_redeliver(self) -> None:
        self._settle()
        self._queue._redeliver_or_dead_letter(self._message)

    def _settle(self) -> None:
        if self._settled:
            raise QueueError(f"Delivery of message {self.message_id} already settled")
        self._settled = True


@dataclass
class InMemoryFulfillmentQueue(FulfillmentQueue):
    """At-least-once queue kept in process memory, with a dead-letter list.

    A failed delivery becomes ready again after ``redelivery_delay`` seconds.
    ``sent``, ``acked`` and ``dead_letters`` keep only the most recent
    ``history_limit`` messages each.
    """

    max_receive_count: int = 3
    prefetch_count: int = 10
    redelivery_delay: float = 0.0
    history_limit: int = 1000
    sent: Deque[QueuedMessage] = field(init=False, repr=False)
    acked: Deque[QueuedMessage] = field(init=False, repr=False)
    dead_letters: Deque[QueuedMessage] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.sent = deque(maxlen=self.history_limit)
        self.acked = deque(maxlen=self.history_limit)
        self.dead_letters = deque(maxlen=self.history_limit)
        self._ready: asyncio.Queue[QueuedMessage] = asyncio.Queue()
        self._delayed: Dict[str, Tuple[asyncio.TimerHandle, QueuedMessage]] = {}
        self._consumer_task: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()

    async def send(self, message: FulfillmentRequest) -> str:
        message_id = self.put(message.to_body())
        logger.info(f"Queued fulfillment message {message_id} for order {message.order_id}")
        return message_id

    def put(self, body: bytes) -> str:
        queued = QueuedMessage(message_id=str(uuid.uuid4()), body=body)
        self.sent.append(queued)
        self._ready.put_nowait(queued)
        return queued.message_id

    def receive(self) -> Optional[InMemoryDelivery]:
        """Hand out the next ready message, or None when nothing is ready."""
        try:
            message = self._ready.get_nowait()
        except asyncio.QueueEmpty:
            return None
        message.receive_count += 1
        return InMemoryDelivery(self, message)

    @property
    def pending(self) -> int:
        return self._ready.qsize()

    @property
    def delayed(self) -> int:
        return len(self._delayed)

    async def consume(self, handler: DeliveryHandler) -> None:
        if self._consumer_task is not None:
            logger.warning("In-memory fulfillment queue already has a consumer")
            return
        self._consumer_task = asyncio.create_task(self._consume_loop(handler))
        logger.info("Started consuming in-memory fulfillment queue")

    async def _consume_loop(self, handler: DeliveryHandler) -> None:
        slots = asyncio.Semaphore(self.prefetch_count)
        while True:
            message = await self._ready.get()
            message.receive_count += 1
            await slots.acquire()
            task = asyncio.create_task(self._dispatch(handler, InMemoryDelivery(self, message), slots))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def _dispatch(self, handler: DeliveryHandler, delivery: InMemoryDelivery, slots: asyncio.Semaphore) -> None:
        try:
            await handler(delivery)
        except Exception as e:
            logger.error(f"Handler failed for message {delivery.message_id}: {e}", exc_info=True)
        finally:
            slots.release()
        if not delivery.settled:
            await delivery.fail_and_redeliver()

    async def close(self) -> None:
        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None
        if self._handler_tasks:
            await asyncio.gather(*self._handler_tasks, return_exceptions=True)
        # delayed messages stay in the queue, just without their wait
        for handle, message in self._delayed.values():
            handle.cancel()
            self._ready.put_nowait(message)
        self._delayed.clear()

    def is_healthy(self) -> bool:
        return True

    def _acknowledge(self, message: QueuedMessage) -> None:
        self.acked.append(message)

    def _redeliver_or_dead_letter(self, message: QueuedMessage) -> None:
        if message.receive_count >= self.max_receive_count:
            self.dead_letters.append(message)
            logger.warning(
                f"Message {message.message_id} dead-lettered after {message.receive_count} deliveries"
            )
            return

        if self.redelivery_delay <= 0:
            self._ready.put_nowait(message)
            return

        handle = asyncio.get_running_loop().call_later(self.redelivery_delay, self._make_ready, message)
        self._delayed[message.message_id] = (handle, message)

    def _make_ready(self, message: QueuedMessage) -> None:
        self._delayed.pop(message.message_id, None)
        self._ready.put_nowait(message)
