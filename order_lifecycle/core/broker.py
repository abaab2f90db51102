import logging
import uuid
from typing import Optional
import aio_pika
from aio_pika import ExchangeType, IncomingMessage
from aio_pika.abc import AbstractRobustConnection, AbstractRobustChannel, AbstractExchange, AbstractQueue

from order_lifecycle.core.config import Settings
from order_lifecycle.core.exceptions import QueueError
from order_lifecycle.core.queue import Delivery, DeliveryHandler, FulfillmentQueue, InMemoryFulfillmentQueue
from order_lifecycle.schemas.events import FulfillmentRequest

logger = logging.getLogger(__name__)

FULFILLMENT_ROUTING_KEY = "order.fulfillment"
DEAD_LETTER_ROUTING_KEY = "order.fulfillment.failed"
RETRY_COUNT_HEADER = "x-retry-count"


class RabbitMQDelivery(Delivery):
    """Wraps an incoming message.

    Failed attempts are republished through the retry queue with
    ``x-retry-count`` incremented. Returns caused by a lost consumer show up
    in the quorum queue's ``x-delivery-count``, so the attempt number is the
    sum of both plus one.
    """

    def __init__(self, queue: "RabbitMQFulfillmentQueue", message: IncomingMessage) -> None:
        self._queue = queue
        self._message = message
        self.message_id = message.message_id or ""
        self.body = message.body
        headers = message.headers or {}
        self.retry_count = int(headers.get(RETRY_COUNT_HEADER, 0))
        self.delivery_attempt = self.retry_count + int(headers.get("x-delivery-count", 0)) + 1

    @property
    def settled(self) -> bool:
        return self._message.processed

    async def ack(self) -> None:
        await self._message.ack()

    async def fail_and_redeliver(self) -> None:
        if self.delivery_attempt >= self._queue.settings.dlq_max_receive_count:
            # rejected without requeue, the quorum queue routes it to the DLX
            await self._message.reject(requeue=False)
            logger.warning(
                f"Message {self.message_id} dead-lettered after {self.delivery_attempt} deliveries"
            )
            return

        await self._queue.schedule_retry(self._message, self.retry_count + 1)
        await self._message.ack()


class RabbitMQFulfillmentQueue(FulfillmentQueue):
    """Fulfillment queue on a RabbitMQ quorum queue.

    A failed delivery is parked in ``<queue>.retry``, whose message TTL is
    ``redelivery_delay_seconds``; on expiry it dead-letters back to the work
    exchange. The quorum queue's ``x-delivery-limit`` only bounds returns from
    consumers that disappear mid-delivery.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self.retry_exchange: Optional[AbstractExchange] = None
        self.queue: Optional[AbstractQueue] = None

    @property
    def retry_queue_name(self) -> str:
        return f"{self.settings.fulfillment_queue_name}.retry"

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(self.settings.rabbitmq_url)
        self.channel = await self.connection.channel()
        await self.channel.set_qos(prefetch_count=self.settings.rabbitmq_prefetch_count)

        self.exchange = await self.channel.declare_exchange(
            self.settings.fulfillment_exchange,
            ExchangeType.TOPIC,
            durable=True
        )

        dlx = await self.channel.declare_exchange(
            f"{self.settings.fulfillment_exchange}.dlx",
            ExchangeType.TOPIC,
            durable=True
        )

        dlq = await self.channel.declare_queue(
            self.settings.fulfillment_dead_letter_queue_name,
            durable=True
        )
        await dlq.bind(dlx, routing_key=DEAD_LETTER_ROUTING_KEY)

        await self.channel.declare_queue(
            self.retry_queue_name,
            durable=True,
            arguments={
                "x-message-ttl": int(self.settings.redelivery_delay_seconds * 1000),
                "x-dead-letter-exchange": self.settings.fulfillment_exchange,
                "x-dead-letter-routing-key": FULFILLMENT_ROUTING_KEY
            }
        )
        self.retry_exchange = self.channel.default_exchange

        self.queue = await self.channel.declare_queue(
            self.settings.fulfillment_queue_name,
            durable=True,
            arguments={
                "x-queue-type": "quorum",
                "x-delivery-limit": self.settings.dlq_max_receive_count - 1,
                "x-dead-letter-exchange": f"{self.settings.fulfillment_exchange}.dlx",
                "x-dead-letter-routing-key": DEAD_LETTER_ROUTING_KEY
            }
        )
        await self.queue.bind(self.exchange, routing_key=FULFILLMENT_ROUTING_KEY)

        logger.info("Connected to RabbitMQ")

    async def close(self) -> None:
        if self.channel:
            await self.channel.close()
        if self.connection:
            await self.connection.close()
        logger.info("Disconnected from RabbitMQ")

    async def send(self, message: FulfillmentRequest) -> str:
        if not self.exchange:
            raise QueueError("Channel is not initialized")

        message_id = str(uuid.uuid4())
        await self.exchange.publish(
            aio_pika.Message(
                body=message.to_body(),
                message_id=message_id,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                headers={
                    "order_id": message.order_id,
                    "customer_id": message.customer_id
                }
            ),
            routing_key=FULFILLMENT_ROUTING_KEY
        )
        logger.info(f"Published fulfillment message {message_id} for order {message.order_id}")
        return message_id

    async def schedule_retry(self, message: IncomingMessage, retry_count: int) -> None:
        if not self.retry_exchange:
            raise QueueError("Channel is not initialized")

        headers = dict(message.headers or {})
        headers.pop("x-delivery-count", None)
        headers[RETRY_COUNT_HEADER] = retry_count
        await self.retry_exchange.publish(
            aio_pika.Message(
                body=message.body,
                message_id=message.message_id,
                content_type=message.content_type,
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                headers=headers
            ),
            routing_key=self.retry_queue_name
        )
        logger.info(
            f"Message {message.message_id} scheduled for redelivery in "
            f"{self.settings.redelivery_delay_seconds}s (retry {retry_count})"
        )

    async def consume(self, handler: DeliveryHandler) -> None:
        if not self.queue:
            raise QueueError("Queue is not declared")

        async def on_message(message: IncomingMessage) -> None:
            delivery = RabbitMQDelivery(self, message)
            try:
                await handler(delivery)
            except Exception as e:
                logger.error(f"Error processing message {delivery.message_id}: {e}", exc_info=True)
            if not delivery.settled:
                await delivery.fail_and_redeliver()

        await self.queue.consume(on_message)
        logger.info(f"Started consuming {self.settings.fulfillment_queue_name}")

    def is_healthy(self) -> bool:
        return self.connection is not None and not self.connection.is_closed


def create_fulfillment_queue(settings: Settings) -> FulfillmentQueue:
    if settings.queue_backend == "memory":
        return InMemoryFulfillmentQueue(
            max_receive_count=settings.dlq_max_receive_count,
            prefetch_count=settings.rabbitmq_prefetch_count,
            redelivery_delay=settings.redelivery_delay_seconds,
            history_limit=settings.queue_history_limit
        )
    return RabbitMQFulfillmentQueue(settings)
