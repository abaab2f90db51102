import asyncio
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from order_lifecycle.core.broker import RabbitMQDelivery, RabbitMQFulfillmentQueue, create_fulfillment_queue
from order_lifecycle.core.exceptions import QueueError
from order_lifecycle.core.queue import InMemoryFulfillmentQueue
from order_lifecycle.models.order import OrderStatus
from order_lifecycle.repositories.order import OrderRepository
from order_lifecycle.schemas.events import FulfillmentRequest


def build_request(order_id: str = "queue-1") -> FulfillmentRequest:
    return FulfillmentRequest(
        order_id=order_id,
        customer_id="CUST-1234",
        product_id="PROD-5678",
        quantity=1,
        price=Decimal("10.00"),
        total_amount=Decimal("10.00")
    )


async def wait_for(condition, timeout: float = 2.0) -> None:
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_delivery_attempt_counts_redeliveries():
    queue = InMemoryFulfillmentQueue(max_receive_count=3)
    await queue.send(build_request())

    attempts = []
    while (delivery := queue.receive()) is not None:
        attempts.append(delivery.delivery_attempt)
        await delivery.fail_and_redeliver()

    assert attempts == [1, 2, 3]
    assert len(queue.dead_letters) == 1
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_ack_removes_message():
    queue = InMemoryFulfillmentQueue()
    message_id = await queue.send(build_request())

    delivery = queue.receive()
    await delivery.ack()

    assert delivery.message_id == message_id
    assert queue.receive() is None
    assert len(queue.acked) == 1


@pytest.mark.asyncio
async def test_delivery_settles_once():
    queue = InMemoryFulfillmentQueue()
    await queue.send(build_request())

    delivery = queue.receive()
    await delivery.ack()

    with pytest.raises(QueueError):
        await delivery.fail_and_redeliver()


@pytest.mark.asyncio
async def test_message_body_round_trips_request():
    queue = InMemoryFulfillmentQueue()
    request = build_request()
    await queue.send(request)

    delivery = queue.receive()

    assert FulfillmentRequest.from_body(delivery.body) == request


@pytest.mark.asyncio
async def test_consumer_redelivers_when_handler_raises():
    queue = InMemoryFulfillmentQueue(max_receive_count=2)
    seen = []

    async def handler(delivery):
        seen.append(delivery.delivery_attempt)
        raise RuntimeError("handler crashed")

    await queue.send(build_request())
    await queue.consume(handler)
    await wait_for(lambda: len(queue.dead_letters) == 1)
    await queue.close()

    assert seen == [1, 2]


@pytest.mark.asyncio
async def test_consumer_drives_worker_end_to_end(orchestrator, queue, worker, db_session, make_draft):
    await queue.consume(worker.process_message)

    with patch("random.random", side_effect=[0.99, 0.1]):
        await orchestrator.run(make_draft())
        await wait_for(lambda: len(queue.acked) == 1)

    await queue.close()

    order = await OrderRepository(db_session).get_by_id("order-1")
    assert order.status == OrderStatus.FULFILLED.value


def test_queue_factory(settings):
    assert isinstance(create_fulfillment_queue(settings), InMemoryFulfillmentQueue)

    rabbit_settings = settings.model_copy(update={"queue_backend": "rabbitmq"})
    rabbit_queue = create_fulfillment_queue(rabbit_settings)
    assert isinstance(rabbit_queue, RabbitMQFulfillmentQueue)
    assert not rabbit_queue.is_healthy()


@pytest.mark.asyncio
async def test_rabbitmq_send_requires_connection(settings):
    queue = RabbitMQFulfillmentQueue(settings)

    with pytest.raises(QueueError):
        await queue.send(build_request())


@pytest.mark.asyncio
async def test_redelivery_waits_for_delay():
    queue = InMemoryFulfillmentQueue(max_receive_count=3, redelivery_delay=0.05)
    loop = asyncio.get_running_loop()
    seen = []

    async def handler(delivery):
        seen.append(loop.time())
        await delivery.fail_and_redeliver()

    await queue.send(build_request())
    await queue.consume(handler)
    await wait_for(lambda: len(queue.dead_letters) == 1)
    await queue.close()

    assert len(seen) == 3
    gaps = [later - earlier for earlier, later in zip(seen, seen[1:])]
    assert all(gap >= 0.045 for gap in gaps)


@pytest.mark.asyncio
async def test_close_returns_delayed_messages_to_queue():
    queue = InMemoryFulfillmentQueue(max_receive_count=3, redelivery_delay=60)
    await queue.send(build_request())

    delivery = queue.receive()
    await delivery.fail_and_redeliver()

    assert queue.delayed == 1
    assert queue.receive() is None

    await queue.close()

    assert queue.delayed == 0
    assert queue.pending == 1
    assert queue.receive().delivery_attempt == 2


@pytest.mark.asyncio
async def test_message_history_is_bounded():
    queue = InMemoryFulfillmentQueue(history_limit=2)

    for index in range(5):
        await queue.send(build_request(f"queue-{index}"))
    while (delivery := queue.receive()) is not None:
        await delivery.ack()

    assert len(queue.sent) == 2
    assert len(queue.acked) == 2
    assert FulfillmentRequest.from_body(queue.acked[-1].body).order_id == "queue-4"


def test_queue_factory_applies_redelivery_settings(settings):
    configured = settings.model_copy(update={"redelivery_delay_seconds": 2.5, "queue_history_limit": 50})

    queue = create_fulfillment_queue(configured)

    assert queue.redelivery_delay == 2.5
    assert queue.sent.maxlen == 50


def build_incoming(headers: dict) -> MagicMock:
    message = MagicMock()
    message.message_id = "rabbit-1"
    message.body = build_request().to_body()
    message.content_type = "application/json"
    message.headers = headers
    message.ack = AsyncMock()
    message.reject = AsyncMock()
    return message


@pytest.mark.asyncio
async def test_rabbitmq_failure_goes_through_retry_queue(settings):
    queue = RabbitMQFulfillmentQueue(settings)
    queue.retry_exchange = MagicMock(publish=AsyncMock())
    message = build_incoming({"order_id": "queue-1"})

    delivery = RabbitMQDelivery(queue, message)
    assert delivery.delivery_attempt == 1

    await delivery.fail_and_redeliver()

    queue.retry_exchange.publish.assert_awaited_once()
    published = queue.retry_exchange.publish.await_args
    assert published.kwargs["routing_key"] == f"{settings.fulfillment_queue_name}.retry"
    assert published.args[0].headers["x-retry-count"] == 1
    assert published.args[0].headers["order_id"] == "queue-1"
    message.ack.assert_awaited_once()
    message.reject.assert_not_called()


@pytest.mark.asyncio
async def test_rabbitmq_final_attempt_is_dead_lettered(settings):
    queue = RabbitMQFulfillmentQueue(settings)
    queue.retry_exchange = MagicMock(publish=AsyncMock())
    message = build_incoming({"x-retry-count": 1, "x-delivery-count": 1})

    delivery = RabbitMQDelivery(queue, message)
    assert delivery.delivery_attempt == 3

    await delivery.fail_and_redeliver()

    message.reject.assert_awaited_once_with(requeue=False)
    queue.retry_exchange.publish.assert_not_called()
    message.ack.assert_not_called()
