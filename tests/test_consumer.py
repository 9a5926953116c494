import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

from order_pipeline.consumer import OrderConsumer
from order_pipeline.errors import InvalidTransition
from order_pipeline.events import OrderCreated, serialize_event

from .fakes import FakeBroker, make_message


def _order_created_body(order_id=None):
    return serialize_event(
        OrderCreated(
            order_id=order_id or uuid4(),
            customer_name="John Doe",
            product_name="Laptop Pro",
            value=Decimal("2500.00"),
            created_at=datetime.now(timezone.utc),
        )
    )


def _consumer(broker, processor, **kwargs):
    return OrderConsumer(broker, processor, **kwargs)


async def test_success_completes_message():
    order_id = uuid4()
    broker = FakeBroker()
    processor = AsyncMock()
    message = make_message(_order_created_body(order_id))

    await _consumer(broker, processor).handle_message(message)

    processor.process_order.assert_awaited_once_with(order_id)
    assert broker.completed == [message]
    assert broker.abandoned == []


async def test_unknown_event_type_is_completed_without_processing():
    broker = FakeBroker()
    processor = AsyncMock()
    message = make_message("{}", event_type="InventoryReserved")

    await _consumer(broker, processor).handle_message(message)

    processor.process_order.assert_not_awaited()
    assert broker.completed == [message]


async def test_message_without_event_type_is_completed():
    broker = FakeBroker()
    processor = AsyncMock()
    message = make_message("{}")
    message.attributes.pop("event_type")

    await _consumer(broker, processor).handle_message(message)

    processor.process_order.assert_not_awaited()
    assert broker.completed == [message]


async def test_malformed_body_is_dead_lettered():
    broker = FakeBroker()
    processor = AsyncMock()
    message = make_message("not json at all")

    await _consumer(broker, processor).handle_message(message)

    processor.process_order.assert_not_awaited()
    [(dead, reason, description)] = broker.dead_lettered
    assert dead is message
    assert reason == "DeserializationError"
    assert description
    assert broker.completed == []


async def test_domain_error_is_completed():
    broker = FakeBroker()
    processor = AsyncMock()
    processor.process_order.side_effect = InvalidTransition("Order must be Pending.")
    message = make_message(_order_created_body())

    await _consumer(broker, processor).handle_message(message)

    assert broker.completed == [message]
    assert broker.abandoned == []


async def test_unexpected_error_abandons_message():
    broker = FakeBroker()
    processor = AsyncMock()
    processor.process_order.side_effect = ConnectionError("database down")
    message = make_message(_order_created_body())

    await _consumer(broker, processor).handle_message(message)

    assert broker.abandoned == [message]
    assert broker.completed == []


async def test_lock_is_renewed_while_processing():
    broker = FakeBroker()
    processor = AsyncMock()

    async def slow(order_id):
        await asyncio.sleep(0.1)

    processor.process_order.side_effect = slow
    message = make_message(_order_created_body())

    await _consumer(broker, processor, lock_renewal_interval=0.01).handle_message(message)

    assert broker.renewed
    assert all(m is message for m in broker.renewed)
    assert broker.completed == [message]


async def test_lock_renewal_stops_at_limit():
    broker = FakeBroker()
    processor = AsyncMock()

    async def slow(order_id):
        await asyncio.sleep(0.2)

    processor.process_order.side_effect = slow
    message = make_message(_order_created_body())
    consumer = _consumer(broker, processor, lock_renewal_interval=0.01, max_lock_renewal=0.05)

    await consumer.handle_message(message)

    # renewals only happen before the deadline
    assert 0 < len(broker.renewed) <= 5


async def test_run_processes_messages_until_shutdown():
    messages = [make_message(_order_created_body()) for _ in range(3)]
    broker = FakeBroker(messages)
    processor = AsyncMock()
    shutdown = asyncio.Event()
    consumer = _consumer(broker, processor, max_concurrency=2)

    task = asyncio.create_task(consumer.run(shutdown))
    for _ in range(200):
        if len(broker.completed) == 3:
            break
        await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(task, timeout=5)

    assert processor.process_order.await_count == 3
    assert len(broker.completed) == 3
    assert broker.closed


async def test_run_keeps_going_after_receive_error():
    broker = FakeBroker([make_message(_order_created_body())])
    original_receive = broker.receive
    calls = []

    async def flaky_receive():
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionError("redis unavailable")
        return await original_receive()

    broker.receive = flaky_receive
    processor = AsyncMock()
    shutdown = asyncio.Event()
    consumer = _consumer(broker, processor, receive_error_backoff=0.01)

    task = asyncio.create_task(consumer.run(shutdown))
    for _ in range(200):
        if broker.completed:
            break
        await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(task, timeout=5)

    assert len(broker.completed) == 1
    assert broker.closed


async def test_shutdown_cancels_work_that_outlives_grace_period():
    broker = FakeBroker([make_message(_order_created_body())])
    processor = AsyncMock()
    started = asyncio.Event()

    async def hang(order_id):
        started.set()
        await asyncio.Event().wait()

    processor.process_order.side_effect = hang
    shutdown = asyncio.Event()
    consumer = _consumer(broker, processor, max_lock_renewal=0.05, lock_renewal_interval=1)

    task = asyncio.create_task(consumer.run(shutdown))
    await asyncio.wait_for(started.wait(), timeout=5)
    shutdown.set()
    await asyncio.wait_for(task, timeout=5)

    assert broker.completed == []
    assert broker.abandoned == []
    assert broker.closed
