import logging
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ResponseError

from order_pipeline.broker import LoggingBroker, RedisStreamBroker, create_broker
from order_pipeline.config import Settings

from .fakes import make_message

NO_CLAIMS = ["0-0", [], []]


def _redis(**overrides):
    redis = AsyncMock()
    redis.xautoclaim.return_value = NO_CLAIMS
    redis.xreadgroup.return_value = []
    for name, value in overrides.items():
        setattr(redis, name, value)
    return redis


def _broker(redis, **kwargs):
    return RedisStreamBroker(
        redis, queue="orders", group="order-processor", consumer="worker-1", **kwargs
    )


async def test_publish_adds_body_and_attributes_to_stream():
    redis = _redis()
    redis.xadd.return_value = "1700000000000-0"

    message_id = await _broker(redis).publish(
        "orders", '{"orderId":"x"}', {"event_type": "OrderCreated", "correlation_id": "x"}
    )

    assert message_id == "1700000000000-0"
    redis.xadd.assert_awaited_once_with(
        "orders", {"body": '{"orderId":"x"}', "event_type": "OrderCreated", "correlation_id": "x"}
    )


async def test_receive_creates_group_once_and_reads_new_message():
    redis = _redis()
    redis.xreadgroup.return_value = [
        ["orders", [("1-0", {"body": "{}", "event_type": "OrderCreated", "correlation_id": "c"})]]
    ]
    broker = _broker(redis, block_ms=50)

    message = await broker.receive()
    await broker.receive()

    redis.xgroup_create.assert_awaited_once_with("orders", "order-processor", id="0", mkstream=True)
    redis.xreadgroup.assert_awaited_with(
        "order-processor", "worker-1", {"orders": ">"}, count=1, block=50
    )
    assert message.message_id == "1-0"
    assert message.body == "{}"
    assert message.attributes == {"event_type": "OrderCreated", "correlation_id": "c"}
    assert message.delivery_count == 1


async def test_receive_returns_none_when_nothing_arrives():
    broker = _broker(_redis(xreadgroup=AsyncMock(return_value=None)))

    assert await broker.receive() is None


async def test_existing_group_is_not_an_error():
    redis = _redis()
    redis.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")

    assert await _broker(redis).receive() is None


async def test_other_group_errors_propagate():
    redis = _redis()
    redis.xgroup_create.side_effect = ResponseError("WRONGTYPE Operation against a key")

    with pytest.raises(ResponseError):
        await _broker(redis).receive()


async def test_expired_message_is_redelivered_before_new_ones():
    redis = _redis()
    redis.xautoclaim.return_value = ["0-0", [("5-0", {"body": "{}", "event_type": "OrderCreated"})], []]
    redis.xpending_range.return_value = [
        {"message_id": "5-0", "consumer": "worker-1", "time_since_delivered": 0, "times_delivered": 3}
    ]

    message = await _broker(redis, visibility_timeout_ms=30_000).receive()

    assert message.message_id == "5-0"
    assert message.delivery_count == 3
    assert redis.xautoclaim.await_args.kwargs["min_idle_time"] == 30_000
    redis.xreadgroup.assert_not_awaited()


async def test_message_over_delivery_limit_is_dead_lettered():
    redis = _redis()
    redis.xautoclaim.return_value = ["0-0", [("5-0", {"body": "{}", "event_type": "OrderCreated"})], []]
    redis.xpending_range.return_value = [
        {"message_id": "5-0", "consumer": "worker-1", "time_since_delivered": 0, "times_delivered": 4}
    ]

    message = await _broker(redis, max_delivery_count=3).receive()

    assert message is None
    stream, fields = redis.xadd.await_args.args
    assert stream == "orders:dead-letter"
    assert fields["dead_letter_reason"] == "MaxDeliveryCountExceeded"
    assert fields["original_message_id"] == "5-0"
    redis.xack.assert_awaited_once_with("orders", "order-processor", "5-0")


async def test_complete_acks_message():
    redis = _redis()
    message = make_message("{}")

    await _broker(redis).complete(message)

    redis.xack.assert_awaited_once_with("orders", "order-processor", message.message_id)


async def test_abandon_makes_message_immediately_reclaimable():
    redis = _redis()
    message = make_message("{}")

    await _broker(redis, visibility_timeout_ms=1234).abandon(message)

    redis.xack.assert_not_awaited()
    redis.xclaim.assert_awaited_once_with(
        "orders",
        "order-processor",
        "worker-1",
        min_idle_time=0,
        message_ids=[message.message_id],
        idle=1234,
        justid=True,
    )


async def test_dead_letter_copies_message_and_acks_original():
    redis = _redis()
    message = make_message('{"bad": true}', correlation_id="order-1")

    await _broker(redis).dead_letter(message, "DeserializationError", "x" * 2000)

    stream, fields = redis.xadd.await_args.args
    assert stream == "orders:dead-letter"
    assert fields["body"] == '{"bad": true}'
    assert fields["correlation_id"] == "order-1"
    assert fields["dead_letter_reason"] == "DeserializationError"
    assert len(fields["dead_letter_description"]) == 1000
    redis.xack.assert_awaited_once_with("orders", "order-processor", message.message_id)


@pytest.mark.parametrize("claimed, expected", [(["1-0"], True), ([], False)])
async def test_renew_lock_reclaims_message(claimed, expected):
    redis = _redis()
    redis.xclaim.return_value = claimed

    assert await _broker(redis).renew_lock(make_message("{}")) is expected
    assert redis.xclaim.await_args.kwargs["justid"] is True


async def test_close_closes_client():
    redis = _redis()

    await _broker(redis).close()

    redis.aclose.assert_awaited_once()


async def test_logging_broker_only_logs_publishes(caplog):
    caplog.set_level(logging.WARNING, logger="order_pipeline.broker")
    broker = LoggingBroker()

    message_id = await broker.publish(
        "orders", '{"orderId":"o-1"}', {"event_type": "OrderCreated", "correlation_id": "o-1"}
    )

    assert broker.degraded
    assert not broker.supports_consume
    assert message_id
    assert not hasattr(broker, "published")
    [entry] = [r for r in caplog.records if "[IN-MEMORY]" in r.getMessage()]
    assert entry.levelno == logging.WARNING
    assert "OrderCreated for order o-1" in entry.getMessage()
    assert "topic=orders" in entry.getMessage()


async def test_logging_broker_cannot_consume():
    with pytest.raises(RuntimeError):
        await LoggingBroker().receive()


@pytest.mark.parametrize("redis_url", [None, "", "   "])
def test_create_broker_falls_back_without_redis_url(redis_url):
    assert isinstance(create_broker(Settings(redis_url=redis_url)), LoggingBroker)


def test_create_broker_uses_redis_streams_when_configured():
    broker = create_broker(Settings(redis_url="redis://localhost:6379/0", orders_queue="q"))

    assert isinstance(broker, RedisStreamBroker)
    assert broker.dead_letter_stream == "q:dead-letter"
    assert not broker.degraded
