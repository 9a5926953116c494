"""
Order Pipeline: メッセージブローカー・ゲートウェイ

publish と「明示的 ACK つきの受信」を 1 つのインターフェースにまとめる。

┌───────────────┐  XADD   ┌──────────────┐  XREADGROUP / XACK  ┌──────────┐
│ Outbox Relay  │ ──────▶ │ Redis Stream │ ──────────────────▶ │ Consumer │
└───────────────┘         └──────────────┘                     └──────────┘

Redis Pub/Sub は購読者がいない間のメッセージを失うため、
コンシューマグループつきの Redis Streams を使う:

- 受信したメッセージは XACK するまで Pending Entries List (PEL) に残る
- visibility timeout を超えて放置されたメッセージは XAUTOCLAIM で再配信
- 処理が長引く場合は XCLAIM (JUSTID) でアイドル時間をリセット = リース更新
- 処理不能なメッセージは <queue>:dead-letter ストリームへ退避

REDIS_URL が無い環境では LoggingBroker にフォールバックする。
publish をログに残すだけで、誰にも配信されない。
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from .config import Settings

logger = logging.getLogger(__name__)

DEAD_LETTER_SUFFIX = ":dead-letter"


@dataclass
class ReceivedMessage:
    message_id: str
    body: str
    attributes: dict[str, str] = field(default_factory=dict)
    delivery_count: int = 1


class MessageBroker(Protocol):
    degraded: bool
    supports_consume: bool

    async def publish(self, topic: str, body: str, attributes: dict[str, str]) -> str: ...

    async def receive(self) -> ReceivedMessage | None: ...

    async def complete(self, message: ReceivedMessage) -> None: ...

    async def abandon(self, message: ReceivedMessage) -> None: ...

    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None: ...

    async def renew_lock(self, message: ReceivedMessage) -> bool: ...

    async def close(self) -> None: ...


class RedisStreamBroker:
    """Redis Streams + コンシューマグループによる実ブローカー"""

    degraded = False
    supports_consume = True

    def __init__(
        self,
        redis: aioredis.Redis,
        queue: str,
        group: str,
        consumer: str,
        visibility_timeout_ms: int = 30_000,
        block_ms: int = 1000,
        max_delivery_count: int = 10,
    ) -> None:
        self._redis = redis
        self._queue = queue
        self._group = group
        self._consumer = consumer
        self._visibility_timeout_ms = visibility_timeout_ms
        self._block_ms = block_ms
        self._max_delivery_count = max_delivery_count
        self._group_ready = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisStreamBroker":
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        return cls(
            redis,
            queue=settings.orders_queue,
            group=settings.consumer_group,
            consumer=settings.consumer_name,
            visibility_timeout_ms=int(settings.visibility_timeout_seconds * 1000),
            block_ms=settings.receive_block_ms,
            max_delivery_count=settings.max_delivery_count,
        )

    @property
    def dead_letter_stream(self) -> str:
        return f"{self._queue}{DEAD_LETTER_SUFFIX}"

    # ── 送信 ─────────────────────────────────────

    async def publish(self, topic: str, body: str, attributes: dict[str, str]) -> str:
        fields = {"body": body, **attributes}
        message_id = await self._redis.xadd(topic, fields)
        logger.info(
            "Published %s to %s (correlation_id=%s, stream_id=%s)",
            attributes.get("event_type"), topic, attributes.get("correlation_id"), message_id,
        )
        return message_id

    # ── 受信 ─────────────────────────────────────

    async def ensure_group(self) -> None:
        """コンシューマグループを作成する（既にあれば何もしない）。"""
        try:
            await self._redis.xgroup_create(self._queue, self._group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self._group, self._queue)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._group_ready = True

    async def receive(self) -> ReceivedMessage | None:
        """
        メッセージを 1 件受け取る。

        1. visibility timeout を超えた未 ACK メッセージを XAUTOCLAIM で回収（再配信）
        2. 無ければ新着を XREADGROUP でブロック待ち
        """
        if not self._group_ready:
            await self.ensure_group()

        message = await self._reclaim_expired()
        if message is not None:
            return message

        response = await self._redis.xreadgroup(
            self._group, self._consumer, {self._queue: ">"}, count=1, block=self._block_ms
        )
        for _stream, entries in response or []:
            for message_id, fields in entries:
                return self._to_message(message_id, fields, delivery_count=1)
        return None

    async def _reclaim_expired(self) -> ReceivedMessage | None:
        result = await self._redis.xautoclaim(
            self._queue,
            self._group,
            self._consumer,
            min_idle_time=self._visibility_timeout_ms,
            start_id="0-0",
            count=1,
        )
        claimed = result[1] if result and len(result) > 1 else []
        for message_id, fields in claimed:
            if not message_id or fields is None:
                continue
            delivery_count = await self._delivery_count(message_id)
            message = self._to_message(message_id, fields, delivery_count)
            if delivery_count > self._max_delivery_count:
                await self.dead_letter(
                    message,
                    "MaxDeliveryCountExceeded",
                    f"Delivered {delivery_count} times (max {self._max_delivery_count}).",
                )
                return None
            logger.info("Redelivering message %s (delivery %d)", message_id, delivery_count)
            return message
        return None

    async def _delivery_count(self, message_id: str) -> int:
        pending = await self._redis.xpending_range(
            self._queue, self._group, min=message_id, max=message_id, count=1
        )
        if not pending:
            return 1
        return int(pending[0]["times_delivered"])

    @staticmethod
    def _to_message(message_id: str, fields: dict, delivery_count: int) -> ReceivedMessage:
        attributes = dict(fields)
        body = attributes.pop("body", "")
        return ReceivedMessage(
            message_id=message_id, body=body, attributes=attributes, delivery_count=delivery_count
        )

    # ── 決着 ─────────────────────────────────────

    async def complete(self, message: ReceivedMessage) -> None:
        await self._redis.xack(self._queue, self._group, message.message_id)

    async def abandon(self, message: ReceivedMessage) -> None:
        # アイドル時間を visibility timeout まで進め、次の XAUTOCLAIM で即再配信させる
        await self._redis.xclaim(
            self._queue,
            self._group,
            self._consumer,
            min_idle_time=0,
            message_ids=[message.message_id],
            idle=self._visibility_timeout_ms,
            justid=True,
        )

    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        await self._redis.xadd(
            self.dead_letter_stream,
            {
                "body": message.body,
                **message.attributes,
                "original_message_id": message.message_id,
                "dead_letter_reason": reason,
                "dead_letter_description": description[:1000],
            },
        )
        await self._redis.xack(self._queue, self._group, message.message_id)
        logger.error(
            "Message %s moved to %s: %s", message.message_id, self.dead_letter_stream, reason
        )

    async def renew_lock(self, message: ReceivedMessage) -> bool:
        claimed = await self._redis.xclaim(
            self._queue,
            self._group,
            self._consumer,
            min_idle_time=0,
            message_ids=[message.message_id],
            justid=True,
        )
        return bool(claimed)

    async def close(self) -> None:
        await self._redis.aclose()


class LoggingBroker:
    """
    ブローカー未設定時のフォールバック。

    publish をログに残すだけで、実際には配信しない（保持もしない）。
    受信はできない。
    """

    degraded = True
    supports_consume = False

    async def publish(self, topic: str, body: str, attributes: dict[str, str]) -> str:
        logger.warning(
            "[IN-MEMORY] Message broker not configured. %s for order %s logged locally "
            "(topic=%s). Payload: %s",
            attributes.get("event_type"), attributes.get("correlation_id"), topic, body,
        )
        return str(uuid.uuid4())

    async def receive(self) -> ReceivedMessage | None:
        raise RuntimeError("LoggingBroker cannot consume messages; configure REDIS_URL")

    async def complete(self, message: ReceivedMessage) -> None:
        raise RuntimeError("LoggingBroker cannot consume messages; configure REDIS_URL")

    async def abandon(self, message: ReceivedMessage) -> None:
        raise RuntimeError("LoggingBroker cannot consume messages; configure REDIS_URL")

    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        raise RuntimeError("LoggingBroker cannot consume messages; configure REDIS_URL")

    async def renew_lock(self, message: ReceivedMessage) -> bool:
        raise RuntimeError("LoggingBroker cannot consume messages; configure REDIS_URL")

    async def close(self) -> None:
        pass


def create_broker(settings: Settings) -> MessageBroker:
    """設定に応じてブローカー実装を 1 度だけ選ぶ。"""
    if settings.broker_configured:
        logger.info("Using Redis Streams broker (queue=%s)", settings.orders_queue)
        return RedisStreamBroker.from_settings(settings)

    logger.warning("REDIS_URL not configured. Falling back to in-memory logging broker.")
    return LoggingBroker()
