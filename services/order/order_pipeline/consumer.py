"""
Order Pipeline: 注文コンシューマ

ブローカーからメッセージを受け取り、OrderProcessor に渡して結果に応じて決着させる。

┌──────────────────────────────┬──────────────────────────┐
│ 状況                          │ 決着                      │
├──────────────────────────────┼──────────────────────────┤
│ 未知の event_type             │ complete（捨てる）        │
│ 本文をデシリアライズできない   │ dead_letter（再試行しない）│
│ 処理成功                      │ complete                  │
│ 業務ルール違反 (OrderDomainError) │ complete（処理済み扱い） │
│ それ以外の例外                │ abandon（再配信を待つ）    │
└──────────────────────────────┴──────────────────────────┘

同時処理数は既定で 1。同じ注文のイベント順序を決定的に保つため。
"""

import asyncio
import contextlib
import logging
from uuid import UUID

from .broker import MessageBroker, ReceivedMessage
from .config import Settings
from .errors import EventDeserializationError, OrderDomainError
from .events import ORDER_CREATED, deserialize_order_created
from .processor import OrderProcessor

logger = logging.getLogger(__name__)

SLOT_POLL_SECONDS = 0.1


class OrderConsumer:
    def __init__(
        self,
        broker: MessageBroker,
        processor: OrderProcessor,
        max_concurrency: int = 1,
        lock_renewal_interval: float = 10.0,
        max_lock_renewal: float = 300.0,
        receive_error_backoff: float = 1.0,
    ) -> None:
        self._broker = broker
        self._processor = processor
        self._max_concurrency = max(1, max_concurrency)
        self._lock_renewal_interval = lock_renewal_interval
        self._max_lock_renewal = max_lock_renewal
        self._receive_error_backoff = receive_error_backoff

    @classmethod
    def from_settings(
        cls, broker: MessageBroker, processor: OrderProcessor, settings: Settings
    ) -> "OrderConsumer":
        return cls(
            broker,
            processor,
            max_concurrency=settings.consumer_max_concurrency,
            lock_renewal_interval=settings.lock_renewal_interval_seconds,
            max_lock_renewal=settings.max_lock_renewal_seconds,
        )

    # ── 受信ループ ───────────────────────────────

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまでメッセージを受信し続ける。

        停止時は新規受信をやめ、処理中のメッセージの完了を
        リース更新の上限時間まで待ってからブローカーを閉じる。
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)
        in_flight: set[asyncio.Task] = set()
        logger.info("Order consumer started. Listening for messages...")

        try:
            while not shutdown_event.is_set():
                if not await self._acquire_slot(semaphore, shutdown_event):
                    break

                try:
                    message = await self._broker.receive()
                except Exception:
                    semaphore.release()
                    logger.exception("Failed to receive from message broker.")
                    with contextlib.suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(shutdown_event.wait(), self._receive_error_backoff)
                    continue

                if message is None:
                    semaphore.release()
                    continue

                task = asyncio.create_task(self._handle_and_release(message, semaphore))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)

            logger.info("Order consumer stopping...")
            if in_flight:
                _done, pending = await asyncio.wait(in_flight, timeout=self._max_lock_renewal)
                for task in pending:
                    # 未 ACK のまま残り、visibility timeout 後に再配信される
                    task.cancel()
                if pending:
                    await asyncio.wait(pending)
        finally:
            await self._broker.close()
            logger.info("Order consumer shut down.")

    async def _acquire_slot(self, semaphore: asyncio.Semaphore, shutdown_event: asyncio.Event) -> bool:
        """空きスロットを待つ。待っている間に停止要求が来たら False。"""
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(semaphore.acquire(), timeout=SLOT_POLL_SECONDS)
            except asyncio.TimeoutError:
                continue
            if shutdown_event.is_set():
                semaphore.release()
                return False
            return True
        return False

    async def _handle_and_release(self, message: ReceivedMessage, semaphore: asyncio.Semaphore) -> None:
        try:
            await self.handle_message(message)
        except Exception:
            logger.exception("Unhandled error settling message %s.", message.message_id)
        finally:
            semaphore.release()

    # ── 1 メッセージの処理 ─────────────────────────

    async def handle_message(self, message: ReceivedMessage) -> None:
        event_type = message.attributes.get("event_type", "Unknown")
        logger.info(
            "Received message. CorrelationId: %s, EventType: %s, MessageId: %s",
            message.attributes.get("correlation_id"), event_type, message.message_id,
        )

        if event_type != ORDER_CREATED:
            logger.warning("Unknown event type: %s. Completing message.", event_type)
            await self._broker.complete(message)
            return

        try:
            event = deserialize_order_created(message.body)
        except EventDeserializationError as exc:
            logger.error("Deserialization error. Dead-lettering message %s.", message.message_id)
            await self._broker.dead_letter(message, "DeserializationError", str(exc))
            return

        logger.info("Processing order %s from message", event.order_id)
        try:
            await self._process_with_lock_renewal(message, event.order_id)
        except OrderDomainError:
            logger.warning(
                "Business rule violation for order %s. Completing message (idempotent).",
                event.order_id, exc_info=True,
            )
            await self._broker.complete(message)
            return
        except Exception:
            logger.exception(
                "Error processing order %s. Message will be redelivered.", event.order_id
            )
            await self._broker.abandon(message)
            return

        await self._broker.complete(message)
        logger.info("Message for order %s completed successfully.", event.order_id)

    async def _process_with_lock_renewal(self, message: ReceivedMessage, order_id: UUID) -> None:
        renewal = asyncio.create_task(self._renew_lock_periodically(message))
        try:
            await self._processor.process_order(order_id)
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)

    async def _renew_lock_periodically(self, message: ReceivedMessage) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._max_lock_renewal
        while True:
            await asyncio.sleep(self._lock_renewal_interval)
            if loop.time() >= deadline:
                logger.warning("Stopped renewing lock for message %s (limit reached).", message.message_id)
                return
            try:
                if not await self._broker.renew_lock(message):
                    logger.warning("Lock for message %s was lost.", message.message_id)
                    return
            except Exception:
                logger.exception("Failed to renew lock for message %s.", message.message_id)
