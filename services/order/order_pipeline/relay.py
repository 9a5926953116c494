"""
Order Pipeline: Outbox Relay

一定間隔で outbox_messages をポーリングし、未処理レコードを古い順に
ブローカーへ発行して processed にする。

- 発行に失敗したレコードは未処理のまま残り、次のポーリングで再試行される
- 「発行成功 → processed 更新」の間でクラッシュすると次回に重複発行される
  (at-least-once)。重複は Consumer 側の冪等処理で吸収する
"""

import asyncio
import contextlib
import logging

from sqlalchemy.orm import sessionmaker

from . import outbox
from .broker import MessageBroker
from .config import Settings
from .events import ORDER_CREATED, ORDER_STATUS_CHANGED

logger = logging.getLogger(__name__)


def topics_from_settings(settings: Settings) -> dict[str, str]:
    """イベント種別 → 発行先ストリーム"""
    return {
        ORDER_CREATED: settings.orders_queue,
        ORDER_STATUS_CHANGED: settings.order_status_topic,
    }


class OutboxRelay:
    def __init__(
        self,
        session_factory: sessionmaker,
        broker: MessageBroker,
        topics: dict[str, str],
        default_topic: str,
        poll_interval: float = 2.0,
        batch_size: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._broker = broker
        self._topics = topics
        # 未知のイベント種別は注文キューへ流す（Consumer が ACK して捨てる）
        self._default_topic = default_topic
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls, session_factory: sessionmaker, broker: MessageBroker, settings: Settings
    ) -> "OutboxRelay":
        return cls(
            session_factory,
            broker,
            topics=topics_from_settings(settings),
            default_topic=settings.orders_queue,
            poll_interval=settings.outbox_poll_interval_seconds,
            batch_size=settings.outbox_batch_size,
        )

    # ── ライフサイクル ─────────────────────────────

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self.run(), name="outbox-relay")

    async def stop(self, timeout: float = 5.0) -> None:
        """
        ループに停止を伝え、timeout 秒待っても終わらなければキャンセルする。

        発行中だったレコードは未処理のまま残り、次回起動時に再発行される。
        """
        self._stopping.set()
        task, self._task = self._task, None
        if task is None:
            return

        done, _pending = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning("Outbox relay did not stop within %.1fs. Cancelling.", timeout)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── ポーリングループ ───────────────────────────

    async def run(self) -> None:
        logger.info("Outbox relay started.")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error processing outbox messages.")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox relay stopped.")

    async def run_once(self) -> int:
        """1 バッチ分を発行し、processed にできた件数を返す。"""
        async with self._session_factory() as session:
            records = await outbox.fetch_unprocessed(session, self._batch_size)

        published = 0
        for record in records:
            topic = self._topics.get(record.event_type, self._default_topic)
            try:
                await self._broker.publish(
                    topic,
                    record.payload,
                    {
                        "event_type": record.event_type,
                        "correlation_id": str(record.order_id),
                        "message_id": str(record.id),
                    },
                )
            except Exception:
                logger.exception(
                    "Failed to publish outbox message %s for order %s. Will retry.",
                    record.id, record.order_id,
                )
                continue

            try:
                async with self._session_factory() as session:
                    await outbox.mark_processed(session, record.id)
            except Exception:
                # 発行済みだが未処理のまま残るので、次回もう一度発行される
                logger.exception(
                    "Published outbox message %s for order %s but failed to mark it processed.",
                    record.id, record.order_id,
                )
                continue

            record.mark_processed()
            published += 1
            logger.info(
                "Outbox message %s for order %s published and marked as processed.",
                record.id, record.order_id,
            )
        return published
