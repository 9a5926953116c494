"""
Order Pipeline: 注文プロセッサ（冪等な状態遷移）

Consumer から呼ばれ、注文を Pending → Processing → Completed と進める。
メッセージは at-least-once で届くため、同じ注文 ID で何度呼ばれても
結果が 1 回分になるように作る:

- すでに Processing / Completed なら何もしない
- 2 回目の遷移の直前に注文を読み直す
- 最後の砦として集約の状態ガードと version の楽観的ロックがある
"""

import asyncio
import logging
from typing import Awaitable, Callable
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from . import store
from .aggregate import Order, OrderStatus
from .errors import ConcurrencyConflict
from .events import OrderStatusChanged
from .outbox import stage_event

logger = logging.getLogger(__name__)

WorkStep = Callable[[UUID], Awaitable[None]]


def simulated_fulfillment(delay_seconds: float) -> WorkStep:
    """実際の出荷処理の代わりに一定時間待つだけの作業ステップ。"""

    async def _work(order_id: UUID) -> None:
        logger.debug("Simulating fulfillment of order %s for %.1fs", order_id, delay_seconds)
        await asyncio.sleep(delay_seconds)

    return _work


class OrderProcessor:
    """1 件の注文を Completed まで進める"""

    def __init__(self, session_factory: sessionmaker, work: WorkStep) -> None:
        self._session_factory = session_factory
        self._work = work

    async def process_order(self, order_id: UUID) -> None:
        logger.info("Processing order %s", order_id)

        # ── Step 1: Processing へ ────────────────────
        async with self._session_factory() as session:
            order = await store.get_order_with_history(session, order_id)

            if order is None:
                logger.warning("Order %s not found. Skipping.", order_id)
                return

            if order.status in (OrderStatus.PROCESSING, OrderStatus.COMPLETED):
                logger.info(
                    "Order %s is already %s. Skipping (idempotent).", order_id, order.status.value
                )
                return

            order.advance_to_processing()
            stage_event(order, OrderStatusChanged.from_order(order))
            if not await self._commit(session, order):
                return

        logger.info("Order %s status updated to Processing", order_id)

        # ── Step 2: 作業（キャンセル可能） ────────────
        await self._work(order_id)

        # ── Step 3: 読み直してから Completed へ ─────────
        async with self._session_factory() as session:
            order = await store.get_order_with_history(session, order_id)

            if order is None or order.status is OrderStatus.COMPLETED:
                logger.info("Order %s already completed or not found. Skipping.", order_id)
                return

            order.advance_to_completed()
            stage_event(order, OrderStatusChanged.from_order(order))
            if not await self._commit(session, order):
                return

        logger.info("Order %s status updated to Completed", order_id)

    async def _commit(self, session, order: Order) -> bool:
        try:
            await store.commit_order_and_outbox(session, order, order.pull_staged_events())
        except ConcurrencyConflict:
            # 別のハンドラが先に同じ遷移をコミットした
            logger.info("Order %s was advanced by another handler. Skipping (idempotent).", order.id)
            return False
        return True
