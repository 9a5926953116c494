"""
Order Pipeline: コマンドハンドラ (Write 側)

注文作成コマンド。ブローカーへは直接発行しない。
OrderCreated イベントを Outbox に積み、注文と同じトランザクションで保存する。
配信は OutboxRelay が非同期に行う。
"""

import logging
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order
from .events import OrderCreated
from .outbox import stage_event
from .store import commit_order_and_outbox

logger = logging.getLogger(__name__)


async def create_order(
    session: AsyncSession,
    customer_name: str,
    product_name: str,
    value: Decimal,
) -> Order:
    """
    注文作成コマンド

    1. 集約を生成（入力検証はここで InvalidArgument になる）
    2. OrderCreated を Outbox に積む
    3. 注文 + 状態履歴 + Outbox を 1 トランザクションで保存
    """
    logger.info("Creating order for customer %s, product %s", customer_name, product_name)

    order = Order.create(customer_name, product_name, value)
    stage_event(order, OrderCreated.from_order(order))

    await commit_order_and_outbox(session, order, order.pull_staged_events())

    logger.info("Order %s created successfully with outbox message", order.id)
    return order
