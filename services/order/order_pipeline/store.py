"""
Order Pipeline: 注文ストア (Transactional Writer)

注文の現在値・状態履歴・Outbox レコードを 1 つのトランザクションで保存する。
「状態だけ進んでイベントが無い」「イベントだけあって状態が進んでいない」
という中途半端な状態はこの境界を越えて見えることはない。

version による楽観的ロック:
同じ version を前提にした UPDATE が 0 行なら、別の書き込みが先に
コミットしている → ConcurrencyConflict を送出してロールバックする。
"""

from collections import defaultdict
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, OrderStatus, StatusHistoryEntry
from .db import as_utc, order_status_history, orders, outbox_messages
from .errors import ConcurrencyConflict
from .outbox import OutboxRecord


def _order_values(order: Order) -> dict:
    return {
        "customer_name": order.customer_name,
        "product_name": order.product_name,
        "value": order.value,
        "status": order.status.value,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


async def commit_order_and_outbox(
    session: AsyncSession,
    order: Order,
    new_outbox_records: Sequence[OutboxRecord] = (),
) -> None:
    """
    注文と Outbox レコードをアトミックに保存する。

    1. orders 行を INSERT（新規）または version 条件付き UPDATE
    2. 未保存の状態履歴を追記
    3. Outbox レコードを INSERT
    4. COMMIT（失敗時はすべてロールバック）
    """
    try:
        if order.version == 0:
            await session.execute(
                insert(orders).values(id=order.id, version=1, **_order_values(order))
            )
        else:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == order.id, orders.c.version == order.version)
                .values(version=order.version + 1, **_order_values(order))
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(
                    f"Order {order.id} was modified concurrently (expected version {order.version})."
                )

        stored = await session.scalar(
            select(func.count())
            .select_from(order_status_history)
            .where(order_status_history.c.order_id == order.id)
        )
        new_entries = order.status_history[stored or 0:]
        if new_entries:
            await session.execute(
                insert(order_status_history),
                [
                    {
                        "id": entry.id,
                        "order_id": order.id,
                        "sequence": entry.sequence,
                        "status": entry.status.value,
                        "changed_at": entry.changed_at,
                    }
                    for entry in new_entries
                ],
            )

        if new_outbox_records:
            await session.execute(
                insert(outbox_messages),
                [
                    {
                        "id": record.id,
                        "order_id": record.order_id,
                        "event_type": record.event_type,
                        "payload": record.payload,
                        "created_at": record.created_at,
                        "processed_at": None,
                        "processed": False,
                    }
                    for record in new_outbox_records
                ],
            )

        await session.commit()
    except Exception:
        await session.rollback()
        raise

    order.version += 1


def _to_entry(row) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        id=row.id,
        status=OrderStatus(row.status),
        changed_at=as_utc(row.changed_at),
        sequence=row.sequence,
    )


def _to_order(row, history: Iterable[StatusHistoryEntry]) -> Order:
    return Order.rehydrate(
        id=row.id,
        customer_name=row.customer_name,
        product_name=row.product_name,
        value=row.value,
        status=row.status,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        version=row.version,
        history=history,
    )


async def get_order_with_history(session: AsyncSession, order_id: UUID) -> Order | None:
    """注文を状態履歴ごと読み出す。存在しなければ None。"""
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if row is None:
        return None

    history = await session.execute(
        select(order_status_history)
        .where(order_status_history.c.order_id == order_id)
        .order_by(order_status_history.c.sequence.asc())
    )
    return _to_order(row, [_to_entry(h) for h in history.fetchall()])


async def list_orders(session: AsyncSession) -> list[Order]:
    """全注文を作成日時の新しい順に返す。"""
    result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
    rows = result.fetchall()
    if not rows:
        return []

    history_result = await session.execute(
        select(order_status_history)
        .where(order_status_history.c.order_id.in_([row.id for row in rows]))
        .order_by(order_status_history.c.sequence.asc())
    )
    history_by_order: dict[UUID, list[StatusHistoryEntry]] = defaultdict(list)
    for h in history_result.fetchall():
        history_by_order[h.order_id].append(_to_entry(h))

    return [_to_order(row, history_by_order[row.id]) for row in rows]
