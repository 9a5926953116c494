"""
Order Pipeline: Outbox

状態変更と同じトランザクションで保存する「送信待ちイベント」。
stage_event はレコードを集約に積むだけでストレージには触れない。
保存は store.commit_order_and_outbox、配信は relay.OutboxRelay が行う。
"""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, utcnow
from .db import as_utc, outbox_messages
from .events import DomainEvent, serialize_event


@dataclass
class OutboxRecord:
    order_id: UUID
    event_type: str
    payload: str
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None
    processed: bool = False

    def mark_processed(self) -> None:
        self.processed = True
        self.processed_at = utcnow()


def stage_event(order: Order, event: DomainEvent | str, event_type: str | None = None) -> OutboxRecord:
    """
    イベントを Outbox レコードとして集約に積む。

    event がモデルなら JSON にシリアライズし、種別はモデルの event_type を使う。
    文字列を渡す場合は event_type の指定が必要。
    """
    if isinstance(event, str):
        if not event_type:
            raise ValueError("event_type is required for a pre-serialized payload")
        payload = event
    else:
        payload = serialize_event(event)
        event_type = event_type or event.event_type

    record = OutboxRecord(order_id=order.id, event_type=event_type, payload=payload)
    order._stage(record)
    return record


def _to_record(row) -> OutboxRecord:
    return OutboxRecord(
        id=row.id,
        order_id=row.order_id,
        event_type=row.event_type,
        payload=row.payload,
        created_at=as_utc(row.created_at),
        processed_at=as_utc(row.processed_at),
        processed=row.processed,
    )


async def fetch_unprocessed(session: AsyncSession, limit: int = 10) -> list[OutboxRecord]:
    """未処理レコードを作成順（古い順）に最大 limit 件取得する。"""
    result = await session.execute(
        select(outbox_messages)
        .where(outbox_messages.c.processed.is_(False))
        .order_by(outbox_messages.c.created_at.asc(), outbox_messages.c.id.asc())
        .limit(limit)
    )
    return [_to_record(row) for row in result.fetchall()]


async def mark_processed(session: AsyncSession, record_id: UUID) -> bool:
    """
    レコードを処理済みにしてコミットする。

    processed = false の行だけを更新するので、処理済みが未処理に戻ることはない。
    """
    result = await session.execute(
        update(outbox_messages)
        .where(outbox_messages.c.id == record_id, outbox_messages.c.processed.is_(False))
        .values(processed=True, processed_at=utcnow())
    )
    await session.commit()
    return result.rowcount == 1


async def load_records(session: AsyncSession, order_id: UUID) -> list[OutboxRecord]:
    result = await session.execute(
        select(outbox_messages)
        .where(outbox_messages.c.order_id == order_id)
        .order_by(outbox_messages.c.created_at.asc())
    )
    return [_to_record(row) for row in result.fetchall()]
