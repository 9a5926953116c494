"""
Order Pipeline: イベント定義

Outbox に保存され、Relay がブローカーへ配信するイベントのペイロード。
イベントは過去形で命名し、不変(immutable)として扱う。
ペイロードは注文オブジェクトなしで解釈できるよう自己完結させる。
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .aggregate import Order, OrderStatus
from .errors import EventDeserializationError

ORDER_CREATED = "OrderCreated"
ORDER_STATUS_CHANGED = "OrderStatusChanged"


class DomainEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_type: ClassVar[str]


class OrderCreated(DomainEvent):
    """注文が作成された"""

    event_type: ClassVar[str] = ORDER_CREATED

    order_id: UUID
    customer_name: str
    product_name: str
    value: Decimal
    created_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderCreated":
        return cls(
            order_id=order.id,
            customer_name=order.customer_name,
            product_name=order.product_name,
            value=order.value,
            created_at=order.created_at,
        )


class OrderStatusChanged(DomainEvent):
    """注文の状態が変わった（通知用）"""

    event_type: ClassVar[str] = ORDER_STATUS_CHANGED

    order_id: UUID
    status: OrderStatus
    changed_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderStatusChanged":
        latest = order.status_history[-1]
        return cls(order_id=order.id, status=latest.status, changed_at=latest.changed_at)


def serialize_event(event: DomainEvent) -> str:
    return event.model_dump_json(by_alias=True)


def deserialize_order_created(body: str | bytes) -> OrderCreated:
    """メッセージ本文を OrderCreated に復元する。形が合わなければ EventDeserializationError。"""
    try:
        return OrderCreated.model_validate_json(body)
    except ValidationError as exc:
        raise EventDeserializationError(str(exc)) from exc
