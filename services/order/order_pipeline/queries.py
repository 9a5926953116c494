"""
Order Pipeline: クエリハンドラ (Read 側)

API のレスポンス用に注文を辞書へ変換して返す。
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from . import store
from .aggregate import Order


def order_to_dict(order: Order, include_history: bool = False) -> dict:
    data = {
        "id": str(order.id),
        "customer_name": order.customer_name,
        "product_name": order.product_name,
        "value": float(order.value),
        "status": order.status.value,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }
    if include_history:
        data["status_history"] = [
            {
                "id": str(entry.id),
                "status": entry.status.value,
                "changed_at": entry.changed_at.isoformat(),
            }
            for entry in order.status_history
        ]
    return data


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    """指定注文を状態履歴つきで取得する。"""
    order = await store.get_order_with_history(session, order_id)
    if order is None:
        return None
    return order_to_dict(order, include_history=True)


async def list_orders(session: AsyncSession) -> list[dict]:
    """全注文一覧（履歴なし）"""
    return [order_to_dict(order) for order in await store.list_orders(session)]
