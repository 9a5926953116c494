"""
Order Pipeline: 注文集約 (Order Aggregate)

注文の状態遷移と不変条件を持つインメモリの状態機械。
永続化は呼び出し側の責務（store.commit_order_and_outbox を使う）。

状態遷移:
    Pending → Processing → Completed
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable
from uuid import UUID, uuid4

from .errors import InvalidArgument, InvalidTransition

if TYPE_CHECKING:
    from .outbox import OutboxRecord

NAME_MAX_LENGTH = 200
# orders.value は NUMERIC(18, 2)
VALUE_QUANTUM = Decimal("0.01")
VALUE_LIMIT = Decimal(10) ** 16


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"


@dataclass(frozen=True)
class StatusHistoryEntry:
    """状態履歴の 1 行。遷移 1 回につき 1 件追記される。"""

    id: UUID
    status: OrderStatus
    changed_at: datetime
    sequence: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_name(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{field} is required.")
    if len(value) > NAME_MAX_LENGTH:
        raise InvalidArgument(f"{field} must not exceed {NAME_MAX_LENGTH} characters.")
    return value


def _require_positive_value(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidArgument("Value must be a decimal number.") from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidArgument("Value must be greater than zero.")
    if amount >= VALUE_LIMIT:
        raise InvalidArgument("Value must be less than 10^16.")
    quantized = amount.quantize(VALUE_QUANTUM)
    if quantized != amount:
        raise InvalidArgument("Value must have at most 2 decimal places.")
    return quantized


class Order:
    """
    注文集約

    status_history は読み取り専用のタプルとして公開し、
    追記は遷移メソッドの内部でのみ行う。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.customer_name: str = ""
        self.product_name: str = ""
        self.value: Decimal = Decimal("0")
        self.status: OrderStatus = OrderStatus.PENDING
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        # 楽観的ロック用。0 は未保存を表す
        self.version: int = 0
        self._status_history: list[StatusHistoryEntry] = []
        self._staged_events: list["OutboxRecord"] = []

    # ── ファクトリ ─────────────────────────────────

    @classmethod
    def create(cls, customer_name: str, product_name: str, value: Any) -> "Order":
        """新しい注文を Pending 状態で作成する。イベントは発行しない。"""
        order = cls()
        order.customer_name = _require_name("Customer name", customer_name)
        order.product_name = _require_name("Product name", product_name)
        order.value = _require_positive_value(value)
        order.id = uuid4()
        order.status = OrderStatus.PENDING
        order.created_at = utcnow()
        order._append_history(OrderStatus.PENDING, order.created_at)
        return order

    @classmethod
    def rehydrate(
        cls,
        *,
        id: UUID,
        customer_name: str,
        product_name: str,
        value: Decimal,
        status: OrderStatus | str,
        created_at: datetime,
        updated_at: datetime | None,
        version: int,
        history: Iterable[StatusHistoryEntry],
    ) -> "Order":
        """永続化された行から集約を復元する。"""
        order = cls()
        order.id = id
        order.customer_name = customer_name
        order.product_name = product_name
        order.value = value
        order.status = OrderStatus(status)
        order.created_at = created_at
        order.updated_at = updated_at
        order.version = version
        order._status_history = sorted(history, key=lambda e: e.sequence)
        return order

    # ── 状態遷移 ──────────────────────────────────

    def advance_to_processing(self) -> None:
        if self.status is not OrderStatus.PENDING:
            raise InvalidTransition(
                f"Cannot transition to Processing from {self.status.value}. Order must be Pending."
            )
        self._transition(OrderStatus.PROCESSING)

    def advance_to_completed(self) -> None:
        if self.status is not OrderStatus.PROCESSING:
            raise InvalidTransition(
                f"Cannot transition to Completed from {self.status.value}. Order must be Processing."
            )
        self._transition(OrderStatus.COMPLETED)

    def _transition(self, status: OrderStatus) -> None:
        now = utcnow()
        self.status = status
        self.updated_at = now
        self._append_history(status, now)

    def _append_history(self, status: OrderStatus, changed_at: datetime) -> None:
        self._status_history.append(
            StatusHistoryEntry(
                id=uuid4(),
                status=status,
                changed_at=changed_at,
                sequence=len(self._status_history),
            )
        )

    @property
    def status_history(self) -> tuple[StatusHistoryEntry, ...]:
        return tuple(self._status_history)

    # ── Outbox 連携 ──────────────────────────────

    def _stage(self, record: "OutboxRecord") -> None:
        self._staged_events.append(record)

    @property
    def staged_events(self) -> tuple["OutboxRecord", ...]:
        return tuple(self._staged_events)

    def pull_staged_events(self) -> list["OutboxRecord"]:
        """ステージ済みの Outbox レコードを取り出し、集約側からは消去する。"""
        records, self._staged_events = self._staged_events, []
        return records

    def __repr__(self) -> str:
        return f"Order(id={self.id}, status={self.status.value}, version={self.version})"
