"""
Order Pipeline: データベース定義

orders / order_status_history / outbox_messages の 3 テーブル。
PostgreSQL (asyncpg) を想定し、テストでは SQLite (aiosqlite) でも動くよう
方言非依存の型だけを使う。

SQL は text() による生 SQL 文字列ではなく、ここで定義した Table に対する
Core 式 (insert / update / select) で組み立てる。UUID・Numeric・タイムゾーンつき
DateTime のバインドと変換を方言ごとに SQLAlchemy に任せるため。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("customer_name", String(200), nullable=False),
    Column("product_name", String(200), nullable=False),
    Column("value", Numeric(18, 2), nullable=False),
    Column("status", String(50), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    Column("version", Integer, nullable=False, default=1),
)

order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("order_id", Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("sequence", Integer, nullable=False),
    Column("status", String(50), nullable=False),
    Column("changed_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "sequence", name="uq_order_status_history_sequence"),
)

outbox_messages = Table(
    "outbox_messages",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("order_id", Uuid, ForeignKey("orders.id"), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    Column("processed", Boolean, nullable=False, default=False),
    Index("ix_outbox_messages_unprocessed", "processed", "created_at"),
)


def create_session_factory(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite はタイムゾーンを保持しないため、読み出し時に UTC を補う
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
