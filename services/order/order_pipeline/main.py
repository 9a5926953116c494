"""
Order Pipeline: FastAPI エントリーポイント

注文の作成・参照 API と、バックグラウンドの Outbox Relay を提供する。

┌────────┐ POST /api/orders ┌──────────────┐  1 トランザクション  ┌──────────┐
│ Client │ ───────────────▶ │ create_order │ ──────────────────▶ │ orders + │
└────────┘                  └──────────────┘                     │ outbox   │
                                                                 └────┬─────┘
                                               ポーリング (OutboxRelay) │
                                                                      ▼
                                                               Redis Streams

Relay はブローカーが設定されているときだけ起動する。フォールバック
ブローカーで動かすのは OUTBOX_RELAY_WHEN_DEGRADED=true のときに限る。
"""

from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from . import commands, db, queries
from .broker import create_broker
from .config import Settings
from .errors import InvalidArgument, InvalidTransition
from .logging_config import configure_logging
from .relay import OutboxRelay


# ── Request Models ───────────────────────────────

class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_name: str
    product_name: str
    value: Decimal


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "status": status_code,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        async with AsyncExitStack() as stack:
            # 後処理は登録と逆順 (relay → broker → engine) に必ず走る
            engine, async_session = db.create_session_factory(settings.database_url)
            stack.push_async_callback(engine.dispose)
            await db.init_schema(engine)

            broker = create_broker(settings)
            stack.push_async_callback(broker.close)

            relay = OutboxRelay.from_settings(async_session, broker, settings)
            stack.push_async_callback(relay.stop)
            if not broker.degraded or settings.outbox_relay_when_degraded:
                relay.start()

            app.state.async_session = async_session
            app.state.broker = broker
            app.state.relay = relay
            yield

    app = FastAPI(title="Order Service", lifespan=lifespan)

    @app.exception_handler(InvalidArgument)
    async def invalid_argument_handler(request: Request, exc: InvalidArgument):
        return _error(400, str(exc))

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidTransition):
        return _error(409, str(exc))

    # ── Command Endpoints ────────────────────────

    @app.post("/api/orders", status_code=201)
    async def create_order(req: CreateOrderRequest, request: Request):
        """注文作成（OrderCreated は Outbox 経由で非同期に配信される）"""
        async with request.app.state.async_session() as session:
            order = await commands.create_order(
                session, req.customer_name, req.product_name, req.value
            )
        return queries.order_to_dict(order, include_history=True)

    # ── Query Endpoints ──────────────────────────

    @app.get("/api/orders")
    async def list_orders(request: Request):
        async with request.app.state.async_session() as session:
            return await queries.list_orders(session)

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: UUID, request: Request):
        async with request.app.state.async_session() as session:
            order = await queries.get_order(session, order_id)
            if not order:
                raise HTTPException(404, f"Order with ID {order_id} not found.")
            return order

    @app.get("/health")
    async def health(request: Request):
        broker = request.app.state.broker
        return {
            "status": "degraded" if broker.degraded else "ok",
            "service": "order-service",
            "broker": type(broker).__name__,
            "outbox_relay": "running" if request.app.state.relay.running else "stopped",
        }

    return app


app = create_app()
