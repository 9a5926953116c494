"""
Order Pipeline: Worker エントリーポイント

注文キューを購読し、OrderProcessor で注文を Completed まで進める。
SIGINT / SIGTERM で新規受信を止め、処理中のメッセージを待ってから終了する。

    python -m order_pipeline.worker
"""

import asyncio
import contextlib
import logging
import signal

from . import db
from .broker import create_broker
from .config import Settings
from .consumer import OrderConsumer
from .logging_config import configure_logging
from .processor import OrderProcessor, simulated_fulfillment

logger = logging.getLogger(__name__)


async def run_worker(settings: Settings, shutdown_event: asyncio.Event | None = None) -> None:
    shutdown_event = shutdown_event or asyncio.Event()

    broker = create_broker(settings)
    if not broker.supports_consume:
        await broker.close()
        raise RuntimeError("Order worker requires a message broker; set REDIS_URL.")

    engine, async_session = db.create_session_factory(settings.database_url)
    await db.init_schema(engine)

    processor = OrderProcessor(async_session, simulated_fulfillment(settings.processing_delay_seconds))
    consumer = OrderConsumer.from_settings(broker, processor, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await consumer.run(shutdown_event)
    finally:
        await engine.dispose()


def main() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    logger.info("Order worker starting (queue=%s)...", settings.orders_queue)
    try:
        asyncio.run(run_worker(settings))
    except RuntimeError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
