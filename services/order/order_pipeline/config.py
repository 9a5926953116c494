"""
Order Pipeline: 実行時設定

環境変数（および .env）から読み込む。フィールド名を大文字にしたものが
環境変数名になる（例: database_url → DATABASE_URL）。
REDIS_URL が未設定の場合はローカルのフォールバックブローカーで動作する。
"""

import socket

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """API プロセスと Worker プロセスで共有する設定"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./orders.db"
    redis_url: str | None = None

    orders_queue: str = "orders"
    order_status_topic: str = "order-status"
    consumer_group: str = "order-processor"
    consumer_name: str = Field(default_factory=lambda: f"worker-{socket.gethostname()}")

    # Outbox Relay
    outbox_poll_interval_seconds: float = 2.0
    outbox_batch_size: int = 10
    outbox_relay_when_degraded: bool = False

    # Order Processor / Consumer
    processing_delay_seconds: float = 5.0
    consumer_max_concurrency: int = 1
    receive_block_ms: int = 1000
    visibility_timeout_seconds: float = 30.0
    lock_renewal_interval_seconds: float = 10.0
    max_lock_renewal_seconds: float = 300.0
    max_delivery_count: int = 10

    log_level: str = "INFO"

    @property
    def broker_configured(self) -> bool:
        return bool(self.redis_url and self.redis_url.strip())
