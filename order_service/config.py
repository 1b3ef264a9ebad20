"""
Order Service — 設定

環境変数から読み込む。未設定の場合はローカル開発用の既定値を使う。
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str
    app_env: str
    log_level: str
    order_events_channel: str

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def load_settings() -> Settings:
    return Settings(
        database_url=os.environ.get(
            "DATABASE_URL", "postgresql+asyncpg://localhost/orders"
        ),
        redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
        app_env=os.environ.get("APP_ENV", "development"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        order_events_channel=os.environ.get("ORDER_EVENTS_CHANNEL", "order_events"),
    )
