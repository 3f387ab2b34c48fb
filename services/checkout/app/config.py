"""
Checkout Service / 設定

環境変数から設定を読み込む。コンテナでは docker-compose から注入され、
ローカル開発ではデフォルト値 (SQLite + ローカル Redis) が使われる。
"""

import logging
import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./checkout.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# 在庫・割引カウンタの競合時に Checkout を再試行する回数と待ち時間(秒)
CHECKOUT_MAX_RETRIES = int(os.environ.get("CHECKOUT_MAX_RETRIES", "3"))
CHECKOUT_RETRY_BACKOFF = float(os.environ.get("CHECKOUT_RETRY_BACKOFF", "0.05"))

# キャンセル時に在庫を戻すかどうか
RESTOCK_ON_CANCEL = os.environ.get("RESTOCK_ON_CANCEL", "true").lower() in (
    "1",
    "true",
    "yes",
)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # SQL ログはノイズが多いので抑える
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
