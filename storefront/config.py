"""
Storefront Service — 設定

すべての設定は環境変数から読み込む。
起動時に一度だけ Settings を組み立て、各コンポーネントへ渡す。
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    frontend_url: str = "http://localhost:8080"
    backend_url: str = "http://localhost:8000"
    currency: str = "usd"
    smtp_host: str = "localhost"
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_pass: str = ""
    mail_from: str = ""
    pending_order_ttl: timedelta | None = None
    sweep_interval_seconds: float = 0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        ttl = os.environ.get("PENDING_ORDER_TTL_MINUTES")
        smtp_user = os.environ.get("SMTP_USER", "")
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
            frontend_url=os.environ.get("FRONTEND_URL", "http://localhost:8080"),
            backend_url=os.environ.get("BACKEND_URL", "http://localhost:8000"),
            currency=os.environ.get("CURRENCY", "usd"),
            smtp_host=os.environ.get("SMTP_HOST", "localhost"),
            smtp_port=int(os.environ.get("SMTP_PORT", "465")),
            smtp_user=smtp_user,
            smtp_pass=os.environ.get("SMTP_PASS", ""),
            mail_from=os.environ.get("MAIL_FROM", smtp_user),
            pending_order_ttl=timedelta(minutes=int(ttl)) if ttl else None,
            sweep_interval_seconds=float(os.environ.get("SWEEP_INTERVAL_SECONDS", "0")),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
