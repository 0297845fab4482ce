from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str

    # cache: 'redis' | 'memory'
    cache_backend: str = "memory"
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64
    cache_ttl_seconds: int = 300
    # bounds how long a fill that raced an invalidation can be served
    inventory_cache_ttl_seconds: int = 5

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_api_url: str = "https://api-m.sandbox.paypal.com"
    paypal_webhook_id: Optional[str] = None

    # signs scannable codes
    code_secret: str = "dev-code-secret-change-me"

    # mail: 'smtp' | 'log'
    mail_backend: str = "log"
    mail_from: str = "tickets@localhost"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.environ.get("DATABASE_URL", None)
        if database_url is None:
            raise RuntimeError("NEED DATABASE_URL!")
        return cls(
            database_url=database_url,
            cache_backend=os.environ.get("CACHE_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(os.getenv("REDIS_MAX_CONN", "64")),
            cache_ttl_seconds=int(os.getenv("CACHE_TTL_SECONDS", "300")),
            inventory_cache_ttl_seconds=int(
                os.getenv("INVENTORY_CACHE_TTL_SECONDS", "5")
            ),
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            paypal_client_id=os.environ.get("PAYPAL_CLIENT_ID"),
            paypal_client_secret=os.environ.get("PAYPAL_CLIENT_SECRET"),
            paypal_api_url=os.environ.get(
                "PAYPAL_API_URL", "https://api-m.sandbox.paypal.com"
            ),
            paypal_webhook_id=os.environ.get("PAYPAL_WEBHOOK_ID"),
            code_secret=os.environ.get(
                "CODE_SECRET", "dev-code-secret-change-me"
            ),
            mail_backend=os.environ.get("MAIL_BACKEND", "log").lower(),
            mail_from=os.environ.get("MAIL_FROM", "tickets@localhost"),
            smtp_host=os.environ.get("SMTP_HOST", "localhost"),
            smtp_port=int(os.environ.get("SMTP_PORT", "587")),
            smtp_user=os.environ.get("SMTP_USER"),
            smtp_password=os.environ.get("SMTP_PASSWORD"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_format=os.environ.get("LOG_FORMAT", "json").lower(),
        )
