import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    database_url: str
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    jwt_secret: Optional[str]
    currency: str
    order_ttl_seconds: int
    checkout_session_ttl_seconds: int
    min_charge_amount: int
    success_url: str
    cancel_url: str
    job_attempts: int
    job_backoff_seconds: float
    worker_poll_seconds: float
    expired_order_retention_days: int
    log_level: str
    host: str
    port: int


def validate_currency(value: Optional[str]) -> str:
    v = (value or "usd").strip().lower()
    if len(v) != 3 or not v.isalpha():
        raise ValueError("Invalid currency code: expected ISO4217 length 3")
    return v


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./marketplace.db"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        jwt_secret=os.getenv("JWT_SECRET"),
        currency=validate_currency(os.getenv("CURRENCY")),
        order_ttl_seconds=int(os.getenv("ORDER_TTL_SECONDS", "300")),
        checkout_session_ttl_seconds=int(os.getenv("CHECKOUT_SESSION_TTL_SECONDS", "1800")),
        min_charge_amount=int(os.getenv("MIN_CHARGE_AMOUNT", "50")),
        success_url=os.getenv(
            "SUCCESS_URL", "http://localhost:3000/purchase-success?session_id={CHECKOUT_SESSION_ID}"
        ),
        cancel_url=os.getenv("CANCEL_URL", "http://localhost:3000/purchase-cancel"),
        job_attempts=int(os.getenv("JOB_ATTEMPTS", "3")),
        job_backoff_seconds=float(os.getenv("JOB_BACKOFF_SECONDS", "1.0")),
        worker_poll_seconds=float(os.getenv("WORKER_POLL_SECONDS", "1.0")),
        expired_order_retention_days=int(os.getenv("EXPIRED_ORDER_RETENTION_DAYS", "7")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


settings = load_settings()
