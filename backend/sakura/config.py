# backend/sakura/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///sakura.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "VND")

    # Customers may return a delivered order within this many days
    ORDER_RETURN_WINDOW_DAYS = int(os.environ.get("ORDER_RETURN_WINDOW_DAYS", "30"))

    # Optimistic-concurrency retry policy (StaleDataError / lock contention)
    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("CONCURRENCY_RETRY_ATTEMPTS", "3"))
    CONCURRENCY_RETRY_BACKOFF = float(os.environ.get("CONCURRENCY_RETRY_BACKOFF", "0.05"))

    # Shared secrets for HMAC-SHA256 webhook signatures, keyed by gateway
    PAYMENT_WEBHOOK_SECRETS = {
        "SEPAY": os.environ.get("SEPAY_WEBHOOK_SECRET"),
        "VNPAY": os.environ.get("VNPAY_WEBHOOK_SECRET"),
        "MOMO": os.environ.get("MOMO_WEBHOOK_SECRET"),
    }
    # DEV ONLY: accept callbacks for gateways that have no secret configured
    PAYMENT_WEBHOOK_ALLOW_UNSIGNED = _env_bool("PAYMENT_WEBHOOK_ALLOW_UNSIGNED", False)

    # Per-method fees: fixed amount + percentage of the charged amount
    PAYMENT_FEES = {
        "COD": {"fixed": "0", "percent": "0"},
        "BANK_TRANSFER": {"fixed": "0", "percent": "0"},
        "SEPAY": {"fixed": "0", "percent": "0"},
        "VNPAY": {"fixed": "0", "percent": "1.1"},
        "MOMO": {"fixed": "0", "percent": "1.5"},
        "CREDIT_CARD": {"fixed": "2000", "percent": "2.2"},
        "DEBIT_CARD": {"fixed": "1100", "percent": "1.1"},
    }
