# backend/checkout_engine/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/checkout_engine.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///checkout_engine.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Admin interface (catalog/coupon/stock configuration)
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN", "dev-admin-token-change-me")

    CURRENCY = os.environ.get("CURRENCY", "EUR")
    QUOTE_TTL_SECONDS = _env_int("QUOTE_TTL_SECONDS", 1800)
    DEFAULT_LOW_STOCK_THRESHOLD = _env_int("DEFAULT_LOW_STOCK_THRESHOLD", 5)

    # Bounded retries for the two shared counters (stock, coupon usage)
    STOCK_COMMIT_ATTEMPTS = _env_int("STOCK_COMMIT_ATTEMPTS", 5)
    COUPON_COMMIT_ATTEMPTS = _env_int("COUPON_COMMIT_ATTEMPTS", 5)
    RETRY_BACKOFF_SECONDS = float(os.environ.get("RETRY_BACKOFF_SECONDS", "0.05"))

    # "simulated" keeps payments in-process; "http" talks to PAYMENT_API_URL
    PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "simulated")
    PAYMENT_API_URL = os.environ.get("PAYMENT_API_URL", "http://127.0.0.1:8081")
    PAYMENT_API_KEY = os.environ.get("PAYMENT_API_KEY", "")
    PAYMENT_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_TIMEOUT_SECONDS", "10"))
