# backend/salesbackend/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in the Flask instance folder unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///sales.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Business policy
    RETURN_POLICY_DAYS = int(os.environ.get("RETURN_POLICY_DAYS", "30"))
    LOYALTY_POINTS_DIVISOR = int(os.environ.get("LOYALTY_POINTS_DIVISOR", "10"))
    DEFAULT_PO_TAX_RATE = float(os.environ.get("DEFAULT_PO_TAX_RATE", "15.0"))
    DEFAULT_MIN_STOCK_LEVEL = int(os.environ.get("DEFAULT_MIN_STOCK_LEVEL", "5"))
    DEFAULT_REORDER_POINT = int(os.environ.get("DEFAULT_REORDER_POINT", "10"))
    AUTO_APPLY_PROMOTIONS = _env_bool("AUTO_APPLY_PROMOTIONS", True)

    # Retries for lock/optimistic-version conflicts only
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    LOG_LEVEL = "WARNING"
