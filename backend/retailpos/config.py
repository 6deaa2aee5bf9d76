# backend/retailpos/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/retailpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///retailpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Stock transactions: bounded wait-for-lock and execution time.
    # SQLite has no per-statement timeout, only the driver busy timeout.
    STOCK_TX_LOCK_TIMEOUT_MS = _int_env("STOCK_TX_LOCK_TIMEOUT_MS", 10_000)
    STOCK_TX_STATEMENT_TIMEOUT_MS = _int_env("STOCK_TX_STATEMENT_TIMEOUT_MS", 15_000)
    STOCK_TX_RETRY_ATTEMPTS = _int_env("STOCK_TX_RETRY_ATTEMPTS", 3)

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
    }
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS["connect_args"] = {
            "timeout": STOCK_TX_LOCK_TIMEOUT_MS / 1000,
        }

    DEMO_SEED_ENABLED = os.environ.get("DEMO_SEED_ENABLED", "false").lower() == "true"
