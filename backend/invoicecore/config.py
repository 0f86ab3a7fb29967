# backend/invoicecore/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/invoicecore.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///invoicecore.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Bounded retry around every invoice lifecycle transition
    INVOICE_TXN_MAX_ATTEMPTS = int(os.environ.get("INVOICE_TXN_MAX_ATTEMPTS", "3"))
    INVOICE_TXN_BACKOFF_BASE = float(os.environ.get("INVOICE_TXN_BACKOFF_BASE", "0.1"))

    # Domain event outbox
    EVENTS_DISPATCH_INLINE = _env_bool("EVENTS_DISPATCH_INLINE", True)
    EVENTS_MAX_ATTEMPTS = int(os.environ.get("EVENTS_MAX_ATTEMPTS", "5"))
    EVENTS_CLAIM_TIMEOUT_SECONDS = int(os.environ.get("EVENTS_CLAIM_TIMEOUT_SECONDS", "300"))

    # Period-over-period change (percent) below which a trend is "stable"
    PROFIT_TREND_STABLE_PCT = float(os.environ.get("PROFIT_TREND_STABLE_PCT", "1.0"))
