"""
InvoiceFlow runtime configuration.

Environment is read once per process into a frozen Settings object.
"""
from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str = "invoiceflow.db"
    database_url: Optional[str] = None
    allow_sqlite_fallback: bool = True
    secret_key: str = ""
    rate_tolerance: float = 0.01
    total_tolerance: float = 1.0
    conflict_retries: int = 1
    notify_webhook_url: Optional[str] = None
    default_currency: str = "INR"
    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("INVOICEFLOW_DB_PATH", "invoiceflow.db"),
            database_url=os.getenv("DATABASE_URL") or None,
            allow_sqlite_fallback=_env_bool("INVOICEFLOW_DB_FALLBACK_SQLITE", True),
            # Random per-process secret when unset: tokens then only verify within one process.
            secret_key=os.getenv("INVOICEFLOW_SECRET_KEY") or secrets.token_urlsafe(32),
            rate_tolerance=_env_float("INVOICEFLOW_RATE_TOLERANCE", 0.01),
            total_tolerance=_env_float("INVOICEFLOW_TOTAL_TOLERANCE", 1.0),
            conflict_retries=max(0, _env_int("INVOICEFLOW_CONFLICT_RETRIES", 1)),
            notify_webhook_url=os.getenv("INVOICEFLOW_NOTIFY_WEBHOOK_URL") or None,
            default_currency=os.getenv("INVOICEFLOW_DEFAULT_CURRENCY", "INR"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            json_logs=_env_bool("USE_JSON_LOGS", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
