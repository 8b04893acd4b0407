"""
Structured logging for InvoiceFlow.

Everything logs under the `invoiceflow` package logger. Records carrying an
`extra_fields` dict are flattened into the JSON output when JSON logs are on.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from invoiceflow.core.config import get_settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("invoiceflow")


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.module:
            log_data["module"] = record.module
            log_data["line"] = record.lineno
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(log_data, default=str)


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> logging.Logger:
    """(Re)install the package handler. Safe to call more than once."""
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    use_json = settings.json_logs if json_logs is None else json_logs
    numeric_level = getattr(logging, level_name, logging.INFO)

    for handler in [h for h in logger.handlers if getattr(h, "_invoiceflow", False)]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler._invoiceflow = True
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if use_json else logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(numeric_level)
    # The package handler already writes every record; keep them off the root logger.
    logger.propagate = False
    return logger


def _emit(level: int, message: str, extra_fields: Dict[str, Any]) -> None:
    logger.log(level, message, extra={"extra_fields": extra_fields})


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    client_id: Optional[str] = None,
):
    """Log HTTP request."""
    extra_fields = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }
    if client_id:
        extra_fields["client_id"] = client_id
    level = logging.WARNING if status_code >= 500 else logging.INFO
    _emit(level, f"{method} {path} {status_code} ({duration_ms:.1f}ms)", extra_fields)


def log_transition(
    invoice_id: str,
    action: str,
    previous_status: Optional[str],
    new_status: str,
    actor_id: str,
    actor_role: str,
):
    """Log one committed workflow transition."""
    _emit(
        logging.INFO,
        f"Invoice {invoice_id}: {action} {previous_status} -> {new_status} by {actor_role}:{actor_id}",
        {
            "type": "workflow_transition",
            "invoice_id": invoice_id,
            "action": action,
            "previous_status": previous_status,
            "new_status": new_status,
            "actor_id": actor_id,
            "actor_role": actor_role,
        },
    )


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[Exception] = None
):
    """Log an error with its context; client errors (4xx codes) log as warnings."""
    extra_fields = {"type": "error", "error_type": error_type, **(context or {})}
    if exception is not None:
        logger.error(message, exc_info=exception, extra={"extra_fields": extra_fields})
        return
    level = logging.WARNING if extra_fields.get("status_code", 500) < 500 else logging.ERROR
    _emit(level, message, extra_fields)


configure_logging()
