"""
Structured logging with run and request correlation.

Features:
- JSON logs in production, pretty logs in development.
- Context-bound run_id (scheduler runs) and request_id (HTTP) for correlation.
- log_event helper for consistent structured logs with safe truncation.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
run_id_ctx_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

_STRUCTURED_FIELDS = (
    "task",
    "outcome",
    "duration_ms",
    "user_id",
    "scope",
    "error_code",
    "summary",
)


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def get_run_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the scheduler run_id bound to the current thread of work."""
    rid = run_id_ctx_var.get()
    return rid if rid is not None else default


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    if latency_ms < 10:
        return "<10ms"
    if latency_ms < 100:
        return "10-100ms"
    if latency_ms < 500:
        return "100-500ms"
    if latency_ms < 1000:
        return "500-1000ms"
    return ">=1000ms"

class ContextFilter(logging.Filter):
    """Inject request_id and run_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if getattr(record, "run_id", None) is None:
            record.run_id = get_run_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "run_id": getattr(record, "run_id", None),
        }
        for name in _STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        run = getattr(record, "run_id", None)
        rid_part = f" [rid={rid}]" if rid else ""
        run_part = f" [run={run}]" if run else ""
        ts = _format_timestamp(record)
        line = f"{ts} {record.levelname} [{record.name}]{rid_part}{run_part} {record.getMessage()}"
        fields = " ".join(
            f"{name}={getattr(record, name)}" for name in _STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        )
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger("gameloop")
    logger.setLevel(logging.INFO)

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Reduce noise from uvicorn and apscheduler loggers but keep error output
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    task: Optional[str] = None,
    run_id: Optional[str] = None,
    outcome: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
    logger_name: str = "gameloop.scheduler",
):
    """Structured logging helper with safe truncation and run correlation."""

    root = logging.getLogger("gameloop")
    if not root.handlers:
        # Ensure logging configured in edge cases (tests, one-off scripts)
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {"run_id": run_id or get_run_id()}
    if task:
        payload["task"] = task
    if outcome:
        payload["outcome"] = outcome
    if error_code:
        payload["error_code"] = error_code
    if extra:
        for k, v in extra.items():
            payload[k] = v if isinstance(v, (int, float, bool)) else _safe_truncate(v)

    logger = logging.getLogger(logger_name)
    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
