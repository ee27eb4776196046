"""
Logging for the Ride Truth Engine.

Every record carries the service name and environment. Engine events attach
their ride context (user, provider, city, time block, route type, flags,
trust weight) through `truth_context()`, which lands in `extra_fields`:

    logger.info("Observation stored", extra=truth_context(user_id=uid, city="Dubai"))

JSON output puts the context keys at the top level so log pipelines can
filter by provider or city; text output appends them as key=value pairs.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict
from uuid import UUID

from core.config import settings

SERVICE_NAME = "ride-truth-engine"

# Order used when rendering context in text mode
CONTEXT_FIELDS = (
    "observation_id",
    "user_id",
    "provider",
    "city",
    "time_block",
    "route_type",
    "score",
    "trust_weight",
    "fraud_flags",
    "sample_count",
)


def _plain(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set)):
        return [_plain(v) for v in value]
    if isinstance(value, float):
        return round(value, 4)
    return value


def truth_context(**fields: Any) -> Dict[str, Dict[str, Any]]:
    """Build the `extra=` mapping for a log call; None values are dropped."""
    return {"extra_fields": {k: _plain(v) for k, v in fields.items() if v is not None}}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "environment": settings.ENVIRONMENT,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = getattr(record, "extra_fields", None)
        if extra:
            log_data.update(extra)

        return json.dumps(log_data, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text for local runs, with the ride context appended."""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra = getattr(record, "extra_fields", None)
        if not extra:
            return line
        known = [k for k in CONTEXT_FIELDS if k in extra]
        rest = sorted(k for k in extra if k not in CONTEXT_FIELDS)
        pairs = " ".join(f"{k}={extra[k]}" for k in known + rest)
        return f"{line} [{pairs}]"


def setup_logging():
    """
    Configure the root logger once at startup.

    JSON when LOG_FORMAT=json or in production, context-aware text otherwise.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = ContextTextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # SQL echo and the OpenAI client's HTTP calls are noise at INFO
    for noisy in ("sqlalchemy.engine", "urllib3", "httpx", "openai", "alembic.runtime.migration"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger
