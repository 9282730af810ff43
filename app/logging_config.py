"""JSON logging configuration for the storebot API."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure JSON logging for the application."""
    if level is None:
        from app.config import settings

        level = settings.log_level

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the storebot namespace."""
    return logging.getLogger(f"storebot.{name}")


class TenantLoggerAdapter(logging.LoggerAdapter):
    """Adds tenant (and any other bound fields) to the record context."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        extra = kwargs.get("extra") or {}
        combined = {**self.extra, **extra.get("context", {}), **(context or {})}
        kwargs["extra"] = {**extra, "context": combined}
        return msg, kwargs


def tenant_logger(logger: logging.Logger, tenant_id: str, **fields: Any) -> TenantLoggerAdapter:
    """Bind tenant_id (and extra fields) to every line logged through the adapter."""
    return TenantLoggerAdapter(logger, {"tenant_id": tenant_id, **fields})
