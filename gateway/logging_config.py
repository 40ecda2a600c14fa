"""JSON logging configuration for the session gateway."""

import json
import logging
import sys
from datetime import datetime, timezone

SERVICE_NAME = "session-gateway"


class JSONFormatter(logging.Formatter):
    """One JSON object per line. A user_id in the context is lifted to the top level."""

    def __init__(self, service: str = SERVICE_NAME):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        user_id = context.pop("user_id", None)
        if user_id:
            log_data["user_id"] = user_id
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", service: str = SERVICE_NAME) -> None:
    """Send all records to stdout as JSON and quiet per-request client logs."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service))
    root_logger.addHandler(handler)

    # httpx logs every transport and webhook request at INFO
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"gateway.{name}")
