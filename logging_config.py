import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from config import config

_RESERVED_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    "stacklevel",
}

# httpx logs every Graph request line (including $skiptoken cursors) at INFO
_NOISY_LIBRARIES = ("httpx", "httpcore", "openai", "apscheduler.executors.default")


class JsonFormatter(logging.Formatter):
    """Format log records as JSON for structured ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        log_payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            log_payload[key] = value

        if record.exc_info:
            log_payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_payload, default=str)


def setup_logging(level: str = None) -> logging.Logger:
    """Configure the ``sp5s`` logger tree and quiet chatty client libraries."""
    level_name = (level or config.LOG_LEVEL).upper()
    logger = logging.getLogger("sp5s")
    logger.setLevel(level_name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    logger.propagate = False

    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger


logger = setup_logging()
