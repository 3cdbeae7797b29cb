import logging
import sys
import json
from datetime import datetime, timezone
from typing import Optional

from .config import settings


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add extra fields if present
        if hasattr(record, 'run_id'):
            log_entry['run_id'] = record.run_id

        if hasattr(record, 'node_id'):
            log_entry['node_id'] = record.node_id

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure application logging."""

    if (log_format or settings.LOG_FORMAT) == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(RunContextFilter())

    # Root logger configuration
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper()),
        handlers=[console_handler],
        force=True
    )

    # Suppress noisy loggers
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class RunContextFilter(logging.Filter):
    """Add flow run context to log records."""

    def __init__(self, run_id: Optional[str] = None):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'run_id'):
            record.run_id = self.run_id or "-"
        return True
