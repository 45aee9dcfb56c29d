"""
Logging configuration for the billing webhook service.

Console logs are human-readable in development and test, JSON elsewhere so the
log shipper can index event ids and outcomes.
"""

import json
import logging
import sys

from upscale_billing.config.config import Config

logger = logging.getLogger(__name__)

# Noisy client libraries that log every HTTP round trip at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "stripe")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "event_id"):
            log_data["event_id"] = record.event_id
        if hasattr(record, "event_type"):
            log_data["event_type"] = record.event_type

        return json.dumps(log_data)


def configure_logging(level: int = logging.INFO) -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if Config.IS_DEVELOPMENT or Config.IS_TESTING:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    else:
        console_handler.setFormatter(StructuredFormatter())

    root_logger.addHandler(console_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging configured (environment: {Config.APP_ENV})")
