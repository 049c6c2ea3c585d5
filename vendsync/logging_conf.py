"""Logging setup shared by the sync CLI and the API server."""
import logging
import sys
from typing import Optional

from vendsync.config import config
from vendsync.parse.redact import redact_string

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class RedactingFilter(logging.Filter):
    """Mask API tokens and service keys before a record is emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_string(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once."""
    root = logging.getLogger()
    root.setLevel((level or config.LOG_LEVEL).upper())

    if any(getattr(h, "_vendsync", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(RedactingFilter())
    handler._vendsync = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
