"""Logging setup for Farmerbot.

JSON output for log shippers, text output for terminals. Both stamp the
farm id so logs from several bots can be told apart.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from farmerbot.config import settings

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_ATTRS = set(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


def _extras(record: logging.LogRecord) -> dict:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS
    }


class FarmerBotJSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, farm_id: int | None = None):
        super().__init__()
        self.farm_id = farm_id

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "farmerbot",
            "farm_id": self.farm_id,
        }
        extra = _extras(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class FarmerBotTextFormatter(logging.Formatter):
    """Human-readable single-line format."""

    def __init__(self, farm_id: int | None = None):
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s [farm %(farm_id)s] %(name)s: %(message)s"
        )
        self.farm_id = farm_id

    def format(self, record: logging.LogRecord) -> str:
        record.farm_id = self.farm_id if self.farm_id is not None else "-"
        return super().format(record)


def setup_logging(farm_id: int | None = None) -> None:
    """Install the configured formatter on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "text":
        handler.setFormatter(FarmerBotTextFormatter(farm_id=farm_id))
    else:
        handler.setFormatter(FarmerBotJSONFormatter(farm_id=farm_id))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing.formatter, (FarmerBotJSONFormatter, FarmerBotTextFormatter)):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
