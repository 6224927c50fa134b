from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

# Attributes passed through ``extra=`` that end up in the JSON payload.
CONTEXT_FIELDS = (
    "release_target_id",
    "trigger_id",
    "job_id",
    "version_id",
    "environment_id",
    "stage",
    "cause",
)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    log_level = (level or os.getenv("DEPLOYGATE_LOG_LEVEL", "INFO") or "INFO").upper()
    level_value = getattr(logging, log_level, logging.INFO)
    log_format = (fmt or os.getenv("DEPLOYGATE_LOG_FORMAT", "json") or "json").strip().lower()

    root = logging.getLogger()
    root.setLevel(level_value)
    formatter: logging.Formatter
    if log_format == "json":
        formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
        return

    for handler in root.handlers:
        handler.setFormatter(formatter)
