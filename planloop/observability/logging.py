from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from planloop.trace import get_current_trace_id

RUNTIME_LOGGER_NAME = "planloop.runtime"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname.lower(),
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in (
            "trace_id",
            "phase",
            "attempt",
            "step_index",
            "tool_name",
            "duration_ms",
            "outcome",
            "reason",
        ):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if "trace_id" not in payload:
            trace_id = get_current_trace_id()
            if trace_id:
                payload["trace_id"] = trace_id

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def get_runtime_logger(level: str | int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(RUNTIME_LOGGER_NAME)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def configure_logging(level: str | int = logging.INFO) -> logging.Logger:
    """Route the whole ``planloop`` logger tree through the JSON handler."""
    runtime = get_runtime_logger(level)
    package_logger = logging.getLogger("planloop")
    if not package_logger.handlers:
        for handler in runtime.handlers:
            package_logger.addHandler(handler)
    package_logger.setLevel(level)
    return runtime
