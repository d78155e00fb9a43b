"""
Logging setup for the engine process.

One stdout handler on the root logger; JSON lines by default, plain text when
LOG_FORMAT is anything else. Fields passed via ``extra=`` land in the JSON.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from plan_engine.services.foundation.settings import get_settings

_RESERVED_ATTRS = {
    "args",
    "msg",
    "levelno",
    "levelname",
    "name",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # extra=... fields
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging() -> None:
    settings = get_settings()
    root = logging.getLogger()
    # one handler per process
    for handler in list(root.handlers):
        root.removeHandler(handler)

    level_name = str(settings.log_level).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    handler = logging.StreamHandler(sys.stdout)

    if str(settings.log_format).lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt="%(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)
    # request lines are noise next to mutation logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
