"""
Logging setup

Configures the root logger once at startup. LOG_JSON switches to a minimal
JSON formatter for log shippers; otherwise a human-readable format is used.
"""
import json
import logging

from assist_core.core.config import settings


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def configure_logging(level: str = None, log_json: bool = None) -> None:
    """Install a single stream handler on the root logger"""
    level = (level or settings.LOG_LEVEL).upper()
    log_json = settings.LOG_JSON if log_json is None else log_json

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_assist_core", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(_get_formatter(log_json))
    handler._assist_core = True
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))
