"""
Logging sink for the honeypot: console output plus an optional rotating
log file, in plain text or one JSON object per line.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

ROOT_LOGGER_NAME = "honeypy"

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def record_fields(record: logging.LogRecord) -> dict:
    """Return the structured fields attached to a record via `extra`."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class FieldsFormatter(logging.Formatter):
    """Plain formatter that appends structured fields as key=value pairs."""

    def format(self, record):
        line = super().format(record)
        fields = record_fields(record)
        if fields:
            line += " " + " ".join(
                f"{key}={value}" for key, value in sorted(fields.items())
            )
        return line


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
        }
        for key, value in record_fields(record).items():
            log_record.setdefault(key, value)
        if record.exc_info:
            log_record["error"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def setup_logger(json_logging: bool = False, log_file: str = None,
                 level: int = logging.INFO) -> logging.Logger:
    """Configure the process-wide honeypot logger and return it.

    Handlers installed by a previous call are replaced, so the sink is
    only ever configured once.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if json_logging:
        formatter = JSONFormatter()
    else:
        formatter = FieldsFormatter(
            "%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
