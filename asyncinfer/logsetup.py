"""Logging set-up driven by a numeric verbosity."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

DEFAULT = 2
VERBOSE = 3
DEBUG = 4
TRACE = 5

LOGGER_NAME = "asyncinfer"


def level_for_verbosity(verbosity: int) -> int:
    """The logging level that matches a verbosity.

    A message logged at this level for verbosity ``n`` is shown when the
    configured verbosity is at least ``n``; verbosity 0 is INFO.
    """
    return max(1, logging.INFO - verbosity)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "caller": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class _SetupHandler(logging.StreamHandler):
    """Marks the handler installed by init_logging so it can be replaced."""


def init_logging(verbosity: int = DEFAULT, development: bool = True) -> logging.Logger:
    """Configure the package logger and return it.

    Development mode writes readable tab-separated lines; otherwise each
    record is one JSON object. Calling again replaces the earlier set-up.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, _SetupHandler):
            logger.removeHandler(handler)
    handler = _SetupHandler(sys.stderr)
    if development:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s\t%(levelname)s\t%(name)s\t%(filename)s:%(lineno)d\t%(message)s"
            )
        )
    else:
        handler.setFormatter(_JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level_for_verbosity(verbosity))
    logger.propagate = False
    return logger