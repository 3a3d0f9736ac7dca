"""
Logging setup for the CLI and the scheduler daemon.

``configure_logging`` is called once from the CLI before any engine work;
library modules only ever use ``logging.getLogger(__name__)``.

Lifecycle, processor and reconciler log lines carry the ids they concern
through ``extra=``::

    logger.info("Executed %s ...", tx_id, extra={"transaction_id": tx_id, ...})

Text output appends them as ``key=value`` pairs; JSON output
(``[logging] json_format = true``) puts them at the top level::

    {"ts": "2026-03-02T15:00:00Z", "level": "INFO", "logger": "...",
     "msg": "...", "optimization_id": "...", "portfolio_id": "..."}

Timestamps are always UTC, matching the timestamps stored in the database.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from portfolio_engine.config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Ids the engine attaches to records, in output order.
CONTEXT_FIELDS = ("optimization_id", "transaction_id", "portfolio_id", "symbol", "status")

# Per-request chatter from the HTTP clients.
QUIET_LOGGERS = ("httpx", "httpcore")


def _context(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class _TextFormatter(logging.Formatter):
    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        pairs = " ".join(f"{k}={v}" for k, v in context.items())
        # Keep a traceback, if any, on the lines after the context.
        head, sep, tail = line.partition("\n")
        return f"{head} [{pairs}]{sep}{tail}"


class _JsonFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``logger``, ``msg``,
    any engine context ids present on the record, and ``exc`` on errors."""

    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": self.formatTime(record, LOG_DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(_context(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(config: "LoggingConfig") -> None:
    """Install stdout (and optional file) handlers on the root logger.

    Args:
        config: ``[logging]`` section of ``AppConfig``.  An empty
            ``log_file`` disables the file handler.
    """
    level = getattr(logging, config.level, logging.INFO)
    formatter = _JsonFormatter() if config.json_format else _TextFormatter()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
