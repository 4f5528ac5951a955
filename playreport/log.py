"""
Structured logging for playreport.

JSON lines by default (python-json-logger); set PLAYREPORT_LOG_FORMAT=text for
human-readable output during local runs.
"""

from __future__ import annotations

import logging
import os
import sys

from pythonjsonlogger.json import JsonFormatter

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class PlayreportJsonFormatter(JsonFormatter):
    """Adds timestamp, level, logger, module and function to every record."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        if log_record.get("level"):
            log_record["level"] = log_record["level"].upper()
        else:
            log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["module"] = record.module
        log_record["function"] = record.funcName


def setup_logger(
    name: str = "playreport",
    level: str | None = None,
    format_type: str | None = None,
) -> logging.Logger:
    """
    Configure a logger writing to stderr.

    Args:
        name: Logger name
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (default: PLAYREPORT_LOG_LEVEL or INFO)
        format_type: "json" or "text" (default: PLAYREPORT_LOG_FORMAT or json)
    """
    log_level_str = level or os.getenv("PLAYREPORT_LOG_LEVEL", "INFO")
    log_level = LOG_LEVELS.get(log_level_str.upper(), logging.INFO)
    fmt_type = (format_type or os.getenv("PLAYREPORT_LOG_FORMAT", "json")).lower()

    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    logger.handlers.clear()

    # stderr: stdout belongs to the MCP stdio transport
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    if fmt_type == "json":
        formatter: logging.Formatter = PlayreportJsonFormatter(
            fmt="%(timestamp)s %(level)s %(logger)s %(module)s %(function)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Child loggers of "playreport" share its handler; configure the root once on first use.
    """
    root = logging.getLogger("playreport")
    if not root.handlers:
        setup_logger("playreport")
    return logging.getLogger(name)
