"""
Structured JSON logging for patient-sync

Every module logs through get_logger(__name__). Module loggers propagate to
the package logger "patient_sync", which owns the single stdout handler, so
LOG_LEVEL and LOG_FORMAT are applied once for the whole pipeline.

Pipeline context (batch_id, source_system, page, cursor) travels in
`extra=` and lands as top-level JSON keys.
"""
import logging
import os
import sys
import time
from datetime import datetime, timezone

from pythonjsonlogger.json import JsonFormatter

PACKAGE_LOGGER_NAME = "patient_sync"

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class PipelineJsonFormatter(JsonFormatter):
    """
    JSON formatter for pipeline records.

    Adds a UTC ISO-8601 timestamp, the level, the emitting logger and
    function, and the thread name so records from the per-page worker pool
    ("sync-worker-N") can be told apart from the orchestrator thread.
    """

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.setdefault(
            "timestamp",
            datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
        )
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["function"] = record.funcName
        log_record["thread"] = record.threadName


def _resolve_level(level: str | None) -> int:
    return LOG_LEVELS.get((level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)


def setup_logger(
    name: str = PACKAGE_LOGGER_NAME,
    level: str | None = None,
    format_type: str | None = None,
) -> logging.Logger:
    """
    Attach a stdout handler to a logger, replacing any existing ones

    Args:
        name: Logger to configure (the package logger by default)
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL; defaults to $LOG_LEVEL
        format_type: "json" or "text"; defaults to $LOG_FORMAT, then "json"

    Returns:
        The configured logger
    """
    log_level = _resolve_level(level)
    format_type = format_type or os.getenv("LOG_FORMAT", "json")

    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if format_type == "json":
        handler.setFormatter(PipelineJsonFormatter("%(message)s"))
    else:
        # Text format for local development
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = PACKAGE_LOGGER_NAME) -> logging.Logger:
    """
    Logger for a pipeline module

    The package logger is configured on first use; module loggers below it
    carry no handlers of their own.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    if not package_logger.handlers:
        setup_logger(PACKAGE_LOGGER_NAME)

    if name == PACKAGE_LOGGER_NAME or name.startswith(f"{PACKAGE_LOGGER_NAME}."):
        return logging.getLogger(name)
    return package_logger.getChild(name)


class log_operation:
    """
    Log the start and outcome of a block with its duration

    Usage:
        with log_operation("Batch run", logger=logger, batch_id="abc", page=3):
            ...

    The exception, if any, is logged and re-raised.
    """

    def __init__(self, operation_name: str, logger: logging.Logger | None = None, **context):
        self.operation_name = operation_name
        self.logger = logger or get_logger()
        self.context = context
        self.duration_ms: float = 0.0
        self._start = 0.0

    def __enter__(self):
        self._start = time.monotonic()
        self.logger.info(
            f"{self.operation_name} started",
            extra={"operation": self.operation_name, **self.context},
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = round((time.monotonic() - self._start) * 1000, 1)
        fields = {"operation": self.operation_name, "duration_ms": self.duration_ms, **self.context}

        if exc_type is None:
            self.logger.info(f"{self.operation_name} finished", extra=fields)
        else:
            self.logger.error(
                f"{self.operation_name} raised {exc_type.__name__}: {exc_val}",
                extra={**fields, "error_type": exc_type.__name__},
                exc_info=(exc_type, exc_val, exc_tb),
            )
        return False
