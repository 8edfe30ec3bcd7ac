"""Logging Setup.

One-call configuration for the engine's logs. JSON lines for
deployments that ship logs to an aggregator, a colored single-line
console layout for local runs. Both layouts carry the bound operation
context (operation, operation_id, workflow_uid, task_uid, ...) and the
workflow fields passed through ``extra=``.
"""

import json
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG, LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import get_context_dict

# Record attributes passed through ``extra=`` that are copied into the output
EXTRA_FIELDS = ("duration_ms", "task_uid", "workflow_uid", "status", "extra_data")

# Library loggers held at WARNING; SQL echo goes through the engine's echo flag
QUIET_LOGGERS = ("sqlalchemy.engine", "alembic", "urllib3")

ENV_LEVEL = "DATAEXPORT_LOG_LEVEL"
ENV_FORMAT = "DATAEXPORT_LOG_FORMAT"

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Bound operation context overlaid with the record's own extra fields."""
    fields = get_context_dict()
    for key in EXTRA_FIELDS:
        if hasattr(record, key):
            fields[key] = getattr(record, key)
    return fields


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Fixed keys are timestamp, level, logger, message and service; caller
    location is optional. Context and extra fields sit at the top level so
    aggregators can filter on ``workflow_uid`` or ``task_uid`` directly.
    """

    def __init__(self, service_name: str = "dataexport", include_caller: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        if self.include_caller:
            entry.update(module=record.module, function=record.funcName, line=record.lineno)
        entry.update(_record_fields(record))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line layout: ``time LEVEL logger: message | key=value ...``."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _level(self, levelname: str) -> str:
        if not self.use_color:
            return f"{levelname:8s}"
        return f"{_LEVEL_COLORS.get(levelname, _RESET)}{levelname:8s}{_RESET}"

    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"{_record_time(record).strftime('%H:%M:%S.%f')[:-3]} {self._level(record.levelname)} "
            f"{record.name}: {record.getMessage()}"
        )
        fields = _record_fields(record)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _apply_env_overrides(config: LoggingConfig) -> LoggingConfig:
    """Unknown values in the env vars are ignored."""
    level = os.environ.get(ENV_LEVEL, "").upper()
    if level in LogLevel.__members__:
        config = replace(config, level=LogLevel(level))

    fmt = os.environ.get(ENV_FORMAT, "").lower()
    if fmt in {f.value for f in LogFormat}:
        config = replace(config, format=LogFormat(fmt))
    return config


def _build_formatter(config: LoggingConfig, stream) -> logging.Formatter:
    if config.format == LogFormat.JSON:
        return StructuredFormatter(
            service_name=config.service_name,
            include_caller=config.include_caller,
        )
    return ConsoleFormatter(use_color=hasattr(stream, "isatty") and stream.isatty())


def configure_logging(config: Optional[LoggingConfig] = None) -> LoggingConfig:
    """Install one stdout handler on the root logger.

    Call once at process startup. DATAEXPORT_LOG_LEVEL and
    DATAEXPORT_LOG_FORMAT override the given config.

    Returns:
        The effective configuration after env overrides.
    """
    config = _apply_env_overrides(config or DEFAULT_LOGGING_CONFIG)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_build_formatter(config, sys.stdout))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(config.level.value)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return config


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance, typically with ``__name__``."""
    return logging.getLogger(name)
