"""Structured Logging.

Provides structured JSON logging, operation-scoped context binding,
and performance timing for the data-export engine.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import OperationContext, generate_operation_id, get_context_dict
from src.logging_config.performance import PerformanceTimer, log_performance
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "OperationContext",
    "PerformanceTimer",
    "configure_logging",
    "generate_operation_id",
    "get_context_dict",
    "get_logger",
    "log_performance",
]
