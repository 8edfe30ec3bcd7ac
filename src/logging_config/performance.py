"""Performance Logging.

Decorator and context manager for timing blocking calls (auditor
round-trips, export queries, artifact writes) and flagging slow ones.
"""

import functools
import logging
import time
from typing import Any, Callable, Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG

logger = logging.getLogger(__name__)


def _report(
    log: logging.Logger,
    name: str,
    duration_ms: float,
    threshold_ms: float,
    error: Optional[BaseException] = None,
) -> None:
    extra = {"duration_ms": round(duration_ms, 2)}
    if error is not None:
        log.error(f"{name} failed after {duration_ms:.1f}ms: {type(error).__name__}", extra=extra)
    elif duration_ms >= threshold_ms:
        log.warning(f"Slow operation: {name} took {duration_ms:.1f}ms", extra=extra)
    else:
        log.debug(f"{name} completed in {duration_ms:.1f}ms", extra=extra)


def log_performance(
    threshold_ms: Optional[float] = None,
    logger_name: Optional[str] = None,
) -> Callable:
    """Decorator that logs function execution time.

    Logs all calls at DEBUG level, slow calls (above threshold) at
    WARNING and failures at ERROR before re-raising.

    Example:
        @log_performance(threshold_ms=500)
        def export_all(task_uids):
            ...
    """
    if threshold_ms is None:
        threshold_ms = DEFAULT_LOGGING_CONFIG.slow_threshold_ms

    def decorator(func: Callable) -> Callable:
        _logger = logging.getLogger(logger_name or func.__module__)
        func_name = func.__qualname__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                _report(_logger, func_name, (time.perf_counter() - start) * 1000, threshold_ms, exc)
                raise
            _report(_logger, func_name, (time.perf_counter() - start) * 1000, threshold_ms)
            return result

        return wrapper

    return decorator


class PerformanceTimer:
    """Context manager for timing code blocks.

    Example:
        with PerformanceTimer("artifact_put") as timer:
            store.put(task_uid, data)
        print(f"Write took {timer.duration_ms:.1f}ms")
    """

    def __init__(self, operation_name: str, threshold_ms: Optional[float] = None):
        self.operation_name = operation_name
        self.threshold_ms = threshold_ms or DEFAULT_LOGGING_CONFIG.slow_threshold_ms
        self.start_time: float = 0
        self.duration_ms: float = 0

    def __enter__(self) -> "PerformanceTimer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        _report(logger, self.operation_name, self.duration_ms, self.threshold_ms, exc_val)
