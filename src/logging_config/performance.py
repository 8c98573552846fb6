"""Performance Logging.

Decorator for timing workflow operations and logging slow ones.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Callable, Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG


def log_performance(
    threshold_ms: Optional[float] = None,
    logger_name: Optional[str] = None,
    include_args: bool = False,
) -> Callable:
    """Decorator that logs function execution time.

    Logs all calls at DEBUG level and slow calls (above threshold) at WARNING.
    Failures are logged at ERROR with the elapsed time and re-raised.

    Args:
        threshold_ms: Slow operation threshold in milliseconds.
                     Defaults to config.slow_threshold_ms (1000ms).
        logger_name: Custom logger name. Defaults to function's module.
        include_args: Whether to include function arguments in log.

    Example:
        @log_performance()
        async def start_workflow(self, content_type, content_id, created_by):
            ...
    """
    if threshold_ms is None:
        threshold_ms = DEFAULT_LOGGING_CONFIG.slow_threshold_ms

    def decorator(func: Callable) -> Callable:
        _logger = logging.getLogger(logger_name or func.__module__)
        func_name = func.__qualname__

        def _report(start: float, args: tuple, kwargs: dict, exc: Optional[BaseException]) -> None:
            duration_ms = (time.perf_counter() - start) * 1000
            extra = {"duration_ms": round(duration_ms, 2)}
            if include_args:
                extra["extra_data"] = _summarize_args(args, kwargs)

            if exc is not None:
                _logger.error(
                    "%s failed after %.1fms: %s",
                    func_name, duration_ms, type(exc).__name__, extra=extra,
                )
            elif duration_ms >= threshold_ms:
                _logger.warning(
                    "Slow operation: %s took %.1fms", func_name, duration_ms, extra=extra,
                )
            else:
                _logger.debug("%s completed in %.1fms", func_name, duration_ms, extra=extra)

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    _report(start, args, kwargs, exc)
                    raise
                _report(start, args, kwargs, None)
                return result
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                _report(start, args, kwargs, exc)
                raise
            _report(start, args, kwargs, None)
            return result
        return sync_wrapper

    return decorator


def _summarize_args(args: tuple, kwargs: dict, max_len: int = 100) -> str:
    """Create a short summary of function arguments for logging."""
    parts = []
    for arg in args[:3]:
        rep = repr(arg)
        if len(rep) > max_len:
            rep = rep[:max_len] + "..."
        parts.append(rep)
    if len(args) > 3:
        parts.append(f"... +{len(args) - 3} more args")

    for key, val in list(kwargs.items())[:3]:
        rep = repr(val)
        if len(rep) > max_len:
            rep = rep[:max_len] + "..."
        parts.append(f"{key}={rep}")

    return ", ".join(parts)
