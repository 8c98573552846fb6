"""Structured Logging & Operation Tracing.

Structured JSON logging, correlation id propagation and performance
timing for the content workflow service.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import (
    RequestContext,
    generate_request_id,
    get_context_dict,
    get_correlation_id,
)
from src.logging_config.performance import log_performance
from src.logging_config.setup import (
    ConsoleFormatter,
    StructuredFormatter,
    configure_logging,
    get_logger,
)

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "RequestContext",
    "ConsoleFormatter",
    "StructuredFormatter",
    "configure_logging",
    "generate_request_id",
    "get_context_dict",
    "get_correlation_id",
    "get_logger",
    "log_performance",
]
