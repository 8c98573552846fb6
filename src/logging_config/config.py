"""Logging Configuration.

Settings for structured logging, log levels, and output formats.
"""

from dataclasses import dataclass
from enum import Enum


class LogLevel(str, Enum):
    """Log level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output format."""
    JSON = "json"
    CONSOLE = "console"


# Record attributes copied into structured output when a call passes them via extra=.
WORKFLOW_LOG_FIELDS = (
    "workflow_instance_id",
    "from_state",
    "to_state",
    "action",
    "error_code",
    "duration_ms",
    "extra_data",
)


@dataclass
class LoggingConfig:
    """Structured logging configuration."""

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON
    include_caller: bool = True
    slow_threshold_ms: float = 1000.0
    service_name: str = "content-workflow"
    env_prefix: str = "CONTENT_WORKFLOW_"


DEFAULT_LOGGING_CONFIG = LoggingConfig()
