"""Centralized settings for the content workflow service.

Uses pydantic-settings to load from environment variables (prefixed
CONTENT_WORKFLOW_) with defaults matching the engine and notification
dataclass configs.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from src.logging_config import LogFormat, LoggingConfig, LogLevel
from src.notifications.config import NotificationConfig
from src.workflow.config import EngineConfig, SLAPolicy


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    # --- Engine ---
    max_concurrent_workflows: int = Field(default=100, ge=1)
    transition_timeout_seconds: float = Field(default=30.0, gt=0)
    broadcast_timeout_seconds: float = Field(default=5.0, gt=0)
    overdue_threshold_days: float = Field(default=3.0, ge=0)
    bottleneck_threshold_days: float = Field(default=7.0, ge=0)
    stuck_threshold_hours: float = Field(default=24.0, gt=0)
    deadlock_check_interval_seconds: float = Field(default=30.0, gt=0)
    health_check_interval_seconds: float = Field(default=60.0, gt=0)
    throughput_window_days: int = Field(default=30, ge=1)
    max_recovery_retries: int = Field(default=1, ge=0)
    sla_default_days: Optional[float] = None  # on-time rate is reported only when set

    # --- Notifications ---
    notification_max_retries: int = Field(default=3, ge=1)
    notification_send_timeout_seconds: float = Field(default=30.0, gt=0)
    delivery_interval_seconds: float = Field(default=5.0, gt=0)
    escalation_interval_seconds: float = Field(default=60.0, gt=0)
    initial_escalation_delay_minutes: float = Field(default=15.0, ge=0)
    escalation_repeat_minutes: float = Field(default=30.0, gt=0)
    max_escalation_level: int = Field(default=3, ge=1)
    base_url: str = "http://localhost:3000"

    # --- Logging ---
    log_level: LogLevel = LogLevel.INFO
    log_format: LogFormat = LogFormat.JSON

    model_config = {
        "env_prefix": "CONTENT_WORKFLOW_",
        "env_file": ".env",
        "extra": "ignore",
    }

    def engine_config(self) -> EngineConfig:
        sla = SLAPolicy(default_days=self.sla_default_days) if self.sla_default_days else None
        return EngineConfig(
            max_concurrent_workflows=self.max_concurrent_workflows,
            transition_timeout_seconds=self.transition_timeout_seconds,
            broadcast_timeout_seconds=self.broadcast_timeout_seconds,
            overdue_threshold_days=self.overdue_threshold_days,
            bottleneck_threshold_days=self.bottleneck_threshold_days,
            stuck_threshold_hours=self.stuck_threshold_hours,
            deadlock_check_interval_seconds=self.deadlock_check_interval_seconds,
            health_check_interval_seconds=self.health_check_interval_seconds,
            throughput_window_days=self.throughput_window_days,
            max_recovery_retries=self.max_recovery_retries,
            sla_policy=sla,
        )

    def notification_config(self) -> NotificationConfig:
        return NotificationConfig(
            max_retries=self.notification_max_retries,
            send_timeout_seconds=self.notification_send_timeout_seconds,
            delivery_interval_seconds=self.delivery_interval_seconds,
            escalation_interval_seconds=self.escalation_interval_seconds,
            initial_escalation_delay_minutes=self.initial_escalation_delay_minutes,
            escalation_repeat_minutes=self.escalation_repeat_minutes,
            max_escalation_level=self.max_escalation_level,
            base_url=self.base_url,
        )

    def logging_config(self) -> LoggingConfig:
        return LoggingConfig(level=self.log_level, format=self.log_format)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
