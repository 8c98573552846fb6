"""Escalation ladder bookkeeping."""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from src.notifications.config import (
    NotificationConfig,
    NotificationTrigger,
    Severity,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.models import NotificationEscalation, NotificationRecipient

logger = logging.getLogger(__name__)


class EscalationTracker:
    """Tracks open escalations, one ladder per workflow instance and trigger."""

    def __init__(self, config: Optional[NotificationConfig] = None):
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self._escalations: dict[str, NotificationEscalation] = {}

    def open(
        self,
        workflow_instance_id: str,
        trigger: NotificationTrigger,
        severity: Severity,
        recipients: list[NotificationRecipient],
        now: Optional[datetime] = None,
    ) -> NotificationEscalation:
        """Open an escalation, or return the active one for the same instance and trigger."""
        for existing in self._escalations.values():
            if (
                existing.is_active
                and existing.workflow_instance_id == workflow_instance_id
                and existing.trigger == trigger
            ):
                return existing

        now = now or datetime.now(timezone.utc)
        escalation = NotificationEscalation(
            workflow_instance_id=workflow_instance_id,
            trigger=trigger,
            severity=severity,
            next_escalation_at=now + timedelta(minutes=self.config.initial_escalation_delay_minutes),
            max_escalation_level=self.config.max_escalation_level,
            recipients=list(recipients),
        )
        self._escalations[escalation.escalation_id] = escalation
        logger.info(
            "Opened escalation %s for workflow %s",
            escalation.escalation_id, workflow_instance_id,
        )
        return escalation

    def due(self, now: Optional[datetime] = None) -> list[NotificationEscalation]:
        now = now or datetime.now(timezone.utc)
        return [
            e for e in self._escalations.values()
            if e.is_active and e.next_escalation_at <= now
        ]

    def advance(
        self, escalation: NotificationEscalation, now: Optional[datetime] = None
    ) -> bool:
        """Move an escalation one level up.

        Returns:
            True if the new level should be executed, False if the ladder
            is exhausted and the escalation was deactivated.
        """
        now = now or datetime.now(timezone.utc)
        escalation.escalation_level += 1
        if escalation.escalation_level > escalation.max_escalation_level:
            escalation.is_active = False
            escalation.resolved_at = now
            return False
        escalation.next_escalation_at = now + timedelta(minutes=self.config.escalation_repeat_minutes)
        return True

    def resolve(self, workflow_instance_id: str) -> int:
        """Deactivate every active escalation for an instance."""
        now = datetime.now(timezone.utc)
        count = 0
        for escalation in self._escalations.values():
            if escalation.is_active and escalation.workflow_instance_id == workflow_instance_id:
                escalation.is_active = False
                escalation.resolved_at = now
                count += 1
        return count

    def get(self, escalation_id: str) -> Optional[NotificationEscalation]:
        return self._escalations.get(escalation_id)

    def active(self) -> list[NotificationEscalation]:
        return [e for e in self._escalations.values() if e.is_active]

    def all(self) -> list[NotificationEscalation]:
        return list(self._escalations.values())

    def escalated_instance_ids(self) -> set[str]:
        """Instances that ever had an escalation opened."""
        return {e.workflow_instance_id for e in self._escalations.values()}
