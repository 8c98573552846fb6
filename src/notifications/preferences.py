"""Recipient registry and notification preference gates."""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from src.notifications.config import (
    DIGEST_EXEMPT_TRIGGERS,
    NotificationChannel,
    NotificationFrequency,
    NotificationTrigger,
    RecipientKind,
)
from src.notifications.models import (
    NotificationPreferences,
    NotificationRecipient,
    QuietHours,
    _parse_hhmm,
)

logger = logging.getLogger(__name__)


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return timezone.utc


def quiet_hours_end(quiet_hours: Optional[QuietHours], now: datetime) -> Optional[datetime]:
    """Return when quiet hours end if ``now`` falls inside them.

    Args:
        quiet_hours: Recipient quiet-hours window, may be None.
        now: Aware UTC timestamp.

    Returns:
        First UTC instant outside the window, or None when delivery may
        happen immediately.
    """
    if quiet_hours is None or not quiet_hours.enabled:
        return None

    local = now.astimezone(_zone(quiet_hours.timezone))
    if not quiet_hours.contains(local.time()):
        return None

    end = _parse_hhmm(quiet_hours.end)
    resume = local.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
    if resume <= local:
        resume += timedelta(days=1)
    return resume.astimezone(timezone.utc)


class PreferenceManager:
    """Holds notification recipients and decides who hears about what."""

    def __init__(self):
        # recipient_id -> recipient
        self._recipients: dict[str, NotificationRecipient] = {}

    # =========================================================================
    # Registry
    # =========================================================================

    def register(self, recipient: NotificationRecipient) -> NotificationRecipient:
        """Add or replace a recipient."""
        self._recipients[recipient.recipient_id] = recipient
        return recipient

    def remove(self, recipient_id: str) -> bool:
        return self._recipients.pop(recipient_id, None) is not None

    def get(self, recipient_id: str) -> Optional[NotificationRecipient]:
        return self._recipients.get(recipient_id)

    def all(self) -> list[NotificationRecipient]:
        return list(self._recipients.values())

    def update_preferences(
        self,
        recipient_id: str,
        channels: Optional[list[NotificationChannel]] = None,
        topics: Optional[dict[NotificationTrigger, bool]] = None,
        frequency: Optional[NotificationFrequency] = None,
        quiet_hours: Optional[QuietHours] = None,
    ) -> Optional[NotificationPreferences]:
        """Update a recipient's preferences in place."""
        recipient = self._recipients.get(recipient_id)
        if recipient is None:
            return None

        prefs = recipient.preferences
        if channels is not None:
            prefs.channels = list(channels)
        if topics is not None:
            prefs.topics.update(topics)
        if frequency is not None:
            prefs.frequency = frequency
        if quiet_hours is not None:
            prefs.quiet_hours = quiet_hours
        return prefs

    # =========================================================================
    # Selection
    # =========================================================================

    def subscribers(self, trigger: NotificationTrigger) -> list[NotificationRecipient]:
        """Recipients with ``trigger`` enabled in their topics."""
        return [r for r in self._recipients.values() if r.preferences.wants(trigger)]

    def by_role(self, role: str) -> list[NotificationRecipient]:
        return [
            r for r in self._recipients.values()
            if r.kind == RecipientKind.ROLE and r.identifier == role
        ]

    # =========================================================================
    # Gates
    # =========================================================================

    def is_notification_allowed(
        self,
        recipient: NotificationRecipient,
        trigger: NotificationTrigger,
        channel: NotificationChannel,
    ) -> tuple[bool, str]:
        """Check topic, channel and frequency preferences.

        Returns (allowed, reason) tuple.
        """
        prefs = recipient.preferences
        if not prefs.wants(trigger):
            return False, "topic_disabled"
        if channel not in prefs.channels:
            return False, "channel_disabled"
        if (
            prefs.frequency == NotificationFrequency.DAILY_DIGEST
            and trigger not in DIGEST_EXEMPT_TRIGGERS
        ):
            return False, "daily_digest"
        return True, "allowed"

    def deferred_until(
        self,
        recipient: NotificationRecipient,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """When a message to this recipient may go out, if not right away."""
        return quiet_hours_end(
            recipient.preferences.quiet_hours,
            now or datetime.now(timezone.utc),
        )
