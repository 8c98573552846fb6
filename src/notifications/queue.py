"""Pending notification queue with fixed-schedule retries."""

from datetime import datetime, timezone, timedelta
from typing import Optional
from collections import defaultdict
import logging

from src.notifications.config import (
    NotificationConfig,
    NotificationStatus,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.models import NotificationMessage

logger = logging.getLogger(__name__)


class NotificationQueue:
    """Pending messages keyed by id.

    Messages stay in the pending map until they are sent, cancelled, or
    exhaust their retries (then they move to the dead-letter list).
    """

    def __init__(self, config: Optional[NotificationConfig] = None):
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self._pending: dict[str, NotificationMessage] = {}
        self._dead_letter: list[NotificationMessage] = []

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, message: NotificationMessage) -> bool:
        """Add a message. Returns False if its id is already queued."""
        if message.message_id in self._pending:
            return False
        if message.scheduled_at is not None and message.status == NotificationStatus.PENDING:
            message.status = NotificationStatus.SCHEDULED
        self._pending[message.message_id] = message
        return True

    def get(self, message_id: str) -> Optional[NotificationMessage]:
        return self._pending.get(message_id)

    def pending(self) -> list[NotificationMessage]:
        return list(self._pending.values())

    def due(self, now: Optional[datetime] = None) -> list[NotificationMessage]:
        """Messages ready to send. Status is left untouched until :meth:`claim`."""
        now = now or datetime.now(timezone.utc)
        return [m for m in self._pending.values() if m.is_due(now)]

    def claim(self, message_id: str) -> Optional[NotificationMessage]:
        """Mark one still-queued message ``sending`` right before its send."""
        message = self._pending.get(message_id)
        if message is None or message.status == NotificationStatus.SENDING:
            return None
        message.status = NotificationStatus.SENDING
        return message

    def release(self, message_id: str) -> bool:
        """Return an interrupted ``sending`` message to the queue."""
        message = self._pending.get(message_id)
        if message is None or message.status != NotificationStatus.SENDING:
            return False
        if message.scheduled_at is not None:
            message.status = NotificationStatus.SCHEDULED
        else:
            message.status = NotificationStatus.PENDING
        return True

    def retry_delay(self, retry_count: int) -> float:
        """Backoff before retry number ``retry_count`` (1-based), capped at the last entry."""
        schedule = self.config.retry_schedule_seconds
        index = min(max(retry_count - 1, 0), len(schedule) - 1)
        return schedule[index]

    def mark_success(self, message_id: str) -> bool:
        message = self._pending.pop(message_id, None)
        if message is None:
            return False
        message.mark_sent()
        return True

    def mark_failed(
        self, message_id: str, error: str, now: Optional[datetime] = None
    ) -> bool:
        """Record a failed attempt.

        Returns:
            True if the message was re-armed for another attempt, False if
            it exhausted its retries and moved to the dead-letter list.
        """
        message = self._pending.get(message_id)
        if message is None:
            return False

        message.retry_count += 1
        message.error_message = error
        if message.retry_count < message.max_retries:
            delay = self.retry_delay(message.retry_count)
            message.scheduled_at = (now or datetime.now(timezone.utc)) + timedelta(seconds=delay)
            message.status = NotificationStatus.SCHEDULED
            return True

        message.mark_failed(error)
        del self._pending[message_id]
        self._dead_letter.append(message)
        del self._dead_letter[:-self.config.dead_letter_limit]
        return False

    def cancel(self, message_id: str) -> bool:
        message = self._pending.pop(message_id, None)
        if message is None:
            return False
        message.status = NotificationStatus.CANCELLED
        return True

    def cancel_where(self, predicate) -> int:
        """Cancel every pending message matching ``predicate``."""
        ids = [mid for mid, m in self._pending.items() if predicate(m)]
        for mid in ids:
            self.cancel(mid)
        return len(ids)

    def get_dead_letter_queue(self) -> list[NotificationMessage]:
        return self._dead_letter.copy()

    def clear_dead_letter(self) -> int:
        count = len(self._dead_letter)
        self._dead_letter = []
        return count

    def get_stats(self) -> dict:
        """Get queue statistics."""
        by_priority = defaultdict(int)
        by_channel = defaultdict(int)
        by_status = defaultdict(int)

        for message in self._pending.values():
            by_priority[message.priority.value] += 1
            by_channel[message.channel.value] += 1
            by_status[message.status.value] += 1

        return {
            "pending_count": len(self._pending),
            "dead_letter_count": len(self._dead_letter),
            "by_priority": dict(by_priority),
            "by_channel": dict(by_channel),
            "by_status": dict(by_status),
        }
