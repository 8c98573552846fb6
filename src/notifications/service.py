"""Workflow Notification Service.

Turns workflow events into addressed, rendered, channel-specific messages,
delivers them with fixed-schedule retries, and walks escalation ladders for
unresolved critical errors. Delivery is best effort: nothing here raises
into the workflow engine.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from src.notifications.channels import ChannelRegistry, ChannelResult
from src.notifications.config import (
    DEFAULT_NOTIFICATION_CONFIG,
    SEVERITY_PRIORITY,
    STATE_TRIGGERS,
    URGENT_CHANNELS,
    NotificationChannel,
    NotificationConfig,
    NotificationPriority,
    NotificationStatus,
    NotificationTrigger,
    RecipientKind,
    Severity,
)
from src.notifications.escalation import EscalationTracker
from src.notifications.models import (
    DeliveryStats,
    NotificationEscalation,
    NotificationMessage,
    NotificationPreferences,
    NotificationRecipient,
    NotificationResult,
    NotificationTemplate,
)
from src.notifications.preferences import PreferenceManager
from src.notifications.queue import NotificationQueue
from src.notifications.templates import (
    NotificationRenderError,
    TemplateRegistry,
    TemplateRenderer,
)
from src.workflow.config import WorkflowPriority, WorkflowRole, WorkflowState

logger = logging.getLogger(__name__)

ADMIN_ROLE = WorkflowRole.ADMIN.value


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


def _default_recipients() -> list[NotificationRecipient]:
    return [
        NotificationRecipient(
            recipient_id="admin-group",
            kind=RecipientKind.ROLE,
            identifier=ADMIN_ROLE,
            name="Administrators",
            preferences=NotificationPreferences(
                channels=[NotificationChannel.EMAIL, NotificationChannel.IN_APP],
                topics={
                    NotificationTrigger.WORKFLOW_ERROR: True,
                    NotificationTrigger.SYSTEM_ERROR: True,
                    NotificationTrigger.ESCALATION_TRIGGERED: True,
                },
            ),
        ),
        NotificationRecipient(
            recipient_id="reviewer-group",
            kind=RecipientKind.ROLE,
            identifier=WorkflowRole.REVIEWER.value,
            name="Reviewers",
            preferences=NotificationPreferences(
                channels=[NotificationChannel.EMAIL, NotificationChannel.SLACK],
                topics={
                    NotificationTrigger.APPROVAL_REQUIRED: True,
                    NotificationTrigger.STATE_CHANGED: True,
                },
            ),
        ),
    ]


class WorkflowNotificationService:
    """Routes workflow events to recipients across channels.

    Example:
        service = WorkflowNotificationService()
        await service.notify_state_change(instance, DRAFT, REVIEW, SUBMIT, "alice")
        await service.process_notifications()
    """

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        channels: Optional[ChannelRegistry] = None,
        templates: Optional[TemplateRegistry] = None,
        preferences: Optional[PreferenceManager] = None,
        load_defaults: bool = True,
    ):
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self.channels = channels or ChannelRegistry()
        self.templates = templates or TemplateRegistry(load_defaults=load_defaults)
        self.preferences = preferences or PreferenceManager()
        self.renderer = TemplateRenderer()
        self.queue = NotificationQueue(self.config)
        self.escalations = EscalationTracker(self.config)
        self.stats = DeliveryStats()

        # Serializes each periodic scan against itself.
        self._delivery_lock = asyncio.Lock()
        self._escalation_lock = asyncio.Lock()
        self._running = False
        self._tasks: list[asyncio.Task] = []

        if load_defaults:
            for recipient in _default_recipients():
                self.preferences.register(recipient)

    # =========================================================================
    # Registration
    # =========================================================================

    def register_recipient(self, recipient: NotificationRecipient) -> NotificationRecipient:
        return self.preferences.register(recipient)

    def remove_recipient(self, recipient_id: str) -> bool:
        return self.preferences.remove(recipient_id)

    def get_recipient(self, recipient_id: str) -> Optional[NotificationRecipient]:
        return self.preferences.get(recipient_id)

    def list_recipients(self) -> list[NotificationRecipient]:
        return self.preferences.all()

    def register_template(self, template: NotificationTemplate) -> NotificationTemplate:
        return self.templates.register(template)

    # =========================================================================
    # Workflow events
    # =========================================================================

    async def notify_state_change(
        self,
        instance,
        from_state: WorkflowState,
        to_state: WorkflowState,
        action,
        performed_by: str,
        comment: Optional[str] = None,
    ) -> list[NotificationResult]:
        """Notify subscribers that an instance moved to a new state.

        Args:
            instance: The workflow instance after the transition.
            from_state: State before the transition.
            to_state: State after the transition.
            action: Action that was performed.
            performed_by: Acting user, who is never notified of their own action.
            comment: Optional transition comment.

        Returns:
            One result per queued message.
        """
        trigger = STATE_TRIGGERS.get(to_state, NotificationTrigger.STATE_CHANGED)
        priority = self._priority_for(trigger, instance)
        now = datetime.now(timezone.utc)

        # Pending approval reminders no longer apply once the state moves on.
        self.cancel_reminders(instance.instance_id)

        context = self._instance_context(instance)
        context.update({
            "from_state": _value(from_state),
            "to_state": _value(to_state),
            "action": _value(action),
            "performed_by": performed_by,
            "comment": comment,
        })

        results: list[NotificationResult] = []
        for recipient in self.preferences.subscribers(trigger):
            if recipient.identifier == performed_by:
                continue
            for channel in recipient.preferences.channels:
                template = self.templates.find(trigger, channel)
                if template is None:
                    continue
                allowed, reason = self.preferences.is_notification_allowed(recipient, trigger, channel)
                if not allowed:
                    logger.debug(
                        "Skipping %s for %s on %s: %s",
                        trigger.value, recipient.recipient_id, channel.value, reason,
                    )
                    continue
                message = self._create_message(
                    trigger, priority, recipient, channel, template, context, instance,
                )
                if message is not None:
                    results.append(self._queue(message, now))
        return results

    async def notify_workflow_error(
        self,
        error: Exception,
        instance=None,
        severity: str = "medium",
    ) -> list[NotificationResult]:
        """Tell administrators about a workflow error.

        Critical errors also reach every ``SYSTEM_ERROR`` subscriber and
        open an escalation for the instance. Never raises.
        """
        try:
            level = Severity(severity)
            recipients = self.preferences.by_role(ADMIN_ROLE)
            if level == Severity.CRITICAL:
                seen = {r.recipient_id for r in recipients}
                for subscriber in self.preferences.subscribers(NotificationTrigger.SYSTEM_ERROR):
                    if subscriber.recipient_id not in seen:
                        recipients.append(subscriber)
                        seen.add(subscriber.recipient_id)

            trigger = NotificationTrigger.WORKFLOW_ERROR
            priority = SEVERITY_PRIORITY[level]
            now = datetime.now(timezone.utc)

            code = getattr(error, "code", None)
            error_context = getattr(error, "context", None)
            context = self._instance_context(instance) if instance is not None else self._links()
            context.update({
                "error_code": _value(code) if code is not None else type(error).__name__,
                "error_message": getattr(error, "message", str(error)),
                "severity": level.value,
                "correlation_id": (
                    getattr(error_context, "correlation_id", None)
                    or context.get("correlation_id", "")
                ),
            })

            results: list[NotificationResult] = []
            for recipient in recipients:
                for channel in recipient.preferences.channels:
                    template = self.templates.find(trigger, channel)
                    if template is None:
                        continue
                    message = self._create_message(
                        trigger, priority, recipient, channel, template, context, instance,
                    )
                    if message is not None:
                        results.append(self._queue(message, now))

            if level == Severity.CRITICAL and instance is not None:
                self.escalations.open(instance.instance_id, trigger, level, recipients, now)
            return results
        except Exception:
            logger.error("Failed to send workflow error notification", exc_info=True)
            return []

    async def notify_approval_required(
        self,
        instance,
        required_role,
        deadline: Optional[datetime] = None,
        reminders_only: bool = False,
    ) -> list[NotificationResult]:
        """Ask every holder of ``required_role`` to review an instance.

        With a deadline, reminders are scheduled at each configured offset
        before it that is still in the future.

        Args:
            instance: Instance waiting for approval.
            required_role: Role whose recipients should act.
            deadline: Optional approval deadline.
            reminders_only: Schedule only the reminders, not the primary message.

        Returns:
            Results for the primary messages and every scheduled reminder.
        """
        trigger = NotificationTrigger.APPROVAL_REQUIRED
        priority = NotificationPriority.HIGH if deadline else NotificationPriority.NORMAL
        now = datetime.now(timezone.utc)

        context = self._instance_context(instance)
        context["deadline"] = deadline.isoformat() if deadline else None

        results: list[NotificationResult] = []
        for recipient in self.preferences.by_role(_value(required_role)):
            for channel in recipient.preferences.channels:
                template = self.templates.find(trigger, channel)
                if template is None:
                    continue
                primary = self._create_message(
                    trigger, priority, recipient, channel, template, context, instance,
                )
                if primary is None:
                    continue
                if not reminders_only:
                    results.append(self._queue(primary, now))
                if deadline is None:
                    continue
                for offset in self.config.reminder_offsets_hours:
                    remind_at = deadline - timedelta(hours=offset)
                    if remind_at <= now:
                        continue
                    reminder = self._clone_as_reminder(primary, remind_at, offset)
                    results.append(self._queue(reminder, now))
        return results

    async def notify_system_alert(
        self,
        alert_type: str,
        severity: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> list[NotificationResult]:
        """Send an operational alert to ``SYSTEM_ERROR`` subscribers.

        Critical alerts also go straight out to administrators over the
        urgent channels, bypassing the queue. Never raises.
        """
        try:
            level = Severity(severity)
            metadata = dict(metadata or {})
            now = datetime.now(timezone.utc)

            context = self._links()
            context.update({
                "alert_type": alert_type,
                "severity": level.value,
                "message": message,
                "metadata": metadata,
                "correlation_id": metadata.get("correlation_id", ""),
            })

            trigger = NotificationTrigger.SYSTEM_ERROR
            priority = SEVERITY_PRIORITY[level]
            results: list[NotificationResult] = []
            for recipient in self.preferences.subscribers(trigger):
                for channel in recipient.preferences.channels:
                    template = self.templates.find(trigger, channel)
                    if template is None:
                        continue
                    msg = self._create_message(
                        trigger, priority, recipient, channel, template, context, None,
                    )
                    if msg is not None:
                        results.append(self._queue(msg, now))

            if level == Severity.CRITICAL:
                results.extend(await self._send_urgent(context))
            return results
        except Exception:
            logger.error("Failed to send system alert %s", alert_type, exc_info=True)
            return []

    # =========================================================================
    # Delivery pipeline
    # =========================================================================

    async def process_notifications(self, now: Optional[datetime] = None) -> int:
        """Send every pending or due message once.

        Returns:
            Number of messages sent successfully.
        """
        sent = 0
        async with self._delivery_lock:
            for message in self.queue.due(now):
                if self.queue.claim(message.message_id) is None:
                    continue
                try:
                    result = await self._dispatch(message)
                    if result.success:
                        self.queue.mark_success(message.message_id)
                        self.stats.record_sent(message.channel)
                        sent += 1
                    else:
                        self._record_failure(message, result.error, now)
                finally:
                    # Cancelled mid-send: put it back so the next pass picks it up
                    if self.queue.release(message.message_id):
                        logger.warning(
                            "Delivery of %s interrupted, requeued", message.message_id,
                        )
        return sent

    def _record_failure(
        self, message: NotificationMessage, error: str, now: Optional[datetime] = None
    ) -> None:
        if self.queue.mark_failed(message.message_id, error, now):
            self.stats.retried += 1
            logger.warning(
                "Notification %s failed (attempt %d/%d), retry at %s: %s",
                message.message_id, message.retry_count, message.max_retries,
                message.scheduled_at.isoformat(), error,
            )
        else:
            self.stats.failed += 1
            logger.error(
                "Notification %s to %s via %s failed after %d attempts: %s",
                message.message_id, message.recipient.identifier,
                message.channel.value, message.retry_count, error,
            )

    async def _dispatch(self, message: NotificationMessage) -> ChannelResult:
        try:
            return await asyncio.wait_for(
                self.channels.send(message),
                timeout=self.config.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ChannelResult(channel=message.channel, success=False, error="send timed out")
        except Exception as e:
            return ChannelResult(channel=message.channel, success=False, error=str(e) or type(e).__name__)

    # =========================================================================
    # Escalation pipeline
    # =========================================================================

    async def process_escalations(self, now: Optional[datetime] = None) -> int:
        """Advance every due escalation one level.

        Returns:
            Number of escalation levels executed.
        """
        now = now or datetime.now(timezone.utc)
        executed = 0
        async with self._escalation_lock:
            for escalation in self.escalations.due(now):
                if not self.escalations.advance(escalation, now):
                    logger.warning(
                        "Max escalation level reached for workflow %s",
                        escalation.workflow_instance_id,
                    )
                    continue
                logger.warning(
                    "Executing escalation level %d for workflow %s",
                    escalation.escalation_level, escalation.workflow_instance_id,
                )
                try:
                    await self._execute_escalation(escalation)
                    executed += 1
                except Exception:
                    logger.error(
                        "Escalation %s failed", escalation.escalation_id, exc_info=True,
                    )
        return executed

    async def _execute_escalation(self, escalation: NotificationEscalation) -> None:
        await self.notify_system_alert(
            "failure",
            escalation.severity.value,
            f"Escalation Level {escalation.escalation_level}: "
            f"{escalation.trigger.value} for workflow {escalation.workflow_instance_id}",
            {
                "escalation_id": escalation.escalation_id,
                "workflow_instance_id": escalation.workflow_instance_id,
                "escalation_level": escalation.escalation_level,
                "max_escalation_level": escalation.max_escalation_level,
            },
        )

    def resolve_escalation(self, workflow_instance_id: str) -> int:
        """Stop escalating for an instance. Returns escalations closed."""
        return self.escalations.resolve(workflow_instance_id)

    def get_active_escalations(self) -> list[NotificationEscalation]:
        return self.escalations.active()

    def get_escalated_instance_ids(self) -> set[str]:
        return self.escalations.escalated_instance_ids()

    # =========================================================================
    # Queue access
    # =========================================================================

    def get_pending_notifications(self) -> list[NotificationMessage]:
        return self.queue.pending()

    def get_dead_letters(self) -> list[NotificationMessage]:
        return self.queue.get_dead_letter_queue()

    def cancel(self, message_id: str) -> bool:
        if self.queue.cancel(message_id):
            self.stats.cancelled += 1
            return True
        return False

    def cancel_reminders(self, workflow_instance_id: str) -> int:
        count = self.queue.cancel_where(
            lambda m: m.metadata.get("is_reminder")
            and m.metadata.get("workflow_instance_id") == workflow_instance_id
        )
        self.stats.cancelled += count
        return count

    def get_stats(self) -> dict:
        return {
            "delivery": self.stats.to_dict(),
            "queue": self.queue.get_stats(),
            "active_escalations": len(self.escalations.active()),
        }

    # =========================================================================
    # Background loops
    # =========================================================================

    async def start(self) -> None:
        """Start the delivery and escalation loops."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_periodic(
                "delivery",
                self.config.delivery_interval_seconds,
                self.process_notifications,
            )),
            asyncio.create_task(self._run_periodic(
                "escalation",
                self.config.escalation_interval_seconds,
                self.process_escalations,
            )),
        ]
        logger.info("Notification background services started")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Notification background services stopped")

    async def _run_periodic(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
    ) -> None:
        while self._running:
            try:
                await tick()
            except Exception:
                logger.error("Notification %s loop failed", name, exc_info=True)
            await asyncio.sleep(interval)

    # =========================================================================
    # Internals
    # =========================================================================

    def _links(self) -> dict[str, Any]:
        base = self.config.base_url.rstrip("/")
        return {"dashboard_url": f"{base}/admin/workflows"}

    def _instance_context(self, instance) -> dict[str, Any]:
        base = self.config.base_url.rstrip("/")
        context = self._links()
        context.update({
            "content_title": instance.title,
            "content_type": _value(instance.content_type),
            "content_id": instance.content_id,
            "author": instance.created_by,
            "current_state": _value(instance.current_state),
            "priority": _value(instance.priority),
            "workflow_instance": instance.instance_id,
            "workflow_url": f"{base}/admin/workflows/{instance.instance_id}",
            "approval_url": (
                f"{base}/admin/content/{_value(instance.content_type)}/"
                f"{instance.content_id}/review"
            ),
            "correlation_id": instance.correlation_id or "",
            "metadata": dict(instance.metadata),
        })
        return context

    @staticmethod
    def _priority_for(trigger: NotificationTrigger, instance) -> NotificationPriority:
        if instance is not None:
            if instance.priority == WorkflowPriority.URGENT:
                return NotificationPriority.URGENT
            if instance.priority == WorkflowPriority.HIGH:
                return NotificationPriority.HIGH
        if trigger == NotificationTrigger.APPROVAL_REQUIRED:
            return NotificationPriority.HIGH
        if trigger == NotificationTrigger.WORKFLOW_ERROR:
            return NotificationPriority.URGENT
        if trigger == NotificationTrigger.ESCALATION_TRIGGERED:
            return NotificationPriority.CRITICAL
        return NotificationPriority.NORMAL

    def _create_message(
        self,
        trigger: NotificationTrigger,
        priority: NotificationPriority,
        recipient: NotificationRecipient,
        channel: NotificationChannel,
        template: NotificationTemplate,
        context: dict[str, Any],
        instance,
    ) -> Optional[NotificationMessage]:
        try:
            subject, body = self.renderer.render(template, context)
        except NotificationRenderError:
            logger.error(
                "Template %s failed to render for %s",
                template.template_id, recipient.recipient_id, exc_info=True,
            )
            return None

        metadata: dict[str, Any] = {"template_id": template.template_id}
        if instance is not None:
            metadata["workflow_instance_id"] = instance.instance_id
        return NotificationMessage(
            trigger=trigger,
            priority=priority,
            recipient=recipient,
            channel=channel,
            subject=subject,
            body=body,
            correlation_id=context.get("correlation_id") or "",
            data=dict(context),
            metadata=metadata,
            max_retries=self.config.max_retries,
        )

    @staticmethod
    def _clone_as_reminder(
        primary: NotificationMessage, remind_at: datetime, offset_hours: float
    ) -> NotificationMessage:
        return NotificationMessage(
            trigger=primary.trigger,
            priority=primary.priority,
            recipient=primary.recipient,
            channel=primary.channel,
            subject=f"Reminder: {primary.subject}",
            body=primary.body,
            correlation_id=primary.correlation_id,
            data=dict(primary.data),
            metadata={
                **primary.metadata,
                "is_reminder": True,
                "original_message_id": primary.message_id,
                "reminder_offset_hours": offset_hours,
            },
            status=NotificationStatus.SCHEDULED,
            scheduled_at=remind_at,
            max_retries=primary.max_retries,
        )

    def _queue(self, message: NotificationMessage, now: datetime) -> NotificationResult:
        if message.priority != NotificationPriority.CRITICAL:
            resume = self.preferences.deferred_until(
                message.recipient, message.scheduled_at or now,
            )
            if resume is not None:
                message.scheduled_at = resume
                message.status = NotificationStatus.SCHEDULED

        self.queue.enqueue(message)
        self.stats.queued += 1
        return NotificationResult(
            message_id=message.message_id,
            recipient=message.recipient.identifier,
            channel=message.channel,
            status="scheduled" if message.status == NotificationStatus.SCHEDULED else "queued",
        )

    async def _send_urgent(self, context: dict[str, Any]) -> list[NotificationResult]:
        """Send straight to administrators over the urgent channels."""
        trigger = NotificationTrigger.ESCALATION_TRIGGERED
        results: list[NotificationResult] = []
        for recipient in self.preferences.by_role(ADMIN_ROLE):
            for channel in URGENT_CHANNELS:
                template = self.templates.find(trigger, channel)
                if template is None:
                    continue
                message = self._create_message(
                    trigger, NotificationPriority.CRITICAL, recipient, channel,
                    template, context, None,
                )
                if message is None:
                    continue
                message.status = NotificationStatus.SENDING
                sent = await self._dispatch(message)
                if sent.success:
                    message.mark_sent()
                    self.stats.record_sent(channel)
                    status = "sent"
                else:
                    # Hand the failure to the queue so the normal retry path applies.
                    message.status = NotificationStatus.PENDING
                    self.queue.enqueue(message)
                    self._record_failure(message, sent.error)
                    status = "failed"
                results.append(NotificationResult(
                    message_id=message.message_id,
                    recipient=recipient.identifier,
                    channel=channel,
                    status=status,
                    error=sent.error or None,
                ))
        return results
