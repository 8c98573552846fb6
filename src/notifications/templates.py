"""Notification templates and rendering.

Templates are Jinja2 strings rendered in a sandbox. Values are escaped for
the target channel: HTML for email bodies, Slack control characters for
Slack. Missing context keys render as empty strings.
"""

import logging
from typing import Any, Optional

from jinja2 import ChainableUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from src.notifications.config import (
    NotificationChannel,
    NotificationPriority,
    NotificationTrigger,
)
from src.notifications.models import NotificationTemplate

logger = logging.getLogger(__name__)


class NotificationRenderError(Exception):
    """Raised when a notification template cannot be rendered."""


def _blank_none(value: Any) -> Any:
    return "" if value is None else value


def _slack_escape(value: Any) -> str:
    text = str(_blank_none(value))
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _environment(**kwargs) -> SandboxedEnvironment:
    return SandboxedEnvironment(
        undefined=ChainableUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        **kwargs,
    )


class TemplateRenderer:
    """Renders subject/body pairs with per-channel escaping."""

    def __init__(self):
        self._plain = _environment(autoescape=False, finalize=_blank_none)
        self._html = _environment(autoescape=True, finalize=_blank_none)
        self._slack = _environment(autoescape=False, finalize=_slack_escape)

    def _body_env(self, channel: NotificationChannel) -> SandboxedEnvironment:
        if channel == NotificationChannel.EMAIL:
            return self._html
        if channel == NotificationChannel.SLACK:
            return self._slack
        return self._plain

    def render_string(
        self,
        source: str,
        context: dict[str, Any],
        channel: Optional[NotificationChannel] = None,
    ) -> str:
        """Render one template string.

        Raises:
            NotificationRenderError: If the template is invalid or touches
                something the sandbox forbids.
        """
        env = self._body_env(channel) if channel is not None else self._plain
        try:
            return env.from_string(source).render(**context).strip()
        except TemplateError as e:
            raise NotificationRenderError(f"Error rendering template: {e}") from e

    def render(
        self, template: NotificationTemplate, context: dict[str, Any]
    ) -> tuple[str, str]:
        """Render ``(subject, body)`` for a template.

        Subjects are plain text on every channel; bodies are escaped for
        the template's channel.
        """
        subject = self.render_string(template.subject, context)
        body = self.render_string(template.body, context, template.channel)
        return subject, body


def _default_templates() -> list[NotificationTemplate]:
    return [
        NotificationTemplate(
            template_id="state-change-email",
            trigger=NotificationTrigger.STATE_CHANGED,
            channel=NotificationChannel.EMAIL,
            subject="Content Status Update: {{ content_title }}",
            body=(
                "<p>The content \"{{ content_title }}\" has been moved from "
                "<strong>{{ from_state }}</strong> to <strong>{{ to_state }}</strong> "
                "by {{ performed_by }}.</p>\n"
                "{% if comment %}<p>Comment: {{ comment }}</p>{% endif %}\n"
                "<p><a href=\"{{ workflow_url }}\">View Workflow</a></p>"
            ),
            variables=["content_title", "from_state", "to_state", "performed_by", "comment", "workflow_url"],
        ),
        NotificationTemplate(
            template_id="approval-required-email",
            trigger=NotificationTrigger.APPROVAL_REQUIRED,
            channel=NotificationChannel.EMAIL,
            subject="Approval Required: {{ content_title }}",
            body=(
                "<p>The {{ content_type }} \"{{ content_title }}\" by {{ author }} "
                "is waiting for your review.</p>\n"
                "{% if deadline %}<p>Deadline: {{ deadline }}</p>{% endif %}\n"
                "<p><a href=\"{{ approval_url }}\">Review Content</a></p>"
            ),
            priority=NotificationPriority.HIGH,
            variables=["content_title", "content_type", "author", "deadline", "approval_url"],
        ),
        NotificationTemplate(
            template_id="approval-required-slack",
            trigger=NotificationTrigger.APPROVAL_REQUIRED,
            channel=NotificationChannel.SLACK,
            subject="Approval Required",
            body=(
                "*Approval Required*: {{ content_title }} ({{ content_type }}) by {{ author }}\n"
                "{% if deadline %}Deadline: {{ deadline }}\n{% endif %}"
                "Review: {{ approval_url }}"
            ),
            priority=NotificationPriority.HIGH,
            variables=["content_title", "content_type", "author", "deadline", "approval_url"],
        ),
        NotificationTemplate(
            template_id="workflow-error-email",
            trigger=NotificationTrigger.WORKFLOW_ERROR,
            channel=NotificationChannel.EMAIL,
            subject="Workflow Error [{{ severity }}]: {{ error_code }}",
            body=(
                "<p>A workflow error occurred.</p>\n"
                "<p>Code: {{ error_code }}<br>Severity: {{ severity }}<br>"
                "Message: {{ error_message }}</p>\n"
                "{% if workflow_instance %}<p>Workflow: {{ workflow_instance }}</p>{% endif %}\n"
                "<p>Correlation ID: {{ correlation_id }}</p>\n"
                "<p><a href=\"{{ dashboard_url }}\">Open Dashboard</a></p>"
            ),
            priority=NotificationPriority.URGENT,
            variables=["error_code", "severity", "error_message", "workflow_instance", "correlation_id", "dashboard_url"],
        ),
        NotificationTemplate(
            template_id="system-error-email",
            trigger=NotificationTrigger.SYSTEM_ERROR,
            channel=NotificationChannel.EMAIL,
            subject="System Alert [{{ severity }}]: {{ alert_type }}",
            body=(
                "<p>{{ message }}</p>\n"
                "{% for key, value in metadata.items() %}<p>{{ key }}: {{ value }}</p>\n{% endfor %}"
                "<p><a href=\"{{ dashboard_url }}\">Open Dashboard</a></p>"
            ),
            priority=NotificationPriority.URGENT,
            variables=["severity", "alert_type", "message", "metadata", "dashboard_url"],
        ),
        NotificationTemplate(
            template_id="escalation-webhook",
            trigger=NotificationTrigger.ESCALATION_TRIGGERED,
            channel=NotificationChannel.WEBHOOK,
            subject="Escalation: {{ alert_type }}",
            body="[{{ severity }}] {{ alert_type }}: {{ message }}",
            priority=NotificationPriority.CRITICAL,
            variables=["severity", "alert_type", "message"],
        ),
        NotificationTemplate(
            template_id="escalation-sms",
            trigger=NotificationTrigger.ESCALATION_TRIGGERED,
            channel=NotificationChannel.SMS,
            subject="Escalation",
            body="CRITICAL {{ alert_type }}: {{ message | truncate(120) }}",
            priority=NotificationPriority.CRITICAL,
            variables=["alert_type", "message"],
        ),
    ]


class TemplateRegistry:
    """Templates keyed by ``(trigger, channel)``."""

    def __init__(self, load_defaults: bool = True):
        self._templates: dict[str, NotificationTemplate] = {}
        if load_defaults:
            for template in _default_templates():
                self.register(template)

    def register(self, template: NotificationTemplate) -> NotificationTemplate:
        """Add or replace a template.

        An active template replaces any other active template for the same
        ``(trigger, channel)``.
        """
        if template.is_active:
            for existing in self._templates.values():
                if (
                    existing.template_id != template.template_id
                    and existing.trigger == template.trigger
                    and existing.channel == template.channel
                ):
                    existing.is_active = False
        self._templates[template.template_id] = template
        logger.debug(
            "Registered template %s for %s/%s",
            template.template_id, template.trigger.value, template.channel.value,
        )
        return template

    def get(self, template_id: str) -> Optional[NotificationTemplate]:
        return self._templates.get(template_id)

    def find(
        self, trigger: NotificationTrigger, channel: NotificationChannel
    ) -> Optional[NotificationTemplate]:
        """Active template for a trigger and channel, if any."""
        for template in self._templates.values():
            if template.is_active and template.trigger == trigger and template.channel == channel:
                return template
        return None

    def deactivate(self, template_id: str) -> bool:
        template = self._templates.get(template_id)
        if template is None:
            return False
        template.is_active = False
        return True

    def list_templates(
        self, trigger: Optional[NotificationTrigger] = None
    ) -> list[NotificationTemplate]:
        return [
            t for t in self._templates.values()
            if trigger is None or t.trigger == trigger
        ]
