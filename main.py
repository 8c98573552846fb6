"""CLI entry point: python main.py demo --content-id post-1"""

import argparse
import asyncio
import json
import sys

from src.logging_config import LogFormat, configure_logging
from src.notifications import (
    NotificationChannel,
    NotificationPreferences,
    NotificationRecipient,
    NotificationTrigger,
    RecipientKind,
    WorkflowNotificationService,
)
from src.settings import get_settings
from src.workflow import (
    LoggingBroadcaster,
    WorkflowAction,
    WorkflowContentType,
    WorkflowEngine,
    WorkflowError,
    StartWorkflowRequest,
    WorkflowQuery,
    WorkflowRole,
)


def build_services(settings=None):
    """Wire an engine to a notification service using env settings."""
    settings = settings or get_settings()
    notifier = WorkflowNotificationService(settings.notification_config())
    engine = WorkflowEngine(
        config=settings.engine_config(),
        broadcaster=LoggingBroadcaster(),
        notifier=notifier,
    )
    return engine, notifier


async def run_demo(content_id: str, title: str) -> dict:
    """Take one blog post from draft to published."""
    engine, notifier = build_services()
    notifier.register_recipient(NotificationRecipient(
        recipient_id="bob",
        kind=RecipientKind.USER,
        identifier="bob",
        email="bob@example.com",
        preferences=NotificationPreferences(
            channels=[NotificationChannel.EMAIL, NotificationChannel.IN_APP],
            topics={
                NotificationTrigger.APPROVAL_REQUIRED: True,
                NotificationTrigger.CONTENT_PUBLISHED: True,
            },
        ),
    ))

    request = StartWorkflowRequest(
        content_type=WorkflowContentType.BLOG_POST,
        content_id=content_id,
        created_by="alice",
        metadata={"title": title},
    )
    instance = await engine.start_workflow(
        request.content_type, request.content_id, request.created_by, metadata=request.metadata,
    )
    steps = [
        (WorkflowAction.SUBMIT_FOR_REVIEW, "alice", WorkflowRole.AUTHOR),
        (WorkflowAction.APPROVE, "bob", WorkflowRole.REVIEWER),
        (WorkflowAction.PUBLISH, "carol", WorkflowRole.PUBLISHER),
    ]
    for action, user, role in steps:
        instance = await engine.execute_transition(instance.instance_id, action, user, role)
        print(f"  {action.value:<18} -> {instance.current_state.value}")

    sent = await notifier.process_notifications()
    analytics = await engine.get_workflow_analytics()
    return {
        "instance": instance.to_dict(),
        "notifications_sent": sent,
        "analytics": analytics.to_dict(),
    }


async def run_list(state: str = None, limit: int = 20) -> dict:
    engine, _ = build_services()
    page = await engine.list_instances(WorkflowQuery(state=state, limit=limit))
    return page.model_dump()


def main():
    parser = argparse.ArgumentParser(
        description="Content workflow engine - approval and publishing pipeline"
    )
    parser.add_argument(
        "--log-format", choices=[f.value for f in LogFormat], default=None,
        help="Log output format (default: from CONTENT_WORKFLOW_LOG_FORMAT)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    demo = sub.add_parser("demo", help="Run a draft-to-published lifecycle")
    demo.add_argument("--content-id", default="post-1", help="Content id to start")
    demo.add_argument("--title", default="Welcome to the clinic", help="Content title")

    listing = sub.add_parser("list", help="List workflow instances")
    listing.add_argument("--state", default=None, help="Filter by state")
    listing.add_argument("--limit", type=int, default=20, help="Page size (1-100)")

    args = parser.parse_args()

    logging_config = get_settings().logging_config()
    if args.log_format:
        logging_config.format = LogFormat(args.log_format)
    configure_logging(logging_config)

    try:
        if args.command == "demo":
            print("=" * 60)
            print("CONTENT WORKFLOW DEMO")
            print("=" * 60)
            result = asyncio.run(run_demo(args.content_id, args.title))
        else:
            result = asyncio.run(run_list(args.state, args.limit))
    except WorkflowError as e:
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
