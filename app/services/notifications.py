"""Notification payload builders and the post-commit delivery sink."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from app.models.mentor import Mentor
from app.models.mentorship import MentorshipRequest, Urgency
from app.models.notification import (
    Notification,
    NotificationPriority,
    NotificationType,
    RelatedModel,
)
from app.models.startup import Startup, StartupStatus
from app.models.workflow import NotificationSpec
from app.observability.metrics import metrics

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Delivers notifications that are already persisted (email, push, ...)."""

    def deliver(self, notifications: Sequence[Notification]) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: records each delivery as a structured log event."""

    def deliver(self, notifications: Sequence[Notification]) -> None:
        for notification in notifications:
            logger.info(
                "notifications.delivered",
                extra={
                    "notification_id": notification.id,
                    "recipient_id": notification.recipient_id,
                    "type": notification.type.value,
                    "priority": notification.priority.value,
                },
            )


def dispatch_notifications(sink: NotificationSink, notifications: Sequence[Notification]) -> None:
    """Hand committed notifications to ``sink``; delivery failures never propagate."""
    if not notifications:
        return
    try:
        sink.deliver(notifications)
    except Exception as exc:
        logger.warning(
            "notifications.dispatch_failed",
            extra={"count": len(notifications), "error": type(exc).__name__},
            exc_info=True,
        )
        metrics.increment("notifications.dispatch_failed", tags={"error": type(exc).__name__})
        return
    metrics.increment("notifications.dispatched", value=len(notifications))


def default_status_notification(status: StartupStatus) -> NotificationSpec:
    return NotificationSpec(
        title="Startup Status Updated",
        message=f"Your startup status has been changed to {status.value}.",
    )


def build_status_notification(
    startup: Startup, spec: NotificationSpec, *, previous_status: StartupStatus, now: datetime
) -> Notification:
    return Notification(
        recipient_id=startup.founder_id,
        type=spec.type,
        title=spec.title,
        message=spec.message,
        related_model=RelatedModel.STARTUP,
        related_id=startup.id,
        priority=spec.priority,
        metadata={
            "previous_status": previous_status.value,
            "new_status": startup.status.value,
        },
        created_at=now,
    )


def build_request_created_notification(
    mentor: Mentor, request: MentorshipRequest, startup: Startup, *, now: datetime
) -> Notification:
    return Notification(
        recipient_id=mentor.user_id,
        type=NotificationType.MENTORSHIP_REQUEST_CREATED,
        title="New Mentorship Request",
        message=f"{startup.name} is looking for mentorship in {request.topic}",
        related_model=RelatedModel.MENTORSHIP_REQUEST,
        related_id=request.id,
        priority=_priority_for(request),
        created_at=now,
    )


def build_mentor_selected_notification(
    mentor: Mentor, request: MentorshipRequest, *, now: datetime
) -> Notification:
    return Notification(
        recipient_id=mentor.user_id,
        type=NotificationType.MENTOR_SELECTED,
        title="You have been selected!",
        message=f'A startup has selected you for mentorship in "{request.topic}"',
        related_model=RelatedModel.MENTORSHIP_REQUEST,
        related_id=request.id,
        priority=NotificationPriority.HIGH,
        created_at=now,
    )


def _priority_for(request: MentorshipRequest) -> NotificationPriority:
    if request.urgency >= Urgency.HIGH:
        return NotificationPriority.HIGH
    return NotificationPriority.MEDIUM
