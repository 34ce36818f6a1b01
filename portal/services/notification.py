"""
Internal Portal: Request Approval Workflow
Notification Service.

In-app notifications for approvers, submitters and substitutes. Writes
only ``flush``: notifications are raised from inside workflow transactions
and savepoints, so the caller owns the commit.
"""

import logging

from portal.models import db
from portal.models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, user_id, title, message="", notification_type=NotificationType.REQUEST_UPDATED,
               request_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (flushed, not committed).
        """
        notif = Notification(
            user_id=user_id,
            title=title,
            message=message,
            notification_type=notification_type,
            request_id=request_id,
        )
        db.session.add(notif)
        db.session.flush()
        logger.debug(
            "Notification %s for user %s: %s", notification_type, user_id, title,
            extra={"user_id": user_id, "request_id": request_id, "event_type": notification_type},
        )
        return notif

    @staticmethod
    def notify_approver(approver_id, request):
        """Tell an approver a request is waiting for their decision."""
        return NotificationService.create(
            user_id=approver_id,
            title=f"Approval required: {request.request_number}",
            message=f"Request {request.request_number} ({request.title or 'untitled'}) is awaiting your approval.",
            notification_type=NotificationType.APPROVAL_REQUIRED,
            request_id=request.id,
        )

    @staticmethod
    def notify_submitter(request, message, notification_type=NotificationType.REQUEST_UPDATED):
        """Tell the submitter about progress on their request."""
        return NotificationService.create(
            user_id=request.submitter_id,
            title=f"Request {request.request_number}",
            message=message,
            notification_type=notification_type,
            request_id=request.id,
        )

    @staticmethod
    def notify_substitute(substitute_id, schedule, message=None):
        """Tell a user they stand in for a colleague's absence."""
        return NotificationService.create(
            user_id=substitute_id,
            title="Substitute assignment",
            message=message or (
                f"You are the substitute for user {schedule.user_id} "
                f"from {schedule.start_date.isoformat()} to {schedule.end_date.isoformat()}."
            ),
            notification_type=NotificationType.SUBSTITUTE_ASSIGNED,
            request_id=schedule.source_request_id,
        )

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50):
        """Notifications for a user, newest first."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        return q.order_by(Notification.id.desc()).limit(limit).all()
