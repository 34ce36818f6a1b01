"""
Internal Portal: Request Approval Workflow
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

class NotificationType:
    APPROVAL_REQUIRED = "approval_required"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_UPDATED = "request_updated"
    SUBSTITUTE_ASSIGNED = "substitute_assigned"
    VACATION_CANCELLED = "vacation_cancelled"

    ALL = frozenset({
        APPROVAL_REQUIRED, REQUEST_APPROVED, REQUEST_REJECTED,
        REQUEST_UPDATED, SUBSTITUTE_ASSIGNED, VACATION_CANCELLED,
    })


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    notification_type = db.Column(db.String(30), nullable=False, default=NotificationType.REQUEST_UPDATED)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    # Link to source request
    request_id = db.Column(db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "notification_type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "request_id": self.request_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
