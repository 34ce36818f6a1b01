"""
Internal Portal: Request Approval Workflow
Vacation and delegation domain model.

Models:
    - VacationSchedule: an approved absence, with its substitute
    - ApprovalDelegation: permission for one user to approve on behalf of another
"""

from datetime import date, datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

class LeaveType:
    ANNUAL = "Annual"
    ON_DEMAND = "OnDemand"
    CIRCUMSTANTIAL = "Circumstantial"
    SICK = "Sick"

    ALL = (ANNUAL, ON_DEMAND, CIRCUMSTANTIAL, SICK)
    # Debited against the vacation ledger at approval time
    LEDGER = frozenset({ANNUAL, ON_DEMAND})


class VacationStatus:
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = frozenset({SCHEDULED, ACTIVE, COMPLETED, CANCELLED})


def _utcnow():
    return datetime.now(timezone.utc)


class VacationSchedule(db.Model):
    """
    An approved absence.

    ``start_date`` / ``end_date`` are inclusive. ``days_count`` is the number
    of business days debited from the ledger for this absence.
    """

    __tablename__ = "vacation_schedules"
    __table_args__ = (
        db.Index("idx_vacation_user_status", "user_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    substitute_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    source_request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    leave_type = db.Column(db.String(30), nullable=False, default=LeaveType.ANNUAL)
    days_count = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=VacationStatus.SCHEDULED)

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    user = db.relationship("User", foreign_keys=[user_id])
    substitute = db.relationship("User", foreign_keys=[substitute_user_id])
    source_request = db.relationship("Request")

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "substitute_user_id": self.substitute_user_id,
            "source_request_id": self.source_request_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "leave_type": self.leave_type,
            "days_count": self.days_count,
            "status": self.status,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancelled_by_id": self.cancelled_by_id,
            "cancellation_reason": self.cancellation_reason,
        }

    def __repr__(self):
        return f"<VacationSchedule {self.id}: user={self.user_id} {self.start_date}..{self.end_date} [{self.status}]>"


class ApprovalDelegation(db.Model):
    """
    ``to_user`` may approve steps assigned to ``from_user`` while the
    delegation is active. An open ``end_date`` means no expiry.
    """

    __tablename__ = "approval_delegations"
    __table_args__ = (
        db.Index("idx_delegation_to_user", "to_user_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    to_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    from_user = db.relationship("User", foreign_keys=[from_user_id])
    to_user = db.relationship("User", foreign_keys=[to_user_id])

    def is_effective(self, day: date) -> bool:
        return bool(self.is_active) and self.start_date <= day and (self.end_date is None or self.end_date >= day)

    def to_dict(self):
        return {
            "id": self.id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "is_active": self.is_active,
            "reason": self.reason,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }

    def __repr__(self):
        return f"<ApprovalDelegation {self.id}: {self.from_user_id} -> {self.to_user_id}>"
