"""
Internal Portal: Request Approval Workflow
Audit trail.

Administrative workflow actions (bulk approvals, vacation cancellations,
delegation changes) each append one ``AuditLog`` row. Rows are never
updated. ``write_audit`` only flushes; the calling service commits it
together with the change it describes.
"""

import json
from datetime import datetime, timezone

from portal.models import db

AUDIT_ACTIONS = {
    "request.bulk_approve": "approval_step",
    "vacation.cancel": "vacation_schedule",
    "delegation.create": "approval_delegation",
    "delegation.revoke": "approval_delegation",
}


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), nullable=False)
    # Batch actions store the affected ids comma-joined
    entity_id = db.Column(db.String(200), nullable=False)
    action = db.Column(db.String(60), nullable=False)

    actor = db.Column(db.String(150), nullable=False, default="system", comment="email or 'system'")
    actor_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    diff_json = db.Column(db.Text, nullable=False, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Action payload; unreadable JSON reads as empty."""
        if not self.diff_json:
            return {}
        try:
            payload = json.loads(self.diff_json)
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def to_dict(self) -> dict:
        result = {c: getattr(self, c) for c in ("id", "entity_type", "entity_id", "action", "actor", "actor_user_id")}
        result["diff"] = self.diff
        result["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        return result

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id}>"


def write_audit(*, entity_type, entity_id, action, actor="system", actor_user_id=None, diff=None) -> AuditLog:
    """Add and flush one audit row. Dates and other non-JSON values in ``diff`` are stored as strings."""
    if AUDIT_ACTIONS.get(action) != entity_type:
        raise ValueError(f"Unknown audit action {action!r} for {entity_type!r}")
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id)[:200],
        action=action,
        actor=actor,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(entry)
    db.session.flush()
    return entry
