"""
Approval delegation service.

A delegation lets ``to_user`` act on approval steps assigned to
``from_user`` for a date window (open-ended when ``end_date`` is None).
Only bulk approval consults delegations; single-step approval requires
the assigned approver.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy import or_, select

from portal.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from portal.models import db
from portal.models.audit import write_audit
from portal.models.org import User
from portal.models.vacation import ApprovalDelegation

logger = logging.getLogger(__name__)


def create_delegation(
    from_user_id: int,
    to_user_id: int,
    start_date: date,
    end_date: date | None = None,
    reason: str | None = None,
) -> ApprovalDelegation:
    """Let ``to_user_id`` approve on behalf of ``from_user_id``. Commits."""
    if from_user_id == to_user_id:
        raise ValidationError("A user cannot delegate approvals to themselves",
                              details={"to_user_id": "must differ from from_user_id"})
    if end_date is not None and end_date < start_date:
        raise ValidationError("end_date must not be before start_date",
                              details={"end_date": end_date.isoformat()})

    for uid in (from_user_id, to_user_id):
        user = db.session.get(User, uid)
        if user is None:
            raise NotFoundError(resource="User", resource_id=uid)
    delegate = db.session.get(User, to_user_id)
    if not delegate.is_active:
        raise ValidationError("Delegate must be an active user", details={"to_user_id": to_user_id})

    delegation = ApprovalDelegation(
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        start_date=start_date,
        end_date=end_date,
        reason=reason,
        is_active=True,
    )
    db.session.add(delegation)
    db.session.flush()
    write_audit(
        entity_type="approval_delegation",
        entity_id=str(delegation.id),
        action="delegation.create",
        actor_user_id=from_user_id,
        diff={"to_user_id": to_user_id, "start_date": start_date, "end_date": end_date},
    )
    db.session.commit()

    logger.info(
        "Delegation created: %s -> %s (%s..%s)", from_user_id, to_user_id, start_date, end_date or "open",
        extra={"delegation_id": delegation.id, "user_id": from_user_id},
    )
    return delegation


def revoke_delegation(delegation_id: int, revoked_by_id: int | None = None) -> ApprovalDelegation:
    """Deactivate a delegation. Commits."""
    delegation = db.session.get(ApprovalDelegation, delegation_id)
    if delegation is None:
        raise NotFoundError(resource="ApprovalDelegation", resource_id=delegation_id)
    if not delegation.is_active:
        raise InvalidStateError("Delegation is already revoked", current_status="revoked")

    delegation.is_active = False
    delegation.revoked_at = datetime.now(timezone.utc)
    write_audit(
        entity_type="approval_delegation",
        entity_id=str(delegation.id),
        action="delegation.revoke",
        actor_user_id=revoked_by_id,
    )
    db.session.commit()

    logger.info("Delegation revoked", extra={"delegation_id": delegation.id, "user_id": revoked_by_id})
    return delegation


def get_delegated_approvers(user_id: int, on: date | None = None) -> list[int]:
    """Ids of users who have delegated their approvals to ``user_id`` on ``on``."""
    day = on or date.today()
    stmt = (
        select(ApprovalDelegation.from_user_id)
        .where(
            ApprovalDelegation.to_user_id == user_id,
            ApprovalDelegation.is_active.is_(True),
            ApprovalDelegation.start_date <= day,
            or_(ApprovalDelegation.end_date.is_(None), ApprovalDelegation.end_date >= day),
        )
        .order_by(ApprovalDelegation.from_user_id)
        .distinct()
    )
    return list(db.session.execute(stmt).scalars())


def list_delegations(user_id: int) -> list[ApprovalDelegation]:
    """All delegations given or received by ``user_id``, newest first."""
    stmt = (
        select(ApprovalDelegation)
        .where(or_(ApprovalDelegation.from_user_id == user_id, ApprovalDelegation.to_user_id == user_id))
        .order_by(ApprovalDelegation.id.desc())
    )
    return list(db.session.execute(stmt).scalars())
