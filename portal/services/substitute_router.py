"""
Substitute routing.

Answers two questions for the workflow engine:

- ``get_active_substitute(user_id)``: is this approver away today, and if
  so who stands in? Used when a step is started, so the next approver is
  swapped for their substitute.
- ``can_act_for(actor_id, approver_id)``: may ``actor_id`` approve a step
  assigned to ``approver_id`` through a delegation? Used by bulk approval
  only.

An approver is away when they have an *active* vacation schedule covering
today. Schedules become active through the daily status job in
``vacation_schedule_service.update_vacation_statuses``.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select

from portal.models import db
from portal.models.org import User
from portal.models.vacation import VacationSchedule, VacationStatus
from portal.services import delegation_service

logger = logging.getLogger(__name__)


def get_active_vacation(user_id: int, on: date | None = None) -> VacationSchedule | None:
    day = on or date.today()
    stmt = (
        select(VacationSchedule)
        .where(
            VacationSchedule.user_id == user_id,
            VacationSchedule.status == VacationStatus.ACTIVE,
            VacationSchedule.start_date <= day,
            VacationSchedule.end_date >= day,
        )
        .order_by(VacationSchedule.start_date)
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def get_active_substitute(user_id: int, on: date | None = None) -> User | None:
    """The active substitute for ``user_id`` on ``on`` (default today), or None."""
    vacation = get_active_vacation(user_id, on)
    if vacation is None or vacation.substitute_user_id is None:
        return None
    substitute = db.session.get(User, vacation.substitute_user_id)
    if substitute is None or not substitute.is_active or substitute.id == user_id:
        return None
    logger.debug(
        "User %s is on vacation; substitute is %s", user_id, substitute.id,
        extra={"user_id": user_id, "schedule_id": vacation.id},
    )
    return substitute


def can_act_for(actor_id: int, approver_id: int, on: date | None = None) -> bool:
    if actor_id == approver_id:
        return True
    return approver_id in delegation_service.get_delegated_approvers(actor_id, on)
