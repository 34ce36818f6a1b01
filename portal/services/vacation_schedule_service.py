"""
Vacation schedule service.

Lifecycle of an approved absence:

    scheduled ──(start reached)──► active ──(end passed)──► completed
        │                            │
        └──────── cancel ────────────┴──► cancelled

- ``create_from_approved_request`` is called by the workflow engine once a
  vacation request is fully approved. It only flushes; the engine commits.
- ``update_vacation_statuses`` is the daily job (``flask update-vacation-statuses``).
  Substitute routing only sees *active* schedules, so the job must run.
- ``cancel_vacation`` returns the debited days to the employee.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy import select

from portal.core.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from portal.models import db
from portal.models.audit import write_audit
from portal.models.notification import NotificationType
from portal.models.org import User
from portal.models.request import Request, StepStatus
from portal.models.vacation import LeaveType, VacationSchedule, VacationStatus
from portal.services import vacation_ledger
from portal.services.form_fields import FormFieldExtractor
from portal.services.notification import NotificationService

logger = logging.getLogger(__name__)

# Approvers (non-admins) may cancel until this many days after the start
APPROVER_CANCEL_WINDOW_DAYS = 1


# ── Creation ─────────────────────────────────────────────────────────────────


def _valid_substitute_id(substitute_id: int | None, submitter_id: int) -> int | None:
    if substitute_id is None or substitute_id == submitter_id:
        return None
    substitute = db.session.get(User, substitute_id)
    if substitute is None or not substitute.is_active:
        logger.warning("Ignoring unknown or inactive substitute %s", substitute_id,
                       extra={"user_id": submitter_id})
        return None
    return substitute.id


def create_from_approved_request(request: Request) -> VacationSchedule:
    """Record the absence described by an approved vacation request.

    Raises:
        ValidationError: the form data carries no start/end date.
    """
    fields = FormFieldExtractor(request.form_data).vacation_fields(exclude_substitute=request.submitter_id)
    if fields.start_date is None or fields.end_date is None:
        raise ValidationError("Vacation dates missing from request form data",
                              details={"request_id": request.id})

    leave_type = request.leave_type or fields.leave_type or LeaveType.ANNUAL
    schedule = VacationSchedule(
        user_id=request.submitter_id,
        substitute_user_id=_valid_substitute_id(fields.substitute_user_id, request.submitter_id),
        source_request_id=request.id,
        start_date=fields.start_date,
        end_date=fields.end_date,
        leave_type=leave_type,
        days_count=vacation_ledger.business_days_inclusive(fields.start_date, fields.end_date),
        status=VacationStatus.SCHEDULED,
    )
    db.session.add(schedule)
    db.session.flush()

    logger.info(
        "Vacation scheduled for user %s: %s..%s, substitute=%s",
        schedule.user_id, schedule.start_date, schedule.end_date, schedule.substitute_user_id,
        extra={"schedule_id": schedule.id, "request_id": request.id, "user_id": schedule.user_id},
    )

    if schedule.substitute_user_id is not None:
        NotificationService.notify_substitute(schedule.substitute_user_id, schedule)
    return schedule


# ── Daily status job ─────────────────────────────────────────────────────────


def update_vacation_statuses(today: date | None = None) -> dict:
    """Advance schedule statuses for ``today``. Commits.

    Returns:
        ``{"activated": n, "completed": m}``
    """
    day = today or date.today()
    activated = completed = 0

    to_activate = db.session.execute(
        select(VacationSchedule).where(
            VacationSchedule.status == VacationStatus.SCHEDULED,
            VacationSchedule.start_date <= day,
            VacationSchedule.end_date >= day,
        )
    ).scalars().all()
    for schedule in to_activate:
        schedule.status = VacationStatus.ACTIVE
        activated += 1

    to_complete = db.session.execute(
        select(VacationSchedule).where(
            VacationSchedule.status.in_([VacationStatus.SCHEDULED, VacationStatus.ACTIVE]),
            VacationSchedule.end_date < day,
        )
    ).scalars().all()
    for schedule in to_complete:
        schedule.status = VacationStatus.COMPLETED
        completed += 1

    db.session.commit()
    logger.info("Vacation statuses updated for %s: %d activated, %d completed", day, activated, completed)
    return {"activated": activated, "completed": completed}


# ── Cancellation ─────────────────────────────────────────────────────────────


def _approved_source_request(schedule: VacationSchedule, user_id: int) -> bool:
    source = schedule.source_request
    if source is None:
        return False
    return any(s.approver_id == user_id and s.status == StepStatus.APPROVED for s in source.approval_steps)


def cancel_vacation(
    schedule_id: int,
    cancelled_by_id: int,
    reason: str,
    today: date | None = None,
) -> VacationSchedule:
    """Cancel a scheduled or active vacation and credit the days back. Commits.

    Admins may always cancel. An approver of the source request may cancel
    until one day after the vacation started.
    """
    schedule = db.session.get(VacationSchedule, schedule_id)
    if schedule is None:
        raise NotFoundError(resource="VacationSchedule", resource_id=schedule_id)
    actor = db.session.get(User, cancelled_by_id)
    if actor is None:
        raise NotFoundError(resource="User", resource_id=cancelled_by_id)
    employee = db.session.get(User, schedule.user_id)
    if employee is None:
        raise NotFoundError(resource="User", resource_id=schedule.user_id)

    if schedule.status not in (VacationStatus.SCHEDULED, VacationStatus.ACTIVE):
        raise InvalidStateError(
            f"Vacation cannot be cancelled (current: {schedule.status})", current_status=schedule.status,
        )
    if not (reason or "").strip():
        raise ValidationError("Cancellation reason is required", details={"reason": "required"})

    if not actor.is_admin:
        if not _approved_source_request(schedule, cancelled_by_id):
            raise ForbiddenError("Not authorized to cancel this vacation", user_id=cancelled_by_id)
        days_since_start = ((today or date.today()) - schedule.start_date).days
        if days_since_start > APPROVER_CANCEL_WINDOW_DAYS:
            raise ValidationError(
                f"Approvers may cancel a vacation only up to {APPROVER_CANCEL_WINDOW_DAYS} day after it starts. "
                "Contact an administrator.",
                details={"days_since_start": days_since_start},
            )

    old_status = schedule.status
    schedule.status = VacationStatus.CANCELLED
    schedule.cancelled_at = datetime.now(timezone.utc)
    schedule.cancelled_by_id = cancelled_by_id
    schedule.cancellation_reason = reason

    if schedule.leave_type in LeaveType.LEDGER:
        vacation_ledger.reverse_leave(employee, schedule.leave_type, schedule.days_count)

    write_audit(
        entity_type="vacation_schedule",
        entity_id=str(schedule.id),
        action="vacation.cancel",
        actor=actor.email,
        actor_user_id=cancelled_by_id,
        diff={"status": {"old": old_status, "new": VacationStatus.CANCELLED}, "reason": reason},
    )

    NotificationService.create(
        user_id=employee.id,
        title="Vacation cancelled",
        message=(
            f"Your vacation from {schedule.start_date.isoformat()} to {schedule.end_date.isoformat()} "
            f"was cancelled. {schedule.days_count} day(s) returned to your balance. Reason: {reason}"
        ),
        notification_type=NotificationType.VACATION_CANCELLED,
        request_id=schedule.source_request_id,
    )
    if schedule.substitute_user_id is not None:
        NotificationService.create(
            user_id=schedule.substitute_user_id,
            title="Vacation cancelled",
            message=f"The vacation of {employee.full_name}, for which you were the substitute, was cancelled.",
            notification_type=NotificationType.VACATION_CANCELLED,
        )

    db.session.commit()
    logger.info(
        "Vacation %s cancelled by user %s; %d day(s) returned to user %s",
        schedule.id, cancelled_by_id, schedule.days_count, employee.id,
        extra={"schedule_id": schedule.id, "user_id": cancelled_by_id},
    )
    return schedule
