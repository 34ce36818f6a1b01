"""
Vacation schedules.

Tests cover:
  - Schedule creation from an approved leave request
  - Daily status job (scheduled -> active -> completed)
  - Cancellation rules, balance credit, audit and notifications
"""
from datetime import date

import pytest

import portal.services.workflow_engine as engine
from portal.core.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from portal.models import db
from portal.models.approver_spec import DirectSupervisor
from portal.models.audit import AuditLog
from portal.models.notification import Notification, NotificationType
from portal.models.request import Request
from portal.models.vacation import VacationSchedule, VacationStatus
from portal.services import vacation_schedule_service

START = date(2026, 11, 2)


@pytest.fixture()
def approve_vacation(org, make_template, vacation_form):
    """Submit and approve a leave request for the employee; return its schedule."""
    template = make_template(DirectSupervisor(), is_vacation_request=True, name="Vacation")

    def _approve(**form_kwargs):
        req = engine.submit_request(template.id, org.employee.id, vacation_form(**form_kwargs))
        engine.approve_step(req.id, req.approval_steps[0].id, org.supervisor.id)
        return VacationSchedule.query.filter_by(source_request_id=req.id).one()

    return _approve


class TestCreateFromApprovedRequest:
    def test_substitute_cannot_be_the_submitter(self, org, approve_vacation):
        schedule = approve_vacation(substitute_id=org.employee.id)
        assert schedule.substitute_user_id is None

    def test_inactive_substitute_dropped(self, org, approve_vacation):
        org.colleague.is_active = False
        db.session.commit()
        schedule = approve_vacation(substitute_id=org.colleague.id)
        assert schedule.substitute_user_id is None

    def test_unknown_substitute_dropped(self, approve_vacation):
        assert approve_vacation(substitute_id=9999).substitute_user_id is None

    def test_weekend_days_not_counted(self, approve_vacation):
        schedule = approve_vacation(start="2026-11-06", end="2026-11-09")
        assert schedule.days_count == 2

    def test_missing_dates(self, org, make_template):
        template = make_template(is_vacation_request=True)
        req = Request(
            request_number="REQ-2026-9999",
            template_id=template.id,
            submitter_id=org.employee.id,
            form_data='{"leaveType": "Annual"}',
        )
        db.session.add(req)
        db.session.flush()
        with pytest.raises(ValidationError, match="dates missing"):
            vacation_schedule_service.create_from_approved_request(req)


class TestUpdateVacationStatuses:
    def test_lifecycle(self, approve_vacation):
        schedule = approve_vacation()

        assert vacation_schedule_service.update_vacation_statuses(date(2026, 11, 1)) == {
            "activated": 0, "completed": 0,
        }
        assert vacation_schedule_service.update_vacation_statuses(date(2026, 11, 3)) == {
            "activated": 1, "completed": 0,
        }
        assert schedule.status == VacationStatus.ACTIVE
        assert vacation_schedule_service.update_vacation_statuses(date(2026, 11, 7)) == {
            "activated": 0, "completed": 1,
        }
        assert schedule.status == VacationStatus.COMPLETED

    def test_missed_window_goes_straight_to_completed(self, approve_vacation):
        schedule = approve_vacation()
        result = vacation_schedule_service.update_vacation_statuses(date(2026, 12, 1))
        assert result == {"activated": 0, "completed": 1}
        assert schedule.status == VacationStatus.COMPLETED

    def test_cancelled_schedules_untouched(self, org, approve_vacation):
        schedule = approve_vacation()
        vacation_schedule_service.cancel_vacation(schedule.id, org.admin.id, "Project deadline")
        vacation_schedule_service.update_vacation_statuses(date(2026, 11, 3))
        assert schedule.status == VacationStatus.CANCELLED


class TestCancelVacation:
    def test_admin_cancels_and_days_return(self, org, approve_vacation):
        schedule = approve_vacation(substitute_id=org.colleague.id)
        assert org.employee.vacation_days_used == 5

        cancelled = vacation_schedule_service.cancel_vacation(
            schedule.id, org.admin.id, "Project deadline", today=date(2026, 11, 20),
        )

        assert cancelled.status == VacationStatus.CANCELLED
        assert cancelled.cancelled_by_id == org.admin.id
        assert cancelled.cancellation_reason == "Project deadline"
        assert cancelled.cancelled_at is not None
        assert org.employee.vacation_days_used == 0
        log = AuditLog.query.filter_by(action="vacation.cancel").one()
        assert log.entity_id == str(schedule.id)
        assert log.diff["status"] == {"old": "scheduled", "new": "cancelled"}
        for user in (org.employee, org.colleague):
            assert Notification.query.filter_by(
                user_id=user.id, notification_type=NotificationType.VACATION_CANCELLED,
            ).count() == 1

    def test_on_demand_credit(self, org, approve_vacation):
        schedule = approve_vacation(leave_type="OnDemand", end="2026-11-03")
        assert org.employee.on_demand_vacation_days_used == 2
        vacation_schedule_service.cancel_vacation(schedule.id, org.admin.id, "Plans changed")
        assert org.employee.on_demand_vacation_days_used == 0
        assert org.employee.vacation_days_used == 0

    def test_sick_leave_cancel_leaves_balance(self, org, approve_vacation):
        schedule = approve_vacation(leave_type="Sick")
        vacation_schedule_service.cancel_vacation(schedule.id, org.admin.id, "Recovered early")
        assert org.employee.vacation_days_used == 0

    def test_approver_within_window(self, org, approve_vacation):
        schedule = approve_vacation()
        vacation_schedule_service.cancel_vacation(
            schedule.id, org.supervisor.id, "Client escalation", today=date(2026, 11, 3),
        )
        assert schedule.status == VacationStatus.CANCELLED

    def test_approver_after_window(self, org, approve_vacation):
        schedule = approve_vacation()
        with pytest.raises(ValidationError, match="Contact an administrator"):
            vacation_schedule_service.cancel_vacation(
                schedule.id, org.supervisor.id, "Client escalation", today=date(2026, 11, 4),
            )
        assert schedule.status == VacationStatus.SCHEDULED

    def test_unrelated_user_forbidden(self, org, approve_vacation):
        schedule = approve_vacation()
        with pytest.raises(ForbiddenError):
            vacation_schedule_service.cancel_vacation(schedule.id, org.outsider.id, "No reason at all")

    def test_completed_vacation(self, org, approve_vacation):
        schedule = approve_vacation()
        vacation_schedule_service.update_vacation_statuses(date(2026, 12, 1))
        with pytest.raises(InvalidStateError):
            vacation_schedule_service.cancel_vacation(schedule.id, org.admin.id, "Too late")

    def test_reason_required(self, org, approve_vacation):
        schedule = approve_vacation()
        with pytest.raises(ValidationError):
            vacation_schedule_service.cancel_vacation(schedule.id, org.admin.id, "  ")

    def test_unknown_schedule(self, org):
        with pytest.raises(NotFoundError):
            vacation_schedule_service.cancel_vacation(9999, org.admin.id, "Nothing")
