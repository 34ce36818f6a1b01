"""Substitute routing for approvers who are away, and delegation lookups."""
from datetime import date, timedelta

import pytest

import portal.services.workflow_engine as engine
from portal.models import db
from portal.models.approver_spec import DirectSupervisor, SpecificDepartment
from portal.models.notification import Notification, NotificationType
from portal.models.request import StepStatus
from portal.models.vacation import VacationSchedule, VacationStatus
from portal.services import substitute_router


def _away(user, substitute, status=VacationStatus.ACTIVE, start_offset=-1, end_offset=3):
    today = date.today()
    schedule = VacationSchedule(
        user_id=user.id,
        substitute_user_id=substitute.id if substitute is not None else None,
        start_date=today + timedelta(days=start_offset),
        end_date=today + timedelta(days=end_offset),
        leave_type="Annual",
        days_count=3,
        status=status,
    )
    db.session.add(schedule)
    db.session.commit()
    return schedule


class TestGetActiveSubstitute:
    def test_active_vacation_with_substitute(self, org):
        _away(org.head, org.director)
        assert substitute_router.get_active_substitute(org.head.id).id == org.director.id

    def test_not_away(self, org):
        assert substitute_router.get_active_substitute(org.head.id) is None

    def test_scheduled_vacation_not_yet_active(self, org):
        _away(org.head, org.director, status=VacationStatus.SCHEDULED)
        assert substitute_router.get_active_substitute(org.head.id) is None

    def test_vacation_window_must_cover_day(self, org):
        _away(org.head, org.director, start_offset=2, end_offset=5)
        assert substitute_router.get_active_substitute(org.head.id) is None
        later = date.today() + timedelta(days=3)
        assert substitute_router.get_active_substitute(org.head.id, on=later).id == org.director.id

    def test_inactive_substitute_ignored(self, org):
        _away(org.head, org.director)
        org.director.is_active = False
        db.session.commit()
        assert substitute_router.get_active_substitute(org.head.id) is None

    def test_no_substitute_named(self, org):
        _away(org.head, None)
        assert substitute_router.get_active_vacation(org.head.id) is not None
        assert substitute_router.get_active_substitute(org.head.id) is None


class TestRoutingOnAdvance:
    @pytest.fixture()
    def request_two_steps(self, org, make_template):
        template = make_template(DirectSupervisor(), SpecificDepartment(org.department.id))
        return engine.submit_request(template.id, org.employee.id, {})

    def test_next_step_rerouted(self, org, request_two_steps):
        _away(org.head, org.director)
        req = request_two_steps

        result = engine.approve_step(req.id, req.approval_steps[0].id, org.supervisor.id)

        second = req.approval_steps[1]
        assert result["next_approver_id"] == org.director.id
        assert second.approver_id == org.director.id
        assert second.status == StepStatus.IN_REVIEW
        assert second.comment == (
            f"Routed to substitute for approver on vacation (originally assigned to user {org.head.id})"
        )
        assert Notification.query.filter_by(
            user_id=org.director.id, notification_type=NotificationType.APPROVAL_REQUIRED,
        ).count() == 1
        assert Notification.query.filter_by(user_id=org.head.id).count() == 0

    def test_substitute_can_approve(self, org, request_two_steps):
        _away(org.head, org.director)
        req = request_two_steps
        engine.approve_step(req.id, req.approval_steps[0].id, org.supervisor.id)
        result = engine.approve_step(req.id, req.approval_steps[1].id, org.director.id)
        assert result["message"] == "Request fully approved"

    def test_first_step_resolved_at_submission_is_not_rerouted(self, org, make_template):
        _away(org.supervisor, org.colleague)
        req = engine.submit_request(make_template(DirectSupervisor()).id, org.employee.id, {})
        assert req.approval_steps[0].approver_id == org.supervisor.id

    def test_bulk_advance_does_not_reroute(self, org, request_two_steps):
        _away(org.head, org.director)
        req = request_two_steps
        engine.bulk_approve([req.approval_steps[0].id], org.supervisor.id)
        db.session.refresh(req)
        assert req.approval_steps[1].approver_id == org.head.id
        assert req.approval_steps[1].status == StepStatus.IN_REVIEW


class TestCanActFor:
    def test_self(self, org):
        assert substitute_router.can_act_for(org.head.id, org.head.id) is True

    def test_without_delegation(self, org):
        assert substitute_router.can_act_for(org.director.id, org.head.id) is False
