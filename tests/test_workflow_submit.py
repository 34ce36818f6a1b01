"""
Request submission.

Tests cover:
  - Approval chain creation and first-step start
  - Routing failures abort the whole submission
  - Auto-approval when no approval is needed
  - Vacation pre-validation and leave-type capture
  - Request numbering
"""
from datetime import datetime

import pytest
from sqlalchemy import func, select

import portal.services.workflow_engine as engine
from portal.core.exceptions import ConflictError, NotFoundError, RoutingError, ValidationError
from portal.models import db
from portal.models.approver_spec import DirectSupervisor, SpecificDepartment, UserGroup
from portal.models.notification import Notification, NotificationType
from portal.models.request import ApprovalStep, Request, RequestStatus, StepStatus


class TestSubmitRequest:
    def test_creates_ordered_chain(self, org, make_template):
        template = make_template(DirectSupervisor(), SpecificDepartment(org.department.id), UserGroup(org.hr_group.id))
        req = engine.submit_request(template.id, org.employee.id, {"item": "Laptop"}, title="New laptop")

        assert req.status == RequestStatus.IN_REVIEW
        assert req.title == "New laptop"
        assert req.priority == "Standard"
        assert req.form_values == {"item": "Laptop"}
        steps = req.approval_steps
        assert [s.step_order for s in steps] == [1, 2, 3]
        assert [s.approver_id for s in steps] == [org.supervisor.id, org.head.id, org.hr_first.id]
        assert [s.status for s in steps] == [StepStatus.IN_REVIEW, StepStatus.PENDING, StepStatus.PENDING]
        assert steps[0].started_at is not None
        assert steps[1].started_at is None

    def test_first_approver_notified(self, org, make_template):
        template = make_template(DirectSupervisor())
        req = engine.submit_request(template.id, org.employee.id, {})
        notes = Notification.query.filter_by(user_id=org.supervisor.id).all()
        assert len(notes) == 1
        assert notes[0].notification_type == NotificationType.APPROVAL_REQUIRED
        assert notes[0].request_id == req.id

    def test_title_defaults_to_template_name(self, org, make_template):
        template = make_template(DirectSupervisor(), name="Training budget")
        req = engine.submit_request(template.id, org.employee.id, {})
        assert req.title == "Training budget"

    def test_routing_failure_persists_nothing(self, org, make_template):
        template = make_template(DirectSupervisor(), UserGroup(org.hr_group.id))
        org.hr_first.is_active = False
        org.hr_second.is_active = False
        db.session.commit()

        with pytest.raises(RoutingError) as exc_info:
            engine.submit_request(template.id, org.employee.id, {})
        assert exc_info.value.step_order == 2
        assert db.session.execute(select(func.count(Request.id))).scalar_one() == 0
        assert db.session.execute(select(func.count(ApprovalStep.id))).scalar_one() == 0

    def test_no_approval_required_auto_approves(self, org, make_template):
        template = make_template(DirectSupervisor(), requires_approval=False)
        req = engine.submit_request(template.id, org.employee.id, {})
        assert req.status == RequestStatus.APPROVED
        assert req.completed_at is not None
        assert req.approval_steps == []

    def test_template_without_steps_auto_approves(self, org, make_template):
        template = make_template()
        req = engine.submit_request(template.id, org.employee.id, {})
        assert req.status == RequestStatus.APPROVED
        assert Notification.query.count() == 0

    def test_unknown_template(self, org):
        with pytest.raises(NotFoundError):
            engine.submit_request(9999, org.employee.id, {})

    def test_unknown_submitter(self, make_template):
        template = make_template()
        with pytest.raises(NotFoundError):
            engine.submit_request(template.id, 9999, {})

    def test_invalid_priority(self, org, make_template):
        template = make_template(DirectSupervisor())
        with pytest.raises(ValidationError, match="priority"):
            engine.submit_request(template.id, org.employee.id, {}, priority="Whenever")

    def test_form_data_as_json_text(self, org, make_template):
        template = make_template(DirectSupervisor())
        req = engine.submit_request(template.id, org.employee.id, '{"item": "Desk"}')
        assert req.form_values == {"item": "Desk"}

    def test_invalid_form_data(self, org, make_template):
        template = make_template(DirectSupervisor())
        with pytest.raises(ValidationError):
            engine.submit_request(template.id, org.employee.id, "[1, 2]")

    def test_step_passing_score_falls_back_to_template(self, org, make_template, quiz_step):
        template = make_template(
            quiz_step(DirectSupervisor()),
            quiz_step(SpecificDepartment(org.department.id), passing_score=90),
            passing_score=60,
        )
        req = engine.submit_request(template.id, org.employee.id, {})
        assert [s.passing_score for s in req.approval_steps] == [60, 90]
        assert all(s.requires_quiz for s in req.approval_steps)


class TestRequestNumbers:
    def test_sequential_numbers(self, org, make_template):
        template = make_template(DirectSupervisor())
        year = datetime.now().year
        first = engine.submit_request(template.id, org.employee.id, {})
        second = engine.submit_request(template.id, org.colleague.id, {})
        assert first.request_number == f"REQ-{year}-0001"
        assert second.request_number == f"REQ-{year}-0002"

    def test_auto_approved_requests_are_numbered_too(self, org, make_template):
        template = make_template()
        engine.submit_request(template.id, org.employee.id, {})
        req = engine.submit_request(template.id, org.employee.id, {})
        assert req.request_number.endswith("-0002")

    def test_number_collision_is_a_conflict(self, org, make_template):
        template = make_template(DirectSupervisor())
        year = datetime.now().year
        # one existing row, but it already holds the next number
        db.session.add(Request(
            request_number=f"REQ-{year}-0002", template_id=template.id, submitter_id=org.colleague.id,
        ))
        db.session.commit()

        with pytest.raises(ConflictError):
            engine.submit_request(template.id, org.employee.id, {})
        assert Request.query.count() == 1


class TestVacationSubmission:
    def test_leave_type_captured(self, org, make_template, vacation_form):
        template = make_template(DirectSupervisor(), is_vacation_request=True, name="Vacation")
        req = engine.submit_request(template.id, org.employee.id, vacation_form("OnDemand", end="2026-11-02"))
        assert req.leave_type == "OnDemand"

    def test_missing_dates_rejected(self, org, make_template):
        template = make_template(DirectSupervisor(), is_vacation_request=True)
        with pytest.raises(ValidationError, match="start_date"):
            engine.submit_request(template.id, org.employee.id, {"leaveType": "Annual"})

    def test_end_before_start_rejected(self, org, make_template, vacation_form):
        template = make_template(DirectSupervisor(), is_vacation_request=True)
        with pytest.raises(ValidationError, match="before start"):
            engine.submit_request(template.id, org.employee.id, vacation_form(start="2026-11-06", end="2026-11-02"))

    def test_validate_submission_checks_balance(self, org, make_template, vacation_form):
        template = make_template(DirectSupervisor(), is_vacation_request=True)
        org.employee.vacation_days_used = 24
        db.session.commit()
        with pytest.raises(ValidationError, match="Not enough vacation days"):
            engine.validate_submission(template.id, org.employee.id, vacation_form())

    def test_validate_submission_ignores_regular_templates(self, org, make_template):
        template = make_template(DirectSupervisor())
        assert engine.validate_submission(template.id, org.employee.id, "not json") is None

    def test_validate_submission_unknown_template(self, org):
        with pytest.raises(NotFoundError):
            engine.validate_submission(9999, org.employee.id, {})
