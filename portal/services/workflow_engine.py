"""
Request Approval Workflow Engine.

Owns the request / approval-step lifecycle:

    Request:  draft ──► in_review ──► approved | rejected
                          │   ▲
                          ▼   │  (quiz passed)
                     awaiting_survey

    Step:     pending ──► in_review ──► approved | rejected
                            │
                            ▼  (approval attempted, quiz not passed)
                      requires_survey ──(quiz failed)──► survey_failed

Design decisions:
    - Approvers are resolved once, at submission. A step that cannot be
      routed aborts the whole submission; nothing is persisted.
    - A blocked approval (quiz not passed) is a side-effecting failure: the
      step and request move to their survey statuses and are committed
      before ``QuizRequiredError`` is raised.
    - Ledger reconciliation, schedule creation and notifications on the
      approval path are best-effort. They run in savepoints and their
      failures are logged, never raised.
    - Bulk approval keeps its own advancement rule (no substitute routing,
      no ledger) and consults delegations; single-step approval does not.
    - Request numbers are ``REQ-{year}-{count + 1:04d}``. Concurrent
      submissions can collide; ``request_number`` is unique so the loser
      fails instead of duplicating.
    - No optimistic concurrency check on step transitions.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from portal.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    QuizRequiredError,
    RoutingError,
    ValidationError,
)
from portal.models import db
from portal.models.audit import write_audit
from portal.models.notification import NotificationType
from portal.models.org import User
from portal.models.request import (
    DEFAULT_PRIORITY,
    PRIORITIES,
    ApprovalStep,
    QuizAnswer,
    Request,
    RequestComment,
    RequestStatus,
    StepStatus,
)
from portal.models.request_template import RequestTemplate
from portal.services import quiz_grader, substitute_router, vacation_ledger, vacation_schedule_service
from portal.services.approver_resolver import resolve_approver
from portal.services.form_fields import FormFieldExtractor, parse_form_data
from portal.services.notification import NotificationService

logger = logging.getLogger(__name__)

SUBSTITUTE_ROUTING_NOTE = "Routed to substitute for approver on vacation"


# ── Result types ─────────────────────────────────────────────────────────────


@dataclass
class QuizResult:
    score: int
    passed: bool
    required_score: int
    message: str
    already_submitted: bool = False

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "passed": self.passed,
            "required_score": self.required_score,
            "message": self.message,
            "already_submitted": self.already_submitted,
        }


@dataclass
class BulkApprovalError:
    step_id: int
    request_title: str
    error: str

    def to_dict(self) -> dict:
        return {"step_id": self.step_id, "request_title": self.request_title, "error": self.error}


@dataclass
class BulkApprovalResult:
    success: bool = False
    message: str = ""
    success_count: int = 0
    fail_count: int = 0
    errors: list[BulkApprovalError] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "errors": [e.to_dict() for e in self.errors],
        }


class _BulkItemRejected(Exception):
    """One bulk item failed a check; recorded in the result, batch continues."""

    def __init__(self, message: str, request_title: str = "Unknown"):
        self.request_title = request_title
        super().__init__(message)


# ── Private helpers ──────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _best_effort(action: str, fn, *args, **kwargs):
    """Run a side effect in a savepoint; log and drop any failure."""
    try:
        with db.session.begin_nested():
            return fn(*args, **kwargs)
    except Exception:
        logger.exception("Best-effort %s failed", action)
        return None


def _get_request(request_id: int) -> Request:
    request = db.session.get(Request, request_id)
    if request is None:
        raise NotFoundError(resource="Request", resource_id=request_id)
    return request


def _get_step(request: Request, step_id: int) -> ApprovalStep:
    step = db.session.get(ApprovalStep, step_id)
    if step is None or step.request_id != request.id:
        raise NotFoundError(resource="ApprovalStep", resource_id=step_id)
    return step


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def _request_title(request: Request | None) -> str:
    if request is None:
        return "Unknown"
    if request.title:
        return request.title
    if request.template is not None:
        return request.template.name
    return "Unknown Request"


def _next_pending_step(request: Request) -> ApprovalStep | None:
    pending = [s for s in request.approval_steps if s.status == StepStatus.PENDING]
    return min(pending, key=lambda s: s.step_order) if pending else None


def _next_request_number(now: datetime) -> str:
    count = db.session.execute(select(func.count(Request.id))).scalar_one()
    return f"REQ-{now.year}-{count + 1:04d}"


def _flush_new_request(request: Request) -> None:
    """Flush a new request; a duplicate request number becomes a ConflictError."""
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Request", "request_number", request.request_number) from exc


def _add_comment(request: Request, user_id: int | None, text: str) -> RequestComment:
    comment = RequestComment(request=request, user_id=user_id, text=text)
    db.session.add(comment)
    return comment


def _vacation_fields(form: dict):
    fields = FormFieldExtractor(form).vacation_fields()
    if not fields.is_complete:
        missing = [
            name for name, value in (
                ("leave_type", fields.leave_type),
                ("start_date", fields.start_date),
                ("end_date", fields.end_date),
            ) if value is None
        ]
        raise ValidationError(
            f"Vacation request is missing {', '.join(missing)}",
            details={name: "required" for name in missing},
        )
    if fields.end_date < fields.start_date:
        raise ValidationError("Vacation end date is before start date",
                              details={"end_date": fields.end_date.isoformat()})
    return fields


def _apply_vacation_days(request: Request) -> None:
    fields = FormFieldExtractor(request.form_data).vacation_fields()
    leave_type = request.leave_type or fields.leave_type
    if leave_type is None or fields.start_date is None or fields.end_date is None:
        logger.warning("Vacation fields incomplete; ledger not updated", extra={"request_id": request.id})
        return
    days = vacation_ledger.business_days_inclusive(fields.start_date, fields.end_date)
    vacation_ledger.apply_leave(request.submitter, leave_type, days)


def _start_step(request: Request, step: ApprovalStep, now: datetime) -> None:
    """Put ``step`` in review, rerouting to a substitute when its approver is away."""
    substitute = substitute_router.get_active_substitute(step.approver_id)
    if substitute is not None:
        original = step.approver_id
        step.approver_id = substitute.id
        step.comment = f"{SUBSTITUTE_ROUTING_NOTE} (originally assigned to user {original})"
        logger.info(
            "Step %s routed to substitute %s (approver %s is away)", step.id, substitute.id, original,
            extra={"request_id": request.id, "step_id": step.id, "approver_id": substitute.id},
        )
    step.status = StepStatus.IN_REVIEW
    step.started_at = now
    request.status = RequestStatus.IN_REVIEW
    _best_effort("approver notification", NotificationService.notify_approver, step.approver_id, request)


def _complete_request(request: Request, now: datetime) -> None:
    request.status = RequestStatus.APPROVED
    request.completed_at = now
    if request.template is not None and request.template.is_vacation_request:
        _best_effort("vacation ledger update", _apply_vacation_days, request)
        _best_effort("vacation schedule creation", vacation_schedule_service.create_from_approved_request, request)
    _best_effort(
        "submitter notification",
        NotificationService.notify_submitter,
        request,
        f"Request {request.request_number} has been fully approved.",
        NotificationType.REQUEST_APPROVED,
    )


# ── Submission ───────────────────────────────────────────────────────────────


def validate_submission(template_id: int, submitter_id: int, form_data) -> None:
    """Pre-submission balance check for vacation templates.

    ``submit_request`` trusts the caller to have run this.
    """
    template = db.session.get(RequestTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="RequestTemplate", resource_id=template_id)
    if not template.is_vacation_request:
        return
    submitter = _get_user(submitter_id)
    try:
        form = parse_form_data(form_data)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"form_data": "must be a JSON object"}) from exc
    fields = _vacation_fields(form)
    vacation_ledger.validate_leave_request(submitter, fields.leave_type, fields.start_date, fields.end_date)


def submit_request(
    template_id: int,
    submitter_id: int,
    form_data,
    priority: str = DEFAULT_PRIORITY,
    title: str | None = None,
) -> Request:
    """Create a request and its approval chain. Commits.

    Raises:
        NotFoundError: unknown template or submitter.
        ValidationError: bad priority, form data, or missing leave fields.
        RoutingError: a step's approver cannot be resolved.
        ConflictError: the generated request number is already taken.
    """
    template = db.session.get(RequestTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="RequestTemplate", resource_id=template_id)
    submitter = _get_user(submitter_id)

    if priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority {priority!r}", details={"priority": f"one of {list(PRIORITIES)}"})
    try:
        form = parse_form_data(form_data)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"form_data": "must be a JSON object"}) from exc

    leave_type = None
    if template.is_vacation_request:
        leave_type = _vacation_fields(form).leave_type

    # Resolve every approver before anything is added to the session
    routed: list[tuple] = []
    if template.requires_approval:
        for step_template in sorted(template.step_templates, key=lambda st: st.step_order):
            try:
                spec = step_template.approver_spec
            except ValueError as exc:
                raise RoutingError(step_template.step_order, step_template.approver_type, str(exc)) from exc
            approver_id = resolve_approver(spec, submitter)
            if approver_id is None:
                raise RoutingError(step_template.step_order, step_template.approver_type)
            routed.append((step_template, approver_id))

    now = _utcnow()
    request = Request(
        request_number=_next_request_number(now),
        template_id=template.id,
        submitter_id=submitter.id,
        title=title or template.name,
        priority=priority,
        form_data=json.dumps(form, ensure_ascii=False, default=str),
        leave_type=leave_type,
        submitted_at=now,
    )

    if not routed:
        request.status = RequestStatus.APPROVED
        request.completed_at = now
        db.session.add(request)
        _flush_new_request(request)
        db.session.commit()
        logger.info("Request %s auto-approved (no approval required)", request.request_number,
                    extra={"request_id": request.id, "user_id": submitter.id})
        return request

    for index, (step_template, approver_id) in enumerate(routed):
        passing_score = step_template.passing_score
        if passing_score is None:
            passing_score = template.passing_score
        request.approval_steps.append(ApprovalStep(
            step_template_id=step_template.id,
            step_order=step_template.step_order,
            approver_id=approver_id,
            status=StepStatus.IN_REVIEW if index == 0 else StepStatus.PENDING,
            started_at=now if index == 0 else None,
            requires_quiz=bool(step_template.requires_quiz),
            passing_score=passing_score,
        ))
    request.status = RequestStatus.IN_REVIEW
    db.session.add(request)
    _flush_new_request(request)

    first = request.approval_steps[0]
    _best_effort("approver notification", NotificationService.notify_approver, first.approver_id, request)
    db.session.commit()

    logger.info(
        "Request %s submitted with %d step(s)", request.request_number, len(routed),
        extra={"request_id": request.id, "user_id": submitter.id, "approver_id": first.approver_id},
    )
    return request


# ── Single-step decisions ────────────────────────────────────────────────────


def approve_step(request_id: int, step_id: int, approver_id: int, comment: str | None = None) -> dict:
    """Approve one step and advance the request. Commits.

    Raises:
        NotFoundError, ForbiddenError, InvalidStateError.
        QuizRequiredError: the step's quiz is not passed; the step is now
            ``requires_survey`` and the request ``awaiting_survey``.
    """
    request = _get_request(request_id)
    step = _get_step(request, step_id)
    if step.approver_id != approver_id:
        raise ForbiddenError("You are not the approver for this step", user_id=approver_id)
    if step.status != StepStatus.IN_REVIEW:
        raise InvalidStateError(f"Step is not in review status (current: {step.status})",
                                current_status=step.status)

    if step.requires_quiz and step.quiz_passed is not True:
        step.status = StepStatus.REQUIRES_SURVEY
        request.status = RequestStatus.AWAITING_SURVEY
        db.session.commit()
        logger.info(
            "Approval blocked: quiz not passed", extra={"request_id": request.id, "step_id": step.id},
        )
        raise QuizRequiredError(step.id)

    now = _utcnow()
    step.status = StepStatus.APPROVED
    step.finished_at = now
    step.comment = comment
    if comment and comment.strip():
        _add_comment(request, approver_id, f"Step {step.step_order} approved: {comment.strip()}")

    next_step = _next_pending_step(request)
    if next_step is not None:
        _start_step(request, next_step, now)
    else:
        _complete_request(request, now)

    db.session.commit()

    fully_approved = request.status == RequestStatus.APPROVED
    logger.info(
        "Step %s approved%s", step.id, " (request complete)" if fully_approved else "",
        extra={"request_id": request.id, "step_id": step.id, "approver_id": approver_id},
    )
    return {
        "message": "Request fully approved" if fully_approved else "Step approved, moved to next approver",
        "request_status": request.status,
        "next_step_id": next_step.id if next_step is not None else None,
        "next_approver_id": next_step.approver_id if next_step is not None else None,
    }


def reject_step(request_id: int, step_id: int, approver_id: int, reason: str) -> dict:
    """Reject one step; the request is rejected outright. Commits."""
    request = _get_request(request_id)
    step = _get_step(request, step_id)
    if step.approver_id != approver_id:
        raise ForbiddenError("You are not the approver for this step", user_id=approver_id)
    if step.status not in StepStatus.REJECTABLE:
        raise InvalidStateError(f"Step cannot be rejected (current: {step.status})",
                                current_status=step.status)
    if not (reason or "").strip():
        raise ValidationError("Rejection reason is required", details={"reason": "required"})

    now = _utcnow()
    reason = reason.strip()
    step.status = StepStatus.REJECTED
    step.finished_at = now
    step.comment = reason
    request.status = RequestStatus.REJECTED
    request.completed_at = now
    _add_comment(request, approver_id, f"Step {step.step_order} rejected: {reason}")

    _best_effort(
        "submitter notification",
        NotificationService.notify_submitter,
        request,
        f"Request {request.request_number} was rejected. Reason: {reason}",
        NotificationType.REQUEST_REJECTED,
    )
    db.session.commit()

    logger.info("Step %s rejected", step.id,
                extra={"request_id": request.id, "step_id": step.id, "approver_id": approver_id})
    return {"message": "Request rejected", "request_status": request.status}


# ── Quiz ─────────────────────────────────────────────────────────────────────


def submit_quiz_answers(request_id: int, step_id: int, user_id: int, answers: Mapping[int, str]) -> QuizResult:
    """Grade the submitter's quiz for a step. One attempt only. Commits.

    ``answers`` maps question id to the selected option value.
    """
    request = _get_request(request_id)
    step = _get_step(request, step_id)
    if request.submitter_id != user_id:
        raise ForbiddenError("Only the request submitter can fill the quiz", user_id=user_id)
    if not step.requires_quiz:
        raise InvalidStateError("Quiz is not required for this step", current_status=step.status)

    step_template = step.step_template
    template_score = step_template.passing_score if step_template is not None else None
    required = quiz_grader.required_score(step.passing_score, template_score)

    if step.quiz_score is not None:
        passed = bool(step.quiz_passed)
        message = (
            "Quiz already completed and passed. The step can be approved."
            if passed else
            f"Quiz already completed. You scored {step.quiz_score}% which did not meet the required "
            "threshold. This step cannot be approved."
        )
        return QuizResult(score=step.quiz_score, passed=passed, required_score=required,
                          message=message, already_submitted=True)

    if step.status in (StepStatus.APPROVED, StepStatus.REJECTED):
        raise InvalidStateError(f"Step is already decided (current: {step.status})", current_status=step.status)
    questions = list(step_template.quiz_questions) if step_template is not None else []
    if not questions:
        raise InvalidStateError("Quiz questions not found for this step", current_status=step.status)

    grade = quiz_grader.grade(questions, answers, required)
    now = _utcnow()
    for answer in grade.answers:
        step.quiz_answers.append(QuizAnswer(
            question_id=answer.question_id,
            selected_answer=answer.selected_answer,
            is_correct=answer.is_correct,
            answered_at=now,
        ))
    step.quiz_score = grade.score
    step.quiz_passed = grade.passed

    if grade.passed:
        if step.status == StepStatus.REQUIRES_SURVEY:
            step.status = StepStatus.IN_REVIEW
        if request.status == RequestStatus.AWAITING_SURVEY:
            request.status = RequestStatus.IN_REVIEW
        if step.status == StepStatus.IN_REVIEW:
            _best_effort("approver notification", NotificationService.notify_approver, step.approver_id, request)
        message = "Quiz passed! The step can now be approved."
    else:
        if step.status == StepStatus.REQUIRES_SURVEY:
            step.status = StepStatus.SURVEY_FAILED
        message = f"Quiz failed. You scored {grade.score}% but need {required}% to pass."

    db.session.commit()
    logger.info(
        "Quiz graded: %d%% (required %d%%, passed=%s)", grade.score, required, grade.passed,
        extra={"request_id": request.id, "step_id": step.id, "user_id": user_id},
    )
    return QuizResult(score=grade.score, passed=grade.passed, required_score=required, message=message)


# ── Bulk approval ────────────────────────────────────────────────────────────


def _bulk_advance(request: Request, now: datetime) -> None:
    """Start the next pending step, or complete the request. No routing, no ledger.

    The request status is not checked: a skip_validation run on a step of a
    rejected request starts its next pending step and puts it back in review.
    """
    if any(s.status in (StepStatus.IN_REVIEW, StepStatus.REQUIRES_SURVEY, StepStatus.SURVEY_FAILED)
           for s in request.approval_steps):
        return
    next_step = _next_pending_step(request)
    if next_step is not None:
        next_step.status = StepStatus.IN_REVIEW
        next_step.started_at = now
        request.status = RequestStatus.IN_REVIEW
    else:
        request.status = RequestStatus.APPROVED
        request.completed_at = now


def _bulk_approve_one(step_id: int, approver: User, comment: str | None, skip_validation: bool) -> str:
    step = db.session.get(ApprovalStep, step_id)
    if step is None:
        raise _BulkItemRejected("Approval step not found")
    request = step.request
    if request is None:
        raise _BulkItemRejected("Associated request not found")
    title = _request_title(request)

    if not skip_validation:
        if not substitute_router.can_act_for(approver.id, step.approver_id):
            raise _BulkItemRejected("User not authorized to approve this step", title)
        if step.status != StepStatus.IN_REVIEW:
            raise _BulkItemRejected(f"Step is not in review status (current: {step.status})", title)
        if step.requires_quiz and step.quiz_passed is not True:
            raise _BulkItemRejected("Quiz must be completed before approval", title)

    now = _utcnow()
    note = f"Bulk approved: {comment}" if comment else "Bulk approved"
    if step.requires_quiz and step.quiz_score is not None and step.quiz_passed is False:
        note += f"\n\n[OVERRIDE] Approved despite quiz failure (scored {step.quiz_score}%)"
    step.status = StepStatus.APPROVED
    step.finished_at = now
    step.comment = note
    _bulk_advance(request, now)

    _best_effort(
        "submitter notification",
        NotificationService.notify_submitter,
        request,
        f"Your request '{title}' has been approved (bulk approval)",
        NotificationType.REQUEST_APPROVED,
    )
    return title


def bulk_approve(
    step_ids: list[int],
    approver_id: int,
    comment: str | None = None,
    skip_validation: bool = False,
) -> BulkApprovalResult:
    """Approve many steps in one transaction with per-item isolation.

    Each item runs in a savepoint; a failing item is recorded and skipped.
    The batch commits when at least one item succeeded.
    """
    result = BulkApprovalResult()
    approver = db.session.get(User, approver_id)
    if approver is None:
        result.message = "Approver not found"
        return result

    logger.info("Bulk approval of %d step(s) by user %s", len(step_ids), approver_id,
                extra={"approver_id": approver_id})
    approved_ids: list[int] = []
    try:
        for step_id in step_ids:
            try:
                with db.session.begin_nested():
                    _bulk_approve_one(step_id, approver, comment, skip_validation)
                result.success_count += 1
                approved_ids.append(step_id)
            except _BulkItemRejected as exc:
                result.fail_count += 1
                result.errors.append(BulkApprovalError(step_id, exc.request_title, str(exc)))
            except Exception as exc:
                logger.exception("Bulk approval item failed", extra={"step_id": step_id, "approver_id": approver_id})
                result.fail_count += 1
                result.errors.append(BulkApprovalError(step_id, "Unknown", str(exc)))

        if result.success_count == 0:
            db.session.rollback()
            result.message = "Bulk approval failed: No approvals were processed successfully"
            return result

        write_audit(
            entity_type="approval_step",
            entity_id=",".join(str(i) for i in approved_ids),
            action="request.bulk_approve",
            actor=approver.email,
            actor_user_id=approver.id,
            diff={
                "success_count": result.success_count,
                "fail_count": result.fail_count,
                "skip_validation": skip_validation,
                "comment": comment,
            },
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Bulk approval transaction failed", extra={"approver_id": approver_id})
        return BulkApprovalResult(
            success=False,
            message="Bulk approval failed due to transaction error",
            success_count=0,
            fail_count=len(step_ids),
        )

    result.success = True
    result.message = (
        f"Bulk approval completed: {result.success_count} successful, {result.fail_count} failed"
    )
    logger.info(result.message, extra={"approver_id": approver_id})
    return result


# ── Comments & read models ───────────────────────────────────────────────────


def add_comment(request_id: int, user_id: int, text: str) -> RequestComment:
    request = _get_request(request_id)
    _get_user(user_id)
    if not (text or "").strip():
        raise ValidationError("Comment text is required", details={"text": "required"})
    comment = _add_comment(request, user_id, text.strip())
    db.session.commit()
    return comment


def get_request(request_id: int) -> Request:
    return _get_request(request_id)


def list_my_requests(user_id: int) -> list[Request]:
    _get_user(user_id)
    stmt = select(Request).where(Request.submitter_id == user_id).order_by(Request.id.desc())
    return list(db.session.execute(stmt).scalars())


def list_pending_approvals(user_id: int) -> list[ApprovalStep]:
    """Steps waiting on ``user_id``: in review, or blocked on the submitter's quiz."""
    _get_user(user_id)
    stmt = (
        select(ApprovalStep)
        .join(Request, ApprovalStep.request_id == Request.id)
        .where(
            ApprovalStep.approver_id == user_id,
            ApprovalStep.status.in_(sorted(StepStatus.REJECTABLE)),
            Request.status.notin_(sorted(RequestStatus.TERMINAL)),
        )
        .order_by(Request.submitted_at, ApprovalStep.id)
    )
    return list(db.session.execute(stmt).scalars())

