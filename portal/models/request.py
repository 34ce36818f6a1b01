"""
Internal Portal: Request Approval Workflow
Request domain model.

Models:
    - Request: one submission of a template
    - ApprovalStep: one stage of a request's approval chain, bound to a user
    - QuizAnswer: the submitter's selected option for one quiz question
    - RequestComment: free-text trail on a request

Requests and steps are never deleted; the workflow engine is the only writer.
"""

import json
from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

class RequestStatus:
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    AWAITING_SURVEY = "awaiting_survey"

    ALL = frozenset({DRAFT, IN_REVIEW, APPROVED, REJECTED, AWAITING_SURVEY})
    TERMINAL = frozenset({APPROVED, REJECTED})


class StepStatus:
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUIRES_SURVEY = "requires_survey"
    SURVEY_FAILED = "survey_failed"

    ALL = frozenset({PENDING, IN_REVIEW, APPROVED, REJECTED, REQUIRES_SURVEY, SURVEY_FAILED})
    # A blocked step can still be turned down by its approver
    REJECTABLE = frozenset({IN_REVIEW, REQUIRES_SURVEY, SURVEY_FAILED})


PRIORITIES = ("Low", "Standard", "High", "Urgent")
DEFAULT_PRIORITY = "Standard"


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class Request(db.Model):
    """
    One submission of a request template.

    ``status`` is derived from the step list by the engine; see
    ``portal.services.workflow_engine``.
    """

    __tablename__ = "requests"
    __table_args__ = (
        db.Index("idx_requests_submitter_status", "submitter_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_number = db.Column(db.String(30), nullable=False, unique=True, comment="REQ-{year}-{counter:04d}")
    template_id = db.Column(
        db.Integer, db.ForeignKey("request_templates.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    submitter_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), default="")
    priority = db.Column(db.String(20), nullable=False, default=DEFAULT_PRIORITY)
    form_data = db.Column(db.Text, nullable=False, default="{}", comment="Serialized key/value map")
    leave_type = db.Column(db.String(30), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=RequestStatus.DRAFT, index=True)

    submitted_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    template = db.relationship("RequestTemplate")
    submitter = db.relationship("User", foreign_keys=[submitter_id])
    approval_steps = db.relationship(
        "ApprovalStep",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ApprovalStep.step_order",
    )
    comments = db.relationship(
        "RequestComment",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestComment.id",
    )

    @property
    def form_values(self) -> dict:
        try:
            data = json.loads(self.form_data or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}
        return data if isinstance(data, dict) else {}

    @property
    def current_step(self):
        for step in self.approval_steps:
            if step.status in (StepStatus.IN_REVIEW, StepStatus.REQUIRES_SURVEY, StepStatus.SURVEY_FAILED):
                return step
        return None

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "request_number": self.request_number,
            "template_id": self.template_id,
            "template_name": self.template.name if self.template else None,
            "submitter_id": self.submitter_id,
            "title": self.title,
            "priority": self.priority,
            "form_data": self.form_values,
            "leave_type": self.leave_type,
            "status": self.status,
            "submitted_at": _iso(self.submitted_at),
            "completed_at": _iso(self.completed_at),
        }
        if include_steps:
            d["approval_steps"] = [s.to_dict() for s in self.approval_steps]
            d["comments"] = [c.to_dict() for c in self.comments]
        return d

    def __repr__(self):
        return f"<Request {self.id}: {self.request_number} [{self.status}]>"


class ApprovalStep(db.Model):
    """
    A step template bound to a request and a concrete approver.

    ``approver_id`` may be overwritten by substitute routing when the step is
    started. ``quiz_score`` / ``quiz_passed`` are written at most once.
    """

    __tablename__ = "approval_steps"
    __table_args__ = (
        db.Index("idx_approval_steps_approver_status", "approver_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_template_id = db.Column(
        db.Integer, db.ForeignKey("approval_step_templates.id", ondelete="SET NULL"), nullable=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=StepStatus.PENDING)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comment = db.Column(db.Text, nullable=True)

    requires_quiz = db.Column(db.Boolean, nullable=False, default=False)
    passing_score = db.Column(db.Integer, nullable=True)
    quiz_score = db.Column(db.Integer, nullable=True)
    quiz_passed = db.Column(db.Boolean, nullable=True)

    request = db.relationship("Request", back_populates="approval_steps")
    approver = db.relationship("User", foreign_keys=[approver_id])
    step_template = db.relationship("ApprovalStepTemplate")
    quiz_answers = db.relationship(
        "QuizAnswer", back_populates="approval_step", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "step_template_id": self.step_template_id,
            "step_order": self.step_order,
            "approver_id": self.approver_id,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "comment": self.comment,
            "requires_quiz": self.requires_quiz,
            "passing_score": self.passing_score,
            "quiz_score": self.quiz_score,
            "quiz_passed": self.quiz_passed,
        }

    def __repr__(self):
        return f"<ApprovalStep {self.id}: request={self.request_id} #{self.step_order} [{self.status}]>"


class QuizAnswer(db.Model):
    """One answer per (step, question); created once, never updated."""

    __tablename__ = "quiz_answers"
    __table_args__ = (
        db.UniqueConstraint("approval_step_id", "question_id", name="uq_quiz_answer_step_question"),
    )

    id = db.Column(db.Integer, primary_key=True)
    approval_step_id = db.Column(
        db.Integer, db.ForeignKey("approval_steps.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    question_id = db.Column(db.Integer, db.ForeignKey("quiz_questions.id", ondelete="CASCADE"), nullable=False)
    selected_answer = db.Column(db.String(200), nullable=False)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)
    answered_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    approval_step = db.relationship("ApprovalStep", back_populates="quiz_answers")

    def to_dict(self):
        return {
            "id": self.id,
            "approval_step_id": self.approval_step_id,
            "question_id": self.question_id,
            "selected_answer": self.selected_answer,
            "is_correct": self.is_correct,
            "answered_at": _iso(self.answered_at),
        }

    def __repr__(self):
        return f"<QuizAnswer {self.id}: step={self.approval_step_id} q={self.question_id}>"


class RequestComment(db.Model):
    __tablename__ = "request_comments"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    text = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    request = db.relationship("Request", back_populates="comments")
    user = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "text": self.text,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<RequestComment {self.id}: request={self.request_id}>"
