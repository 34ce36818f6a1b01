"""
Internal Portal: Request Approval Workflow
Request template (blueprint) domain model.

Models:
    - RequestTemplate: a form type with its ordered approval chain
    - ApprovalStepTemplate: one stage of the chain with its approver spec
    - QuizQuestion: multiple-choice question gating a step

Templates are maintained by administrators and read-only to the workflow
engine.
"""

import json
from datetime import datetime, timezone

from portal.models import db
from portal.models.approver_spec import ApproverSpec, spec_from_columns, spec_to_columns, spec_to_dict


class RequestTemplate(db.Model):
    """Form type. ``step_templates`` is ordered by ``step_order``."""

    __tablename__ = "request_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    requires_approval = db.Column(db.Boolean, nullable=False, default=True)
    is_vacation_request = db.Column(db.Boolean, nullable=False, default=False)
    passing_score = db.Column(db.Integer, nullable=True, comment="Template-wide quiz default")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    step_templates = db.relationship(
        "ApprovalStepTemplate",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="ApprovalStepTemplate.step_order",
    )

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "requires_approval": self.requires_approval,
            "is_vacation_request": self.is_vacation_request,
            "passing_score": self.passing_score,
            "is_active": self.is_active,
        }
        if include_steps:
            d["step_templates"] = [s.to_dict() for s in self.step_templates]
        return d

    def __repr__(self):
        return f"<RequestTemplate {self.id}: {self.name}>"


class ApprovalStepTemplate(db.Model):
    """
    One stage of a template's approval chain.

    The approver is stored as flat columns and exposed as a tagged
    ``approver_spec``; assign a spec object rather than the columns.
    """

    __tablename__ = "approval_step_templates"
    __table_args__ = (
        db.UniqueConstraint("template_id", "step_order", name="uq_step_template_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("request_templates.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), default="")

    approver_type = db.Column(db.String(30), nullable=False)
    specific_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    specific_department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True,
    )
    department_role = db.Column(db.String(20), nullable=True, comment="head | director")
    approver_group_id = db.Column(db.Integer, db.ForeignKey("role_groups.id", ondelete="SET NULL"), nullable=True)

    requires_quiz = db.Column(db.Boolean, nullable=False, default=False)
    passing_score = db.Column(db.Integer, nullable=True)

    template = db.relationship("RequestTemplate", back_populates="step_templates")
    quiz_questions = db.relationship(
        "QuizQuestion",
        back_populates="step_template",
        cascade="all, delete-orphan",
        order_by="QuizQuestion.sort_order",
    )

    def __init__(self, approver_spec: ApproverSpec | None = None, **kwargs):
        super().__init__(**kwargs)
        if approver_spec is not None:
            self.approver_spec = approver_spec

    @property
    def approver_spec(self) -> ApproverSpec:
        return spec_from_columns(
            self.approver_type,
            specific_user_id=self.specific_user_id,
            specific_department_id=self.specific_department_id,
            department_role=self.department_role,
            approver_group_id=self.approver_group_id,
        )

    @approver_spec.setter
    def approver_spec(self, spec: ApproverSpec) -> None:
        for column, value in spec_to_columns(spec).items():
            setattr(self, column, value)

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "step_order": self.step_order,
            "name": self.name,
            "approver": spec_to_dict(self.approver_spec),
            "requires_quiz": self.requires_quiz,
            "passing_score": self.passing_score,
            "question_count": len(self.quiz_questions),
        }

    def __repr__(self):
        return f"<ApprovalStepTemplate {self.id}: #{self.step_order} {self.approver_type}>"


class QuizQuestion(db.Model):
    """
    Multiple-choice question.

    ``options_json`` holds a list of ``{"value", "label", "is_correct"}``
    with exactly one correct option.
    """

    __tablename__ = "quiz_questions"

    id = db.Column(db.Integer, primary_key=True)
    step_template_id = db.Column(
        db.Integer, db.ForeignKey("approval_step_templates.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    question_text = db.Column(db.Text, nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    options_json = db.Column(db.Text, nullable=False, default="[]")

    step_template = db.relationship("ApprovalStepTemplate", back_populates="quiz_questions")

    @property
    def options(self) -> list[dict]:
        try:
            return json.loads(self.options_json or "[]")
        except (json.JSONDecodeError, TypeError):
            return []

    @options.setter
    def options(self, value: list[dict]) -> None:
        correct = [o for o in value if o.get("is_correct")]
        if len(correct) != 1:
            raise ValueError(f"Quiz question needs exactly one correct option, got {len(correct)}")
        self.options_json = json.dumps(value)

    @property
    def correct_value(self) -> str | None:
        for option in self.options:
            if option.get("is_correct"):
                return option.get("value")
        return None

    def to_dict(self, include_answer=False):
        options = self.options
        if not include_answer:
            options = [{"value": o.get("value"), "label": o.get("label")} for o in options]
        return {
            "id": self.id,
            "step_template_id": self.step_template_id,
            "question_text": self.question_text,
            "sort_order": self.sort_order,
            "options": options,
        }

    def __repr__(self):
        return f"<QuizQuestion {self.id}: {self.question_text[:40]}>"
