"""Request approval workflow blueprint.

JSON API over the workflow engine.

Endpoint groups:
  Requests        POST /api/v1/requests
                  GET  /api/v1/requests/<id>
                  GET  /api/v1/users/<uid>/requests
  Decisions       GET  /api/v1/users/<uid>/pending-approvals
                  POST /api/v1/requests/<id>/steps/<sid>/approve
                  POST /api/v1/requests/<id>/steps/<sid>/reject
                  POST /api/v1/requests/<id>/steps/<sid>/quiz
                  POST /api/v1/approvals/bulk
  Comments        POST /api/v1/requests/<id>/comments
  Delegations     POST /api/v1/delegations
                  DELETE /api/v1/delegations/<id>
                  GET  /api/v1/users/<uid>/delegations
  Vacations       POST /api/v1/vacations/<id>/cancel
  Notifications   GET  /api/v1/users/<uid>/notifications

The acting user is passed explicitly in the body. Request-shape errors are
400s raised here; the service layer owns business rules and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

import portal.services.workflow_engine as engine
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
from portal.models.org import User
from portal.services import delegation_service, vacation_schedule_service
from portal.services.notification import NotificationService
from portal.utils.errors import E, api_error
from portal.utils.helpers import parse_date_input, require_int

logger = logging.getLogger(__name__)

requests_bp = Blueprint("requests", __name__, url_prefix="/api/v1")

REJECTION_REASON_MIN_LENGTH = 10
COMMENT_MAX_LENGTH = 2000


# ── Error handlers ────────────────────────────────────────────────────────────


@requests_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@requests_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error))


@requests_bp.errorhandler(QuizRequiredError)
def _handle_quiz_required(error: QuizRequiredError):
    return api_error(E.QUIZ_REQUIRED, str(error), details={"step_id": error.step_id,
                                                           "current_status": error.current_status})


@requests_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    details = {"current_status": error.current_status} if error.current_status else None
    return api_error(E.CONFLICT_STATE, str(error), details=details)


@requests_bp.errorhandler(RoutingError)
def _handle_routing(error: RoutingError):
    return api_error(E.ROUTING, str(error), details={"step_order": error.step_order,
                                                     "approver_type": error.approver_type})


@requests_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@requests_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error))


@requests_bp.errorhandler(IntegrityError)
def _handle_integrity(error: IntegrityError):
    db.session.rollback()
    logger.warning("Integrity error in requests_bp: %s", error.orig)
    return api_error(E.CONFLICT_DUPLICATE, "Conflicting write, please retry")


@requests_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in requests_bp endpoint=%s", request.endpoint)
    db.session.rollback()
    return api_error(E.INTERNAL, "Internal server error")


# ── Body helpers ──────────────────────────────────────────────────────────────


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _parse_answers(raw) -> dict[int, str]:
    """Accept ``[{"question_id", "selected_answer"}]`` or ``{"<qid>": "<value>"}``."""
    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise ValueError("answers entries must be objects")
            items.append((entry.get("question_id"), entry.get("selected_answer")))
    else:
        raise ValueError("answers must be a list or an object")

    answers: dict[int, str] = {}
    for question_id, selected in items:
        try:
            qid = int(question_id)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid question_id {question_id!r}") from exc
        if not isinstance(selected, str) or not selected:
            raise ValueError(f"selected_answer for question {qid} must be a non-empty string")
        if qid in answers:
            raise ValueError(f"Duplicate answer for question {qid}")
        answers[qid] = selected
    return answers


# ═════════════════════════════════════════════════════════════════════════
# Requests
# ═════════════════════════════════════════════════════════════════════════


@requests_bp.route("/requests", methods=["POST"])
def submit_request():
    """Submit a request.

    Body: {template_id, submitter_id, form_data, priority?, title?}
    Returns: request dict with its approval steps (201).
    """
    data = _body()
    try:
        template_id = require_int(data, "template_id")
        submitter_id = require_int(data, "submitter_id")
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    form_data = data.get("form_data", {})
    if not isinstance(form_data, (dict, str)):
        return api_error(E.VALIDATION_INVALID, "form_data must be an object")
    priority = data.get("priority") or "Standard"
    title = (data.get("title") or "").strip() or None

    engine.validate_submission(template_id, submitter_id, form_data)
    req = engine.submit_request(template_id, submitter_id, form_data, priority=priority, title=title)
    return jsonify(req.to_dict()), 201


@requests_bp.route("/requests/<int:request_id>", methods=["GET"])
def get_request(request_id: int):
    return jsonify(engine.get_request(request_id).to_dict()), 200


@requests_bp.route("/users/<int:user_id>/requests", methods=["GET"])
def list_my_requests(user_id: int):
    items = engine.list_my_requests(user_id)
    return jsonify({"items": [r.to_dict(include_steps=False) for r in items], "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════


@requests_bp.route("/users/<int:user_id>/pending-approvals", methods=["GET"])
def list_pending_approvals(user_id: int):
    steps = engine.list_pending_approvals(user_id)
    items = [{"step": s.to_dict(), "request": s.request.to_dict(include_steps=False)} for s in steps]
    return jsonify({"items": items, "total": len(items)}), 200


@requests_bp.route("/requests/<int:request_id>/steps/<int:step_id>/approve", methods=["POST"])
def approve_step(request_id: int, step_id: int):
    """Body: {approver_id, comment?}"""
    data = _body()
    try:
        approver_id = require_int(data, "approver_id")
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    comment = (data.get("comment") or "").strip() or None
    if comment and len(comment) > COMMENT_MAX_LENGTH:
        return api_error(E.VALIDATION_INVALID, f"comment must be ≤ {COMMENT_MAX_LENGTH} characters")

    result = engine.approve_step(request_id, step_id, approver_id, comment)
    return jsonify(result), 200


@requests_bp.route("/requests/<int:request_id>/steps/<int:step_id>/reject", methods=["POST"])
def reject_step(request_id: int, step_id: int):
    """Body: {approver_id, reason}; reason of at least 10 characters."""
    data = _body()
    try:
        approver_id = require_int(data, "approver_id")
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    reason = (data.get("reason") or "").strip()
    if len(reason) < REJECTION_REASON_MIN_LENGTH:
        return api_error(
            E.VALIDATION_INVALID,
            f"reason must be at least {REJECTION_REASON_MIN_LENGTH} characters",
        )

    result = engine.reject_step(request_id, step_id, approver_id, reason)
    return jsonify(result), 200


@requests_bp.route("/requests/<int:request_id>/steps/<int:step_id>/quiz", methods=["POST"])
def submit_quiz(request_id: int, step_id: int):
    """Body: {user_id, answers: [{question_id, selected_answer}]}"""
    data = _body()
    try:
        user_id = require_int(data, "user_id")
        answers = _parse_answers(data.get("answers"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))

    result = engine.submit_quiz_answers(request_id, step_id, user_id, answers)
    return jsonify(result.to_dict()), 200


@requests_bp.route("/approvals/bulk", methods=["POST"])
def bulk_approve():
    """Body: {approver_id, step_ids: [int], comment?, skip_validation?}

    ``skip_validation`` is restricted to administrators.
    Returns 200 when at least one step was approved, else 422; the body
    always carries the per-item result.
    """
    data = _body()
    try:
        approver_id = require_int(data, "approver_id")
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    step_ids = data.get("step_ids")
    if not isinstance(step_ids, list) or not step_ids:
        return api_error(E.VALIDATION_REQUIRED, "step_ids must be a non-empty list")
    if not all(isinstance(i, int) and not isinstance(i, bool) for i in step_ids):
        return api_error(E.VALIDATION_INVALID, "step_ids must contain integers")
    skip_validation = bool(data.get("skip_validation", False))
    if skip_validation:
        actor = db.session.get(User, approver_id)
        if actor is None or not actor.is_admin:
            return api_error(E.FORBIDDEN, "skip_validation is restricted to administrators")

    result = engine.bulk_approve(step_ids, approver_id, data.get("comment"), skip_validation)
    return jsonify(result.to_dict()), 200 if result.success else 422


# ═════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════


@requests_bp.route("/requests/<int:request_id>/comments", methods=["POST"])
def add_comment(request_id: int):
    """Body: {user_id, text}"""
    data = _body()
    try:
        user_id = require_int(data, "user_id")
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    text = (data.get("text") or "").strip()
    if not text:
        return api_error(E.VALIDATION_REQUIRED, "text is required")
    if len(text) > COMMENT_MAX_LENGTH:
        return api_error(E.VALIDATION_INVALID, f"text must be ≤ {COMMENT_MAX_LENGTH} characters")

    comment = engine.add_comment(request_id, user_id, text)
    return jsonify(comment.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════
# Delegations
# ═════════════════════════════════════════════════════════════════════════


@requests_bp.route("/delegations", methods=["POST"])
def create_delegation():
    """Body: {from_user_id, to_user_id, start_date, end_date?, reason?}"""
    data = _body()
    try:
        from_user_id = require_int(data, "from_user_id")
        to_user_id = require_int(data, "to_user_id")
        start_date = parse_date_input(data.get("start_date"))
        end_date = parse_date_input(data.get("end_date"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))
    if start_date is None:
        return api_error(E.VALIDATION_REQUIRED, "start_date is required")

    delegation = delegation_service.create_delegation(
        from_user_id, to_user_id, start_date, end_date, (data.get("reason") or "").strip() or None,
    )
    return jsonify(delegation.to_dict()), 201


@requests_bp.route("/delegations/<int:delegation_id>", methods=["DELETE"])
def revoke_delegation(delegation_id: int):
    revoked_by_id = request.args.get("revoked_by_id", type=int)
    delegation = delegation_service.revoke_delegation(delegation_id, revoked_by_id)
    return jsonify(delegation.to_dict()), 200


@requests_bp.route("/users/<int:user_id>/delegations", methods=["GET"])
def list_delegations(user_id: int):
    items = delegation_service.list_delegations(user_id)
    return jsonify({"items": [d.to_dict() for d in items], "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Vacations & notifications
# ═════════════════════════════════════════════════════════════════════════


@requests_bp.route("/vacations/<int:schedule_id>/cancel", methods=["POST"])
def cancel_vacation(schedule_id: int):
    """Body: {cancelled_by_id, reason}"""
    data = _body()
    try:
        cancelled_by_id = require_int(data, "cancelled_by_id")
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    reason = (data.get("reason") or "").strip()
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "reason is required")

    schedule = vacation_schedule_service.cancel_vacation(schedule_id, cancelled_by_id, reason)
    return jsonify(schedule.to_dict()), 200


@requests_bp.route("/users/<int:user_id>/notifications", methods=["GET"])
def list_notifications(user_id: int):
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    items = NotificationService.list_for_user(user_id, unread_only=unread_only)
    return jsonify({"items": [n.to_dict() for n in items], "total": len(items)}), 200
