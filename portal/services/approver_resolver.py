"""
Approver resolution ("routing").

Turns the abstract approver spec of a step template into a concrete user
for one submitter. Resolution happens once, at submission; the result is
stored on the approval step.

Rules:
    DirectSupervisor       submitter's supervisor, else the head of the
                           submitter's department (never the submitter)
    SpecificUser(id)       that user whenever the row exists, active or not
    SpecificDepartment     head or director of the department, per role
    UserGroup(id)          active member with the lowest user id
    Submitter              the submitter
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from portal.models import db
from portal.models.approver_spec import (
    ApproverSpec,
    DepartmentRole,
    DirectSupervisor,
    SpecificDepartment,
    SpecificUser,
    Submitter,
    UserGroup,
)
from portal.models.org import Department, User, user_role_groups

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _existing_user_id(user_id: int | None) -> int | None:
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    return user.id if user is not None else None


def _active_user_id(user_id: int | None) -> int | None:
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user.id


def _department_role_holder(department_id: int | None, role: str) -> int | None:
    if department_id is None:
        return None
    department = db.session.get(Department, department_id)
    if department is None:
        return None
    holder_id = department.director_id if role == DepartmentRole.DIRECTOR else department.head_of_department_id
    return _active_user_id(holder_id)


def _resolve_direct_supervisor(submitter: User) -> int | None:
    supervisor_id = _active_user_id(submitter.supervisor_id)
    if supervisor_id is not None and supervisor_id != submitter.id:
        return supervisor_id
    head_id = _department_role_holder(submitter.department_id, DepartmentRole.HEAD)
    if head_id is not None and head_id != submitter.id:
        return head_id
    return None


def _first_active_group_member(group_id: int) -> int | None:
    stmt = (
        select(User.id)
        .join(user_role_groups, user_role_groups.c.user_id == User.id)
        .where(user_role_groups.c.role_group_id == group_id, User.is_active.is_(True))
        .order_by(User.id)
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


# ── Public API ─────────────────────────────────────────────────────────────────


def resolve_approver(spec: ApproverSpec, submitter: User) -> int | None:
    """Return the approver's user id for ``submitter``, or None if nobody qualifies."""
    if isinstance(spec, DirectSupervisor):
        approver_id = _resolve_direct_supervisor(submitter)
    elif isinstance(spec, SpecificUser):
        approver_id = _existing_user_id(spec.user_id)
    elif isinstance(spec, SpecificDepartment):
        approver_id = _department_role_holder(spec.department_id, spec.role)
    elif isinstance(spec, UserGroup):
        approver_id = _first_active_group_member(spec.group_id)
    elif isinstance(spec, Submitter):
        approver_id = submitter.id
    else:
        raise TypeError(f"Unsupported approver spec: {spec!r}")

    if approver_id is None:
        logger.warning(
            "No approver resolved for %s (submitter=%s)", spec, submitter.id,
            extra={"user_id": submitter.id},
        )
    return approver_id
