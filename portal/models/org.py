"""
Internal Portal: Request Approval Workflow
Organisation domain model.

Models:
    - User: portal user with supervisor link and vacation balance counters
    - Department: org unit with head-of-department and director
    - RoleGroup: named group of users, used for UserGroup routing

Users and departments reference each other, so the department-side foreign
keys are created after both tables exist (``use_alter``).
"""

from datetime import datetime, timezone

from portal.models import db


DEFAULT_ANNUAL_VACATION_DAYS = 26


user_role_groups = db.Table(
    "user_role_groups",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    db.Column("role_group_id", db.Integer, db.ForeignKey("role_groups.id", ondelete="CASCADE"), primary_key=True),
)


class User(db.Model):
    """
    Portal user.

    The vacation counters are owned by the vacation ledger; nothing else
    writes them.
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)

    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    supervisor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    # Vacation balance
    annual_vacation_days = db.Column(db.Integer, nullable=False, default=DEFAULT_ANNUAL_VACATION_DAYS)
    vacation_days_used = db.Column(db.Integer, nullable=False, default=0)
    on_demand_vacation_days_used = db.Column(db.Integer, nullable=False, default=0)
    circumstantial_leave_days_used = db.Column(db.Integer, nullable=False, default=0)
    carried_over_vacation_days = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    department = db.relationship("Department", foreign_keys=[department_id], back_populates="members")
    supervisor = db.relationship("User", remote_side=[id], foreign_keys=[supervisor_id])
    role_groups = db.relationship("RoleGroup", secondary=user_role_groups, back_populates="members")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def total_available_vacation_days(self) -> int:
        return (self.annual_vacation_days or 0) + (self.carried_over_vacation_days or 0) - (self.vacation_days_used or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "email": self.email,
            "is_active": self.is_active,
            "is_admin": self.is_admin,
            "department_id": self.department_id,
            "supervisor_id": self.supervisor_id,
            "annual_vacation_days": self.annual_vacation_days,
            "vacation_days_used": self.vacation_days_used,
            "on_demand_vacation_days_used": self.on_demand_vacation_days_used,
            "circumstantial_leave_days_used": self.circumstantial_leave_days_used,
            "carried_over_vacation_days": self.carried_over_vacation_days,
            "total_available_vacation_days": self.total_available_vacation_days,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


class Department(db.Model):
    """Org unit. Head and director are the targets of SpecificDepartment routing."""

    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    head_of_department_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL", use_alter=True, name="fk_departments_head_user"),
        nullable=True,
    )
    director_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL", use_alter=True, name="fk_departments_director_user"),
        nullable=True,
    )

    members = db.relationship("User", foreign_keys="User.department_id", back_populates="department")
    head_of_department = db.relationship("User", foreign_keys=[head_of_department_id], post_update=True)
    director = db.relationship("User", foreign_keys=[director_id], post_update=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "head_of_department_id": self.head_of_department_id,
            "director_id": self.director_id,
        }

    def __repr__(self):
        return f"<Department {self.id}: {self.name}>"


class RoleGroup(db.Model):
    """Named group of users (e.g. "HR", "Finance approvers")."""

    __tablename__ = "role_groups"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, default="")

    members = db.relationship("User", secondary=user_role_groups, back_populates="role_groups")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "member_ids": sorted(u.id for u in self.members),
        }

    def __repr__(self):
        return f"<RoleGroup {self.id}: {self.name}>"
