"""
Shared pytest fixtures for the request approval workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / org: users, a department and a role group
    - make_template / quiz_step: request templates and their approval chains
    - vacation_form: form data for a leave request
"""

import itertools
from types import SimpleNamespace

import pytest

import portal as _app_module
from portal import create_app
from portal.models import db as _db
from portal.models.approver_spec import ApproverSpec
from portal.models.org import Department, RoleGroup, User
from portal.models.request_template import ApprovalStepTemplate, QuizQuestion, RequestTemplate

# Tables are dropped and recreated per test; users <-> departments form an FK
# cycle that SQLite cannot drop with enforcement on.
_app_module._SQLITE_FK_ENFORCEMENT = False


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Organisation ─────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Factory: ``make_user("Ann", "Smith", supervisor_id=...)`` -> flushed User."""
    counter = itertools.count(1)

    def _make(first_name="Test", last_name=None, **kwargs):
        n = next(counter)
        user = User(
            first_name=first_name,
            last_name=last_name or f"User{n}",
            email=kwargs.pop("email", f"{first_name.lower()}.{n}@example.com"),
            **kwargs,
        )
        _db.session.add(user)
        _db.session.flush()
        return user

    return _make


@pytest.fixture()
def org(make_user):
    """
    One department with a head and a director, a supervisor with two
    reports, a two-member role group, an outsider and an admin. Committed.
    """
    dept = Department(name="Engineering")
    _db.session.add(dept)
    _db.session.flush()

    head = make_user("Helena", "Head", department_id=dept.id)
    director = make_user("Dario", "Director", department_id=dept.id)
    supervisor = make_user("Sam", "Supervisor", department_id=dept.id)
    employee = make_user("Eve", "Employee", department_id=dept.id, supervisor_id=supervisor.id)
    colleague = make_user("Carl", "Colleague", department_id=dept.id, supervisor_id=supervisor.id)
    hr_first = make_user("Hana", "Hr")
    hr_second = make_user("Hugo", "Hr")
    outsider = make_user("Olga", "Outsider")
    admin = make_user("Ada", "Admin", is_admin=True)

    dept.head_of_department_id = head.id
    dept.director_id = director.id

    hr = RoleGroup(name="HR")
    hr.members.extend([hr_second, hr_first])
    _db.session.add(hr)
    _db.session.commit()

    return SimpleNamespace(
        department=dept,
        head=head,
        director=director,
        supervisor=supervisor,
        employee=employee,
        colleague=colleague,
        hr_group=hr,
        hr_first=hr_first,
        hr_second=hr_second,
        outsider=outsider,
        admin=admin,
    )


# ── Templates ────────────────────────────────────────────────────────────


@pytest.fixture()
def quiz_step():
    """Factory for a quiz-gated step template.

    ``questions`` is a list of ``(text, correct_value, wrong_value)``.
    """

    def _make(spec: ApproverSpec, questions=None, passing_score=None, name="Quiz step"):
        step = ApprovalStepTemplate(approver_spec=spec, name=name, requires_quiz=True,
                                    passing_score=passing_score)
        questions = questions if questions is not None else [
            ("Is the request within policy?", "yes", "no"),
            ("Was the handover prepared?", "yes", "no"),
            ("Is the budget approved?", "yes", "no"),
        ]
        for i, (text, correct, wrong) in enumerate(questions):
            step.quiz_questions.append(QuizQuestion(
                question_text=text,
                sort_order=i,
                options=[
                    {"value": correct, "label": correct.title(), "is_correct": True},
                    {"value": wrong, "label": wrong.title(), "is_correct": False},
                ],
            ))
        return step

    return _make


@pytest.fixture()
def make_template():
    """Factory: ``make_template(spec_or_step, ..., is_vacation_request=True)``.

    Positional items are approver specs or prebuilt step templates; they
    get step orders 1..n in the order given. Committed.
    """

    def _make(*steps, name="Equipment request", is_vacation_request=False,
              requires_approval=True, passing_score=None):
        template = RequestTemplate(
            name=name,
            is_vacation_request=is_vacation_request,
            requires_approval=requires_approval,
            passing_score=passing_score,
        )
        for order, item in enumerate(steps, start=1):
            if isinstance(item, ApprovalStepTemplate):
                item.step_order = order
                step = item
            else:
                step = ApprovalStepTemplate(approver_spec=item, step_order=order, name=f"Step {order}")
            template.step_templates.append(step)
        _db.session.add(template)
        _db.session.commit()
        return template

    return _make


@pytest.fixture()
def vacation_form():
    """Factory for leave-request form data. Defaults to Mon 2 to Fri 6 Nov 2026 (5 business days)."""

    def _make(leave_type="Annual", start="2026-11-02", end="2026-11-06", substitute_id=None, **extra):
        form = {"leaveType": leave_type, "startDate": start, "endDate": end}
        if substitute_id is not None:
            form["substituteUserId"] = substitute_id
        form.update(extra)
        return form

    return _make
