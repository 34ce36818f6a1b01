"""Approval delegations: creation, revocation and effective-window lookups."""
from datetime import date, timedelta

import pytest

from portal.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from portal.models import db
from portal.models.audit import AuditLog
from portal.services import delegation_service, substitute_router

TODAY = date.today()


class TestCreateDelegation:
    def test_creates_active_delegation(self, org):
        delegation = delegation_service.create_delegation(
            org.head.id, org.director.id, TODAY, TODAY + timedelta(days=7), reason="Conference",
        )
        assert delegation.id is not None
        assert delegation.is_active is True
        assert delegation.reason == "Conference"
        log = AuditLog.query.filter_by(action="delegation.create").one()
        assert log.entity_id == str(delegation.id)
        assert log.diff["to_user_id"] == org.director.id

    def test_self_delegation_rejected(self, org):
        with pytest.raises(ValidationError, match="themselves"):
            delegation_service.create_delegation(org.head.id, org.head.id, TODAY)

    def test_end_before_start(self, org):
        with pytest.raises(ValidationError):
            delegation_service.create_delegation(org.head.id, org.director.id, TODAY, TODAY - timedelta(days=1))

    def test_unknown_users(self, org):
        with pytest.raises(NotFoundError):
            delegation_service.create_delegation(9999, org.director.id, TODAY)
        with pytest.raises(NotFoundError):
            delegation_service.create_delegation(org.head.id, 9999, TODAY)

    def test_inactive_delegate(self, org):
        org.director.is_active = False
        db.session.commit()
        with pytest.raises(ValidationError, match="active"):
            delegation_service.create_delegation(org.head.id, org.director.id, TODAY)


class TestEffectiveWindow:
    def test_open_ended(self, org):
        delegation_service.create_delegation(org.head.id, org.director.id, TODAY)
        assert delegation_service.get_delegated_approvers(org.director.id) == [org.head.id]
        far_future = TODAY + timedelta(days=400)
        assert delegation_service.get_delegated_approvers(org.director.id, on=far_future) == [org.head.id]

    def test_not_started_yet(self, org):
        delegation_service.create_delegation(org.head.id, org.director.id, TODAY + timedelta(days=2))
        assert delegation_service.get_delegated_approvers(org.director.id) == []

    def test_multiple_delegators(self, org):
        delegation_service.create_delegation(org.head.id, org.director.id, TODAY)
        delegation_service.create_delegation(org.supervisor.id, org.director.id, TODAY)
        assert sorted(delegation_service.get_delegated_approvers(org.director.id)) == sorted(
            [org.head.id, org.supervisor.id]
        )

    def test_delegation_enables_acting_for(self, org):
        delegation_service.create_delegation(org.head.id, org.director.id, TODAY)
        assert substitute_router.can_act_for(org.director.id, org.head.id) is True
        # not symmetric
        assert substitute_router.can_act_for(org.head.id, org.director.id) is False


class TestRevokeDelegation:
    def test_revoke(self, org):
        delegation = delegation_service.create_delegation(org.head.id, org.director.id, TODAY)
        revoked = delegation_service.revoke_delegation(delegation.id, revoked_by_id=org.head.id)
        assert revoked.is_active is False
        assert revoked.revoked_at is not None
        assert delegation_service.get_delegated_approvers(org.director.id) == []
        assert AuditLog.query.filter_by(action="delegation.revoke").count() == 1

    def test_revoke_twice(self, org):
        delegation = delegation_service.create_delegation(org.head.id, org.director.id, TODAY)
        delegation_service.revoke_delegation(delegation.id)
        with pytest.raises(InvalidStateError):
            delegation_service.revoke_delegation(delegation.id)

    def test_revoke_unknown(self, org):
        with pytest.raises(NotFoundError):
            delegation_service.revoke_delegation(9999)

    def test_list_given_and_received(self, org):
        given = delegation_service.create_delegation(org.head.id, org.director.id, TODAY)
        received = delegation_service.create_delegation(org.supervisor.id, org.head.id, TODAY)
        delegation_service.create_delegation(org.supervisor.id, org.director.id, TODAY)
        assert [d.id for d in delegation_service.list_delegations(org.head.id)] == [received.id, given.id]
