"""Tests for role assignment, revocation, and role history."""

import tempfile
import uuid
from pathlib import Path

import pytest

from anontrust.auth.models import RoleTier
from anontrust.auth.permissions import REVOKE_ROLES
from anontrust.auth.roles import RoleStore, TrustRoleModel
from anontrust.config import Settings
from anontrust.errors import InvalidTier, MissingReason, NotFound, PermissionDenied
from anontrust.identity.models import Identity
from anontrust.security.audit_log import AuditLogger


def _model(tmpdir: str, **overrides):
    settings = Settings(home=Path(tmpdir), **overrides)
    audit = AuditLogger(settings.path("audit_logs"))
    model = TrustRoleModel(RoleStore(settings), settings, audit=audit)
    admin = _user(model, "Admin")
    model.bootstrap_admin(admin)
    return model, admin, audit


def _user(model: TrustRoleModel, nickname: str, trust_score: float = 1.0) -> Identity:
    identity = Identity(id=str(uuid.uuid4()), nickname=nickname)
    model.register(identity, trust_score=trust_score)
    return identity


def test_default_role_is_anonymous():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, _, _ = _model(tmpdir)
        assert model.effective_role("never-registered") == RoleTier.anonymous
        assert model.check_permission(None, "view_content") is False


def test_bootstrap_only_once():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        assert model.effective_role(admin) == RoleTier.admin
        other = _user(model, "Other")
        with pytest.raises(PermissionDenied):
            model.bootstrap_admin(other)
        assert model.effective_role(other) == RoleTier.anonymous


def test_admin_assigns_role_and_stamps_grant():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, audit = _model(tmpdir)
        user = _user(model, "Casey")

        record = model.assign_role(admin, user.id, "moderator", "  active reviewer ")

        assert record.action == "assign"
        assert record.previous_tier == RoleTier.anonymous
        assert record.new_tier == RoleTier.moderator
        assert record.reason == "active reviewer"
        assert model.effective_role(user) == RoleTier.moderator
        assert model.check_permission(user, "approve_content")

        grant = model.list_users(admin, role="moderator")[0]
        assert grant.identity_id == user.id
        assert grant.granted_by == admin.id
        assert grant.reason == "active reviewer"
        assert grant.granted_at

        assert audit.get_events(action="role.assign", resource_id=user.id)[0].success


def test_non_admin_cannot_assign_and_denial_is_audited():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, audit = _model(tmpdir)
        moderator = _user(model, "Mod")
        model.assign_role(admin, moderator.id, "moderator")
        target = _user(model, "Target")

        with pytest.raises(PermissionDenied):
            model.assign_role(moderator, target.id, "trusted")

        assert model.effective_role(target) == RoleTier.anonymous
        denied = audit.get_events(actor=moderator.id, action="role.assign")
        assert len(denied) == 1
        assert denied[0].success is False
        assert denied[0].error_code == "permission_denied"


def test_assign_rejects_same_lower_and_unknown_tiers():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        user = _user(model, "Sam")
        model.assign_role(admin, user.id, "educator")

        with pytest.raises(InvalidTier):
            model.assign_role(admin, user.id, "educator")
        with pytest.raises(InvalidTier):
            model.assign_role(admin, user.id, RoleTier.trusted)
        with pytest.raises(InvalidTier):
            model.assign_role(admin, user.id, "superuser")
        assert model.effective_role(user) == RoleTier.educator


def test_admin_cannot_be_self_assigned():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        with pytest.raises(InvalidTier):
            model.assign_role(admin, admin.id, "admin")


def test_assign_to_unknown_identity():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        with pytest.raises(NotFound):
            model.assign_role(admin, str(uuid.uuid4()), "trusted")


@pytest.mark.parametrize("reason", ["", "   "])
def test_revoke_without_reason_fails_and_keeps_tier(reason):
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        user = _user(model, "Jo")
        model.assign_role(admin, user.id, "moderator")

        with pytest.raises(MissingReason):
            model.revoke_role(admin, user.id, reason)
        assert model.effective_role(user) == RoleTier.moderator


def test_missing_reason_is_checked_before_permission():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, _, _ = _model(tmpdir)
        outsider = _user(model, "Outsider")
        with pytest.raises(MissingReason):
            model.revoke_role(outsider, str(uuid.uuid4()), "")


def test_revoke_resets_to_anonymous_and_records_history():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        user = _user(model, "Lee")
        model.assign_role(admin, user.id, "trusted", "good posts")
        model.assign_role(admin, user.id, "moderator", "promoted")

        record = model.revoke_role(admin, user.id, "inactive for a year")

        assert record.previous_tier == RoleTier.moderator
        assert record.new_tier == RoleTier.anonymous
        assert model.effective_role(user) == RoleTier.anonymous
        history = model.role_history(admin, user.id)
        assert [(r.action, r.new_tier.value) for r in history] == [
            ("assign", "trusted"),
            ("assign", "moderator"),
            ("revoke", "anonymous"),
        ]


def test_non_admin_cannot_revoke():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        user = _user(model, "Kim")
        model.assign_role(admin, user.id, "educator")
        with pytest.raises(PermissionDenied) as excinfo:
            model.revoke_role(user, admin.id, "coup")
        assert excinfo.value.permission == REVOKE_ROLES
        assert model.effective_role(admin) == RoleTier.admin


def test_last_admin_cannot_be_revoked():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        with pytest.raises(InvalidTier):
            model.revoke_role(admin, admin.id, "stepping down")

        second = _user(model, "Second admin")
        model.assign_role(admin, second.id, "admin", "backup")
        model.revoke_role(second, admin.id, "handover")
        assert model.effective_role(admin) == RoleTier.anonymous


def test_history_and_listing_are_admin_only():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        moderator = _user(model, "Mod")
        model.assign_role(admin, moderator.id, "moderator")
        with pytest.raises(PermissionDenied):
            model.role_history(moderator, admin.id)
        with pytest.raises(PermissionDenied):
            model.list_users(moderator)


def test_list_users_filters_and_sorts():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, admin, _ = _model(tmpdir)
        alice = _user(model, "Alice")
        _user(model, "Bob")
        model.assign_role(admin, alice.id, "educator")

        names = [g.nickname for g in model.list_users(admin)]
        assert names == ["Admin", "Alice", "Bob"]
        assert [g.nickname for g in model.list_users(admin, search="bo")] == ["Bob"]
        assert [g.nickname for g in model.list_users(admin, role="educator")] == ["Alice"]


def test_high_trust_never_grants_permissions():
    with tempfile.TemporaryDirectory() as tmpdir:
        model, _, _ = _model(tmpdir)
        veteran = _user(model, "Veteran", trust_score=4.8)
        assert model.trust_label(veteran.id) == "high"
        assert model.effective_role(veteran) == RoleTier.anonymous
        assert model.check_permission(veteran, "approve_content") is False
