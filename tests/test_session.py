"""Tests for the identity session lifecycle."""

import tempfile
import threading
from pathlib import Path

import pytest

from anontrust.auth.models import RoleTier
from anontrust.config import Settings
from anontrust.errors import (
    InvalidCredential,
    InvalidState,
    NoActiveIdentity,
    NotFound,
    StorageUnavailable,
)
from anontrust.services import build_services
from anontrust.session import GUEST_AVATAR, IdentitySession, SessionState


def _session(tmpdir: str, **overrides):
    services = build_services(Settings(home=Path(tmpdir), **overrides))
    return IdentitySession.from_services(services), services


def _active_session(tmpdir: str, nickname: str = "Quinn", **overrides):
    session, services = _session(tmpdir, **overrides)
    session.initialize()
    session.complete_onboarding()
    identity = session.complete_setup(nickname=nickname)
    return session, services, identity


def test_fresh_device_goes_through_onboarding_and_setup():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, services = _session(tmpdir)
        assert session.state == SessionState.uninitialized
        assert session.initialize() == SessionState.onboarding_required
        assert session.complete_onboarding() == SessionState.setup_required
        assert session.current_identity() is None

        identity = session.complete_setup()

        assert session.state == SessionState.active
        assert identity.is_anonymous is True
        assert identity.credential_hash == ""
        assert session.current_identity().id == identity.id
        assert services.identity_store.load().id == identity.id
        assert services.directory.lookup(identity.id).identity.id == identity.id
        assert session.effective_role() == RoleTier.anonymous
        assert session.check_permission("earn_xp") is True
        assert session.check_permission("approve_content") is False


def test_setup_outside_setup_state_is_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _ = _session(tmpdir)
        session.initialize()
        with pytest.raises(InvalidState):
            session.complete_setup()


def test_existing_identity_is_cleared_on_start():
    with tempfile.TemporaryDirectory() as tmpdir:
        _active_session(tmpdir)

        restarted, services = _session(tmpdir)
        assert restarted.initialize() == SessionState.login_required
        assert restarted.current_identity() is None
        assert not services.identity_store.exists()


def test_existing_identity_stays_active_without_force_reverify():
    with tempfile.TemporaryDirectory() as tmpdir:
        _, _, identity = _active_session(tmpdir, force_reverify_on_start=False)

        restarted, _ = _session(tmpdir, force_reverify_on_start=False)
        assert restarted.initialize() == SessionState.active
        assert restarted.current_identity().id == identity.id


def test_onboarded_device_without_identity_requires_login():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, _ = _active_session(tmpdir)
        assert session.logout() == SessionState.login_required

        restarted, _ = _session(tmpdir)
        assert restarted.initialize() == SessionState.login_required


def test_wipe_returns_device_to_first_run():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, services, _ = _active_session(tmpdir)
        assert session.wipe() == SessionState.login_required
        assert session.current_identity() is None
        assert not services.identity_store.exists()

        restarted, _ = _session(tmpdir)
        assert restarted.initialize() == SessionState.onboarding_required


def test_unreadable_storage_at_start_counts_as_first_run():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _ = _session(tmpdir)
        (Path(tmpdir) / "identity" / "onboarding.json").write_text("{broken")
        assert session.initialize() == SessionState.onboarding_required


def test_storage_failure_during_mutation_propagates():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, _ = _active_session(tmpdir)
        (Path(tmpdir) / "identity" / "progression.json").write_text("{broken")
        with pytest.raises(StorageUnavailable):
            session.add_xp(10)


def test_login_restores_synced_progression():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, identity = _active_session(tmpdir)
        session.add_xp(150, "imported")
        session.add_badge("early_adopter")
        session.sync()
        session.logout()

        restored = session.login_with_identity(identity.id)

        assert restored.id == identity.id
        assert session.state == SessionState.active
        state = session.progression_state()
        assert (state.xp, state.level) == (150, 2)
        assert state.badges == ["early_adopter"]


def test_login_with_unknown_identity():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _ = _session(tmpdir)
        session.initialize()
        with pytest.raises(NotFound):
            session.login_with_identity("0f8e3c1a-0000-4000-8000-000000000000")
        assert session.state == SessionState.onboarding_required


def test_failed_role_registration_leaves_no_identity(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        session, services, identity = _active_session(tmpdir)
        session.logout()

        def unavailable(*args, **kwargs):
            raise StorageUnavailable("roles.json locked")

        monkeypatch.setattr(services.roles, "register", unavailable)
        with pytest.raises(StorageUnavailable):
            session.login_with_identity(identity.id)

        assert session.state == SessionState.login_required
        assert session.current_identity() is None
        assert services.identity_store.exists() is False


def test_failed_remembered_session_write_rolls_back_login(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        session, services, identity = _active_session(tmpdir)
        session.logout()

        def unavailable(*args, **kwargs):
            raise StorageUnavailable("disk full")

        monkeypatch.setattr(services.identity_store, "save_remembered_session", unavailable)
        with pytest.raises(StorageUnavailable):
            session.login_with_identity(identity.id, remember=True)

        assert session.state == SessionState.login_required
        assert services.identity_store.exists() is False
        with pytest.raises(NotFound):
            services.identity_store.load_remembered_session()


def test_claimed_identity_requires_its_credential():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, identity = _active_session(tmpdir)
        claimed = session.claim_identity("correct horse battery")
        assert claimed.is_anonymous is False
        assert claimed.is_claimed
        session.logout()

        with pytest.raises(InvalidCredential):
            session.login_with_identity(identity.id)
        with pytest.raises(InvalidCredential):
            session.login_with_identity(identity.id, "wrong credential")
        assert session.state == SessionState.login_required

        assert session.login_with_identity(identity.id, "correct horse battery").id == identity.id


def test_claim_rejects_short_credentials_and_double_claims():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, _ = _active_session(tmpdir)
        with pytest.raises(ValueError):
            session.claim_identity("short")
        session.claim_identity("long enough secret")
        with pytest.raises(InvalidState):
            session.claim_identity("another long secret")


def test_remembered_session_survives_restart():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, identity = _active_session(tmpdir)
        session.logout()
        session.login_with_identity(identity.id, remember=True)

        restarted, _ = _session(tmpdir)
        assert restarted.initialize() == SessionState.login_required
        assert restarted.resume_remembered_session().id == identity.id
        assert restarted.state == SessionState.active


def test_login_without_remember_clears_remembered_session():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, services, identity = _active_session(tmpdir)
        session.login_with_identity(identity.id, remember=True)
        session.login_with_identity(identity.id, remember=False)
        with pytest.raises(NotFound):
            services.identity_store.load_remembered_session()


def test_logout_clears_remembered_session():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, identity = _active_session(tmpdir)
        session.login_with_identity(identity.id, remember=True)
        session.logout()
        with pytest.raises(NotFound):
            session.resume_remembered_session()


def test_update_profile_allows_only_profile_fields():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, services, identity = _active_session(tmpdir)

        updated = session.update_profile(nickname="  River  ", privacy_settings={"show_location": True})
        assert updated.nickname == "River"
        assert updated.privacy_settings.show_location is True
        assert services.identity_store.load().nickname == "River"

        for forbidden in ({"id": "other"}, {"credential_hash": "x"}, {"is_anonymous": False}):
            with pytest.raises(ValueError):
                session.update_profile(**forbidden)
        with pytest.raises(ValueError):
            session.update_profile(privacy_settings={"sell_my_data": True})
        with pytest.raises(ValueError):
            session.update_profile(nickname="   ")

        stored = services.identity_store.load()
        assert stored.id == identity.id
        assert stored.credential_hash == ""
        assert stored.nickname == "River"


def test_operations_need_an_active_identity():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _ = _session(tmpdir)
        session.initialize()
        with pytest.raises(NoActiveIdentity):
            session.add_xp(10)
        with pytest.raises(NoActiveIdentity):
            session.update_profile(nickname="Nobody")
        assert session.display_name() == "Anonymous User"
        assert session.display_avatar() == GUEST_AVATAR
        assert session.effective_role() == RoleTier.anonymous
        assert session.check_permission("view_content") is False


def test_display_helpers_for_active_identity():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, identity = _active_session(tmpdir, nickname="Indigo")
        assert session.display_name() == "Indigo"
        assert session.display_avatar() == identity.avatar


def test_record_activity_through_session():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, _ = _active_session(tmpdir)
        result = session.record_activity("lesson_completed")
        assert result.xp.xp == 25
        assert "first_lesson" in result.new_badges
        assert session.update_streak() == 1


def test_concurrent_xp_through_session():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, _, _ = _active_session(tmpdir)
        threads = [threading.Thread(target=session.add_xp, args=(10,)) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert session.progression_state().xp == 100


def test_sync_keeps_directory_trust_score():
    with tempfile.TemporaryDirectory() as tmpdir:
        session, services, identity = _active_session(tmpdir)
        services.directory.set_trust_score(identity.id, 3.4)
        record = session.sync()
        assert record.progression.trust_score == 3.4
        assert services.roles.trust_label(identity.id) == "high"
        assert session.progression_state().trust_score == 3.4
