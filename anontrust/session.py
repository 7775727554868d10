"""The identity session: the one "current user" view of a device.

An ``IdentitySession`` is constructed once at start-up, brought up with
``initialize()`` and torn down with ``wipe()``. It owns the lifecycle::

    uninitialized ─▶ onboarding_required ─▶ setup_required ─▶ active
                 ├─▶ login_required ─────────────────────────▶ active
                 └─▶ active (only with force_reverify_on_start off)
    active ─▶ logged_out ─▶ login_required

Each public mutating method is one unit of work under the session lock: it
either fully applies its state change or raises with nothing persisted.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, Optional

from anontrust.auth.models import RoleTier
from anontrust.auth.roles import TrustRoleModel
from anontrust.config import Settings
from anontrust.errors import (
    InvalidState,
    NoActiveIdentity,
    NotFound,
    StorageUnavailable,
)
from anontrust.identity.credentials import hash_credential
from anontrust.identity.directory import DirectoryRecord, IdentityDirectory
from anontrust.identity.models import (
    DEFAULT_NICKNAME,
    Identity,
    PrivacySettings,
    ProgressionState,
    utcnow,
)
from anontrust.identity.store import IdentityStore
from anontrust.progression.engine import Activity, ActivityResult, ProgressionEngine, XPResult
from anontrust.security.audit_log import RESOURCE_IDENTITY, AuditLogger
from anontrust.services import Services

log = logging.getLogger(__name__)

MAX_NICKNAME_LENGTH = 40
GUEST_AVATAR = "👤"

_PROFILE_FIELDS = frozenset({"nickname", "avatar", "privacy_settings"})


class SessionState(str, Enum):
    uninitialized = "uninitialized"
    onboarding_required = "onboarding_required"
    setup_required = "setup_required"
    login_required = "login_required"
    active = "active"
    logged_out = "logged_out"


def _clean_nickname(nickname: str) -> str:
    nickname = (nickname or "").strip()
    if not nickname:
        raise ValueError("Nickname must not be empty")
    if len(nickname) > MAX_NICKNAME_LENGTH:
        raise ValueError(f"Nickname must be at most {MAX_NICKNAME_LENGTH} characters")
    return nickname


class IdentitySession:
    """Single owner of the current identity on this device."""

    def __init__(
        self,
        store: IdentityStore,
        directory: IdentityDirectory,
        progression: ProgressionEngine,
        roles: TrustRoleModel,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._progression = progression
        self._roles = roles
        self._settings = settings or Settings()
        self._audit = audit
        self._lock = threading.RLock()
        self._state = SessionState.uninitialized
        self._identity: Optional[Identity] = None

    @classmethod
    def from_services(cls, services: Services) -> "IdentitySession":
        return cls(
            services.identity_store,
            services.directory,
            services.progression,
            services.roles,
            settings=services.settings,
            audit=services.audit,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _unit(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._settings.io_timeout):
            raise StorageUnavailable("Timed out waiting for the identity session")
        try:
            yield
        finally:
            self._lock.release()

    def _set_state(self, state: SessionState) -> None:
        if state != self._state:
            log.info("Session %s -> %s", self._state.value, state.value)
        self._state = state

    def _require_active(self) -> Identity:
        if self._state != SessionState.active or self._identity is None:
            raise NoActiveIdentity(f"No active identity (session is {self._state.value})")
        return self._identity

    def _require_initialized(self) -> None:
        if self._state == SessionState.uninitialized:
            raise InvalidState("Call initialize() first")

    def _record(self, action: str, identity_id: str, details: Optional[dict] = None) -> None:
        if self._audit is not None:
            self._audit.log_event(
                actor=identity_id,
                action=action,
                resource_type=RESOURCE_IDENTITY,
                resource_id=identity_id,
                details=details,
            )

    def _activate(self, record: DirectoryRecord, remember: Optional[bool] = None) -> Identity:
        """Persist a verified directory record locally and make it current.

        Either every step succeeds or the device holds no identity afterwards.
        ``remember`` of ``None`` leaves the remembered session untouched.
        """
        identity = record.identity
        identity.last_active_at = utcnow().isoformat()
        progression = record.progression
        progression.identity_id = identity.id
        # Nothing is written locally until the role registry accepts the identity.
        self._roles.register(identity, trust_score=progression.trust_score)
        try:
            self._store.save(identity)
            self._store.save_progression(progression)
            self._store.mark_onboarding_completed()
            if remember:
                self._store.save_remembered_session(identity)
            elif remember is not None:
                self._store.clear_remembered_session()
        except Exception:
            log.warning("Activating %s failed; removing partial local state", identity.short_id)
            self._store.clear_identity()
            if self._state == SessionState.active:
                self._identity = None
                self._set_state(SessionState.login_required)
            raise
        self._identity = identity
        self._set_state(SessionState.active)
        return identity

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> SessionState:
        """Decide the start-up state from what is stored on the device.

        A storage failure while reading counts as "no identity"; this is the
        only operation that tolerates ``StorageUnavailable``.
        """
        with self._unit():
            try:
                has_identity = self._store.exists()
                onboarded = self._store.is_onboarding_completed()
            except StorageUnavailable as exc:
                log.warning("Identity storage unreadable at start-up, treating as first run: %s", exc)
                has_identity, onboarded = False, False

            if has_identity and self._settings.force_reverify_on_start:
                self._store.clear_identity()
                self._identity = None
                log.info("Stored identity discarded; re-verification required")
                self._set_state(SessionState.login_required)
            elif has_identity:
                try:
                    self._identity = self._store.load()
                except (NotFound, StorageUnavailable) as exc:
                    log.warning("Stored identity unusable, treating as first run: %s", exc)
                    self._identity = None
                    self._set_state(
                        SessionState.login_required if onboarded else SessionState.onboarding_required
                    )
                else:
                    self._set_state(SessionState.active)
            elif onboarded:
                self._set_state(SessionState.login_required)
            else:
                self._set_state(SessionState.onboarding_required)
            return self._state

    def complete_onboarding(self) -> SessionState:
        """Mark onboarding done. The identity itself is created by ``complete_setup``."""
        with self._unit():
            self._require_initialized()
            if self._state == SessionState.active:
                raise InvalidState("An identity is already active")
            self._store.mark_onboarding_completed()
            self._set_state(SessionState.setup_required)
            return self._state

    def complete_setup(
        self,
        nickname: Optional[str] = None,
        avatar: Optional[str] = None,
        privacy: Optional[dict[str, bool]] = None,
    ) -> Identity:
        """Create a new anonymous identity with fresh progression."""
        with self._unit():
            if self._state != SessionState.setup_required:
                raise InvalidState(f"Setup is not expected in state '{self._state.value}'")
            identity = Identity(
                id=str(uuid.uuid4()),
                nickname=_clean_nickname(nickname) if nickname else DEFAULT_NICKNAME,
                avatar=avatar or "",
                privacy_settings=PrivacySettings().merged(privacy or {}),
            )
            record = self._directory.register(identity, ProgressionState(identity_id=identity.id))
            self._activate(record)
            self._record("identity.create", identity.id)
            log.info("Created identity %s", identity.short_id)
            return identity

    def login_with_identity(
        self, identity_id: str, credential: Optional[str] = None, remember: bool = False
    ) -> Identity:
        """Verify an identity with the directory and make it current.

        Raises ``NotFound`` for an unknown id and ``InvalidCredential`` when a
        claimed identity is given a wrong or no credential.
        """
        with self._unit():
            self._require_initialized()
            record = self._directory.verify(identity_id, credential)
            identity = self._activate(record, remember=remember)
            self._record("identity.login", identity.id, {"remember": remember})
            log.info("Identity %s logged in", identity.short_id)
            return identity

    def resume_remembered_session(self) -> Identity:
        """Log back in from a valid remembered session without a credential."""
        with self._unit():
            self._require_initialized()
            remembered = self._store.load_remembered_session()
            record = self._directory.lookup(remembered.identity_id)
            identity = self._activate(record)
            self._record("identity.resume", identity.id)
            log.info("Identity %s resumed from remembered session", identity.short_id)
            return identity

    def logout(self) -> SessionState:
        """Clear identity, progression and remembered session."""
        with self._unit():
            previous = self._identity
            self._store.wipe()
            self._identity = None
            self._set_state(SessionState.logged_out)
            if previous is not None:
                self._record("identity.logout", previous.id)
            self._set_state(SessionState.login_required)
            return self._state

    def wipe(self) -> SessionState:
        """Full device reset: every local record, including the onboarding marker."""
        with self._unit():
            previous = self._identity
            self._store.wipe()
            self._store.clear_onboarding()
            self._identity = None
            self._set_state(SessionState.logged_out)
            if previous is not None:
                self._record("identity.wipe", previous.id)
            self._set_state(SessionState.login_required)
            return self._state

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(self, **fields: Any) -> Identity:
        """Update nickname, avatar and/or privacy settings.

        Any other field (``id``, ``credential_hash``, ...) raises ``ValueError``.
        """
        unknown = sorted(set(fields) - _PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update profile fields: {', '.join(unknown)}")
        with self._unit():
            current = self._require_active()
            updated = Identity.from_dict(current.to_dict())
            if "nickname" in fields:
                updated.nickname = _clean_nickname(fields["nickname"])
            if "avatar" in fields:
                updated.avatar = fields["avatar"] or current.avatar
            if "privacy_settings" in fields:
                updates = fields["privacy_settings"]
                if isinstance(updates, PrivacySettings):
                    updated.privacy_settings = updates
                else:
                    updated.privacy_settings = current.privacy_settings.merged(dict(updates or {}))
            self._store.save(updated)
            self._identity = updated
            return updated

    def claim_identity(self, credential: str) -> Identity:
        """Attach a credential so the identity can log in from other devices."""
        with self._unit():
            current = self._require_active()
            if current.is_claimed or not current.is_anonymous:
                raise InvalidState("Identity is already claimed")
            local_hash = hash_credential(credential)
            claimed = self._directory.claim(current.id, credential)
            updated = Identity.from_dict(current.to_dict())
            updated.credential_hash = claimed.credential_hash or local_hash
            updated.is_anonymous = False
            self._store.save(updated)
            self._identity = updated
            self._record("identity.claim", updated.id)
            log.info("Identity %s claimed", updated.short_id)
            return updated

    # ------------------------------------------------------------------
    # Progression
    # ------------------------------------------------------------------

    def progression_state(self) -> ProgressionState:
        with self._unit():
            return self._progression.state(self._require_active())

    def add_xp(self, amount: int, reason: str = "") -> XPResult:
        with self._unit():
            return self._progression.add_xp(self._require_active(), amount, reason)

    def update_streak(self) -> int:
        with self._unit():
            return self._progression.update_streak(self._require_active())

    def add_badge(self, badge_id: str) -> bool:
        with self._unit():
            return self._progression.add_badge(self._require_active(), badge_id)

    def record_activity(self, activity: Activity | str) -> ActivityResult:
        with self._unit():
            return self._progression.record_activity(self._require_active(), activity)

    def sync(self) -> DirectoryRecord:
        """Push profile and progression to the directory and adopt its trust score."""
        with self._unit():
            identity = self._require_active()
            record = self._directory.sync(identity, self._progression.state(identity))
            self._store.save_progression(record.progression)
            self._roles.register(identity, trust_score=record.progression.trust_score)
            return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_identity(self) -> Optional[Identity]:
        return self._identity if self._state == SessionState.active else None

    def effective_role(self) -> RoleTier:
        identity = self.current_identity()
        if identity is None:
            return RoleTier.anonymous
        return self._roles.effective_role(identity)

    def check_permission(self, permission: str) -> bool:
        return self._roles.check_permission(self.current_identity(), permission)

    def display_name(self) -> str:
        identity = self.current_identity()
        return identity.nickname if identity and identity.nickname else DEFAULT_NICKNAME

    def display_avatar(self) -> str:
        identity = self.current_identity()
        return identity.avatar if identity and identity.avatar else GUEST_AVATAR
