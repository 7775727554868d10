"""Role grants: storage and the trust/role model.

Storage path: ``<home>/roles/roles.json`` holding::

    {"grants": {<identity id>: <grant>}, "history": [<audit record>, ...]}

Grants and history share one file so a grant and its audit record are
written together or not at all.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Optional, Union

from anontrust.auth.models import AuditRecord, RoleGrant, RoleTier
from anontrust.auth.permissions import (
    ASSIGN_ROLES,
    REVOKE_ROLES,
    VIEW_ALL_USERS,
    TrustLabel,
    has_permission,
    require_permission,
    trust_label,
)
from anontrust.config import Settings
from anontrust.errors import (
    InvalidTier,
    MissingReason,
    NotFound,
    PermissionDenied,
    StorageUnavailable,
)
from anontrust.identity.models import Identity, utcnow
from anontrust.locks import KeyedLocks
from anontrust.security.audit_log import RESOURCE_ROLE, AuditLogger
from anontrust.storage import ensure_dir, read_json, write_json

if TYPE_CHECKING:
    from anontrust.progression.engine import ProgressionEngine

log = logging.getLogger(__name__)

IdentityRef = Union[Identity, str]


def _identity_id(ref: IdentityRef) -> str:
    return ref.id if isinstance(ref, Identity) else ref


class RoleStore:
    """File-based storage for role grants and their history."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()
        self._base = ensure_dir(self._settings.path("roles"))
        self._path = self._base / "roles.json"
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read(self) -> dict:
        data = read_json(self._path, default={"grants": {}, "history": []})
        if not isinstance(data, dict):
            raise StorageUnavailable("roles.json does not hold a mapping")
        data.setdefault("grants", {})
        data.setdefault("history", [])
        return data

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._settings.io_timeout):
            raise StorageUnavailable("Timed out waiting for the role store")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, identity_id: str) -> Optional[RoleGrant]:
        self._acquire()
        try:
            entry = self._read()["grants"].get(identity_id)
        finally:
            self._lock.release()
        return RoleGrant.from_dict(entry) if entry else None

    def list_grants(self) -> list[RoleGrant]:
        self._acquire()
        try:
            grants = self._read()["grants"]
        finally:
            self._lock.release()
        return [RoleGrant.from_dict(g) for g in grants.values()]

    def put(self, grant: RoleGrant, record: Optional[AuditRecord] = None) -> None:
        """Write a grant, and its audit record if given, in one replace."""
        self._acquire()
        try:
            data = self._read()
            data["grants"][grant.identity_id] = grant.to_dict()
            if record is not None:
                data["history"].append(record.to_dict())
            write_json(self._path, data)
        finally:
            self._lock.release()

    def history(self, identity_id: str) -> list[AuditRecord]:
        self._acquire()
        try:
            history = self._read()["history"]
        finally:
            self._lock.release()
        return [AuditRecord.from_dict(r) for r in history if r.get("target_id") == identity_id]

    def count_tier(self, tier: RoleTier) -> int:
        return sum(1 for g in self.list_grants() if g.tier == tier)


class TrustRoleModel:
    """Maps identities to role tiers and permissions; assigns and revokes roles.

    Role tiers change only through ``assign_role`` / ``revoke_role``; the trust
    score is read for labelling and never consulted for permissions.
    """

    def __init__(
        self,
        store: RoleStore,
        settings: Optional[Settings] = None,
        progression: Optional["ProgressionEngine"] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._progression = progression
        self._audit = audit
        self._locks = KeyedLocks(self._settings.io_timeout, name="role target")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def effective_role(self, identity: IdentityRef) -> RoleTier:
        """Return the explicitly granted tier, ``anonymous`` if none was granted."""
        grant = self._store.get(_identity_id(identity))
        return grant.tier if grant else RoleTier.anonymous

    def check_permission(self, identity: Optional[IdentityRef], permission: str) -> bool:
        if identity is None:
            return False
        return has_permission(self.effective_role(identity), permission)

    def require(self, identity: IdentityRef, permission: str) -> RoleTier:
        """Return the actor's tier or raise ``PermissionDenied``."""
        tier = self.effective_role(identity)
        try:
            require_permission(tier, permission)
        except PermissionDenied:
            log.warning(
                "Denied %s to %s (role %s)", permission, _identity_id(identity)[:8], tier.value
            )
            raise
        return tier

    def trust_score(self, identity: IdentityRef) -> float:
        """Return the trust score: live progression for a local identity,
        otherwise the last snapshot recorded with the grant."""
        if self._progression is not None and isinstance(identity, Identity):
            try:
                return self._progression.trust_score(identity)
            except NotFound:
                pass
        grant = self._store.get(_identity_id(identity))
        return grant.trust_score if grant else 1.0

    def trust_label(self, identity: IdentityRef) -> TrustLabel:
        return trust_label(self.trust_score(identity))

    def register(self, identity: Identity, trust_score: Optional[float] = None) -> RoleGrant:
        """Make an identity known to role management without changing its tier."""
        with self._locks.hold(identity.id):
            grant = self._store.get(identity.id) or RoleGrant(identity_id=identity.id)
            grant.nickname = identity.nickname
            if trust_score is not None:
                grant.trust_score = trust_score
            self._store.put(grant)
        return grant

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def assign_role(
        self, actor: Identity, target_id: str, new_tier: RoleTier | str, reason: str = ""
    ) -> AuditRecord:
        try:
            tier = RoleTier(new_tier)
        except ValueError:
            raise InvalidTier(f"Unknown role tier '{new_tier}'") from None
        self._require_audited(actor, ASSIGN_ROLES, "role.assign", target_id)

        with self._locks.hold(target_id):
            grant = self._store.get(target_id)
            if grant is None:
                raise NotFound(f"Unknown identity '{target_id[:8]}'")
            if tier == grant.tier:
                raise InvalidTier(f"Identity already holds role '{tier.value}'")
            if tier.level < grant.tier.level:
                raise InvalidTier(
                    f"Cannot lower '{grant.tier.value}' to '{tier.value}'; revoke the role first"
                )
            if tier == RoleTier.admin and actor.id == target_id and not self._settings.allow_admin_self_assign:
                raise InvalidTier("Admin cannot be self-assigned")

            record = AuditRecord(
                action="assign",
                actor_id=actor.id,
                target_id=target_id,
                previous_tier=grant.tier,
                new_tier=tier,
                reason=reason.strip(),
            )
            self._apply(grant, record)
        log.info("Assigned role %s to %s (by %s)", tier.value, target_id[:8], actor.short_id)
        return record

    def revoke_role(self, actor: Identity, target_id: str, reason: str) -> AuditRecord:
        if not reason or not reason.strip():
            raise MissingReason("Revoking a role requires a reason")
        self._require_audited(actor, REVOKE_ROLES, "role.revoke", target_id)

        with self._locks.hold(target_id):
            grant = self._store.get(target_id)
            if grant is None:
                raise NotFound(f"Unknown identity '{target_id[:8]}'")
            if grant.tier == RoleTier.admin and self._store.count_tier(RoleTier.admin) <= 1:
                raise InvalidTier("Cannot revoke the last admin")

            record = AuditRecord(
                action="revoke",
                actor_id=actor.id,
                target_id=target_id,
                previous_tier=grant.tier,
                new_tier=RoleTier.anonymous,
                reason=reason.strip(),
            )
            self._apply(grant, record)
        log.info("Revoked role of %s (by %s)", target_id[:8], actor.short_id)
        return record

    def bootstrap_admin(self, identity: Identity, reason: str = "initial administrator") -> AuditRecord:
        """Grant admin to ``identity`` when no admin exists yet."""
        with self._locks.hold(identity.id):
            if self._store.count_tier(RoleTier.admin) > 0:
                raise PermissionDenied(ASSIGN_ROLES, "An administrator already exists")
            grant = self._store.get(identity.id) or RoleGrant(
                identity_id=identity.id, nickname=identity.nickname
            )
            record = AuditRecord(
                action="assign",
                actor_id=identity.id,
                target_id=identity.id,
                previous_tier=grant.tier,
                new_tier=RoleTier.admin,
                reason=reason,
            )
            self._apply(grant, record)
        log.info("Bootstrapped admin %s", identity.short_id)
        return record

    # ------------------------------------------------------------------
    # Admin views
    # ------------------------------------------------------------------

    def role_history(self, actor: Identity, target_id: str) -> list[AuditRecord]:
        self.require(actor, VIEW_ALL_USERS)
        return self._store.history(target_id)

    def list_users(
        self, actor: Identity, role: Optional[RoleTier | str] = None, search: str = ""
    ) -> list[RoleGrant]:
        self.require(actor, VIEW_ALL_USERS)
        grants = self._store.list_grants()
        if role:
            tier = RoleTier(role)
            grants = [g for g in grants if g.tier == tier]
        if search:
            needle = search.lower()
            grants = [
                g for g in grants
                if needle in g.nickname.lower() or needle in g.identity_id.lower()
            ]
        return sorted(grants, key=lambda g: (-g.tier.level, g.nickname.lower()))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_audited(self, actor: Identity, permission: str, action: str, target_id: str) -> None:
        try:
            self.require(actor, permission)
        except PermissionDenied as exc:
            if self._audit is not None:
                self._audit.log_event(
                    actor=actor.id,
                    action=action,
                    resource_type=RESOURCE_ROLE,
                    resource_id=target_id,
                    success=False,
                    error_code=exc.code,
                )
            raise

    def _apply(self, grant: RoleGrant, record: AuditRecord) -> None:
        grant.tier = record.new_tier
        grant.granted_by = record.actor_id
        grant.reason = record.reason
        grant.granted_at = utcnow().isoformat()
        self._store.put(grant, record)
        if self._audit is not None:
            self._audit.log_event(
                actor=record.actor_id,
                action=f"role.{record.action}",
                resource_type=RESOURCE_ROLE,
                resource_id=record.target_id,
                details={
                    "previous_tier": record.previous_tier.value,
                    "new_tier": record.new_tier.value,
                    "reason": record.reason,
                },
            )
