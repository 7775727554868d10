"""Role domain models: tiers, grants, and the audit record of a grant change."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum


class RoleTier(str, Enum):
    """Role hierarchy: admin > moderator > educator > trusted > anonymous."""

    anonymous = "anonymous"
    trusted = "trusted"
    educator = "educator"
    moderator = "moderator"
    admin = "admin"

    @property
    def level(self) -> int:
        """Return numeric level for comparison (higher = more privileges)."""
        return {
            RoleTier.anonymous: 0,
            RoleTier.trusted: 10,
            RoleTier.educator: 20,
            RoleTier.moderator: 30,
            RoleTier.admin: 40,
        }[self]

    @classmethod
    def ordered(cls) -> list["RoleTier"]:
        return sorted(cls, key=lambda t: t.level)


@dataclass
class RoleGrant:
    """The explicitly granted role of one identity."""

    identity_id: str
    tier: RoleTier = RoleTier.anonymous
    granted_by: str = ""
    reason: str = ""
    granted_at: str = ""
    nickname: str = ""
    trust_score: float = 1.0

    def __post_init__(self) -> None:
        if isinstance(self.tier, str):
            self.tier = RoleTier(self.tier)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["tier"] = self.tier.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "RoleGrant":
        try:
            tier = RoleTier(d.get("tier", "anonymous"))
        except ValueError:
            tier = RoleTier.anonymous
        return cls(
            identity_id=d["identity_id"],
            tier=tier,
            granted_by=d.get("granted_by", ""),
            reason=d.get("reason", ""),
            granted_at=d.get("granted_at", ""),
            nickname=d.get("nickname", ""),
            trust_score=float(d.get("trust_score", 1.0)),
        )


@dataclass
class AuditRecord:
    """One role assignment or revocation."""

    action: str  # "assign" | "revoke"
    actor_id: str
    target_id: str
    previous_tier: RoleTier
    new_tier: RoleTier
    reason: str = ""
    id: str = ""
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = uuid.uuid4().hex[:12]
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()
        if isinstance(self.previous_tier, str):
            self.previous_tier = RoleTier(self.previous_tier)
        if isinstance(self.new_tier, str):
            self.new_tier = RoleTier(self.new_tier)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["previous_tier"] = self.previous_tier.value
        d["new_tier"] = self.new_tier.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "AuditRecord":
        return cls(**d)
