"""Identity domain models: the pseudonymous identity, its progression, and the
remembered-session record."""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone

AVATAR_PALETTE = [
    "😊", "🌟", "💫", "✨", "🎯", "🚀", "💡", "🔥",
    "🌈", "🎨", "🎭", "🎪", "🎲", "🎮", "🌱", "🕯️",
]

DEFAULT_NICKNAME = "Anonymous User"
DEFAULT_TRUST_SCORE = 1.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def default_avatar(identity_id: str) -> str:
    """Pick a stable avatar for an identity from the palette."""
    digest = hashlib.sha256(identity_id.encode()).digest()
    return AVATAR_PALETTE[digest[0] % len(AVATAR_PALETTE)]


@dataclass
class PrivacySettings:
    """Fixed set of privacy toggles with their defaults."""

    show_location: bool = False
    allow_data_collection: bool = False
    anonymous_posting: bool = True
    show_activity: bool = True

    def merged(self, updates: dict) -> "PrivacySettings":
        """Return a copy with ``updates`` applied. Unknown keys are rejected."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(updates) - known)
        if unknown:
            raise ValueError(f"Unknown privacy settings: {', '.join(unknown)}")
        data = asdict(self)
        for key, value in updates.items():
            if not isinstance(value, bool):
                raise ValueError(f"Privacy setting '{key}' must be a boolean")
            data[key] = value
        return PrivacySettings(**data)

    @classmethod
    def from_dict(cls, d: dict | None) -> "PrivacySettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: bool(v) for k, v in (d or {}).items() if k in known})


@dataclass
class Identity:
    """A device-local pseudonymous identity."""

    id: str
    nickname: str = DEFAULT_NICKNAME
    avatar: str = ""
    credential_hash: str = ""
    is_anonymous: bool = True
    created_at: str = ""
    last_active_at: str = ""
    privacy_settings: PrivacySettings = field(default_factory=PrivacySettings)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Identity id must not be empty")
        if not self.avatar:
            self.avatar = default_avatar(self.id)
        if not self.created_at:
            self.created_at = utcnow().isoformat()
        if not self.last_active_at:
            self.last_active_at = self.created_at
        if isinstance(self.privacy_settings, dict):
            self.privacy_settings = PrivacySettings.from_dict(self.privacy_settings)

    @property
    def is_claimed(self) -> bool:
        return bool(self.credential_hash)

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "Identity":
        return cls(
            id=d["id"],
            nickname=d.get("nickname") or DEFAULT_NICKNAME,
            avatar=d.get("avatar", ""),
            credential_hash=d.get("credential_hash", ""),
            is_anonymous=d.get("is_anonymous", not d.get("credential_hash")),
            created_at=d.get("created_at", ""),
            last_active_at=d.get("last_active_at", ""),
            privacy_settings=PrivacySettings.from_dict(d.get("privacy_settings")),
        )


@dataclass
class ProgressionState:
    """XP, level, streak, badges, and trust score for one identity."""

    identity_id: str
    xp: int = 0
    level: int = 1
    streak_days: int = 0
    last_active_at: str = ""  # streak anchor; empty until the first activity
    badges: list[str] = field(default_factory=list)
    trust_score: float = DEFAULT_TRUST_SCORE

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ProgressionState":
        badges: list[str] = []
        for badge in d.get("badges", []):
            if badge not in badges:
                badges.append(badge)
        return cls(
            identity_id=d["identity_id"],
            xp=int(d.get("xp", 0)),
            level=int(d.get("level", 1)),
            streak_days=int(d.get("streak_days", 0)),
            last_active_at=d.get("last_active_at", ""),
            badges=badges,
            trust_score=float(d.get("trust_score", DEFAULT_TRUST_SCORE)),
        )


@dataclass
class RememberedSession:
    """Lets a later login resume without re-entering a credential."""

    identity_id: str
    nickname: str = ""
    created_at: str = ""
    expires_at: str = ""

    @classmethod
    def for_identity(cls, identity: Identity, remember_days: int) -> "RememberedSession":
        now = utcnow()
        return cls(
            identity_id=identity.id,
            nickname=identity.nickname,
            created_at=now.isoformat(),
            expires_at=(now + timedelta(days=remember_days)).isoformat(),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if not self.expires_at:
            return True
        return (now or utcnow()) >= parse_timestamp(self.expires_at)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "RememberedSession":
        return cls(
            identity_id=d["identity_id"],
            nickname=d.get("nickname", ""),
            created_at=d.get("created_at", ""),
            expires_at=d.get("expires_at", ""),
        )
