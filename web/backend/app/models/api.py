"""Pydantic models for API request/response serialization.

These models mirror the anontrust dataclasses and provide proper JSON
serialization for the FastAPI endpoints.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Identity directory models
# ---------------------------------------------------------------------------


class PrivacySettingsModel(BaseModel):
    """Mirrors anontrust.identity.models.PrivacySettings."""

    show_location: bool = False
    allow_data_collection: bool = False
    anonymous_posting: bool = True
    show_activity: bool = True


class IdentityModel(BaseModel):
    """Mirrors anontrust.identity.models.Identity. The credential hash is
    always blank in responses."""

    id: str
    nickname: str = "Anonymous User"
    avatar: str = ""
    credential_hash: str = ""
    is_anonymous: bool = True
    created_at: str = ""
    last_active_at: str = ""
    privacy_settings: PrivacySettingsModel = Field(default_factory=PrivacySettingsModel)


class ProgressionModel(BaseModel):
    """Mirrors anontrust.identity.models.ProgressionState."""

    identity_id: str
    xp: int = 0
    level: int = 1
    streak_days: int = 0
    last_active_at: str = ""
    badges: list[str] = Field(default_factory=list)
    trust_score: float = 1.0


class DirectoryRecordModel(BaseModel):
    """Mirrors anontrust.identity.directory.DirectoryRecord."""

    identity: IdentityModel
    progression: Optional[ProgressionModel] = None


class SessionRecordModel(DirectoryRecordModel):
    """A directory record plus the Bearer token that authenticates as it."""

    session_token: str
    expires_at: str


class VerifyIdentityRequest(BaseModel):
    identity_id: str
    credential: Optional[str] = None


class ClaimIdentityRequest(BaseModel):
    credential: str = Field(..., min_length=8)


class ClaimIdentityResponse(BaseModel):
    identity: IdentityModel
    # Earlier tokens are revoked on claim.
    session_token: str
    expires_at: str


class RoleSummaryResponse(BaseModel):
    """What content-authoring collaborators read about an author."""

    identity_id: str
    role: str
    trust_score: float
    trust_label: str
    permissions: list[str] = Field(default_factory=list)


class PermissionCheckResponse(BaseModel):
    identity_id: str
    permission: str
    allowed: bool


# ---------------------------------------------------------------------------
# Role models
# ---------------------------------------------------------------------------


class AssignRoleRequest(BaseModel):
    target_id: str
    tier: str
    reason: str = ""


class RevokeRoleRequest(BaseModel):
    target_id: str
    reason: str = ""


class AuditRecordResponse(BaseModel):
    """Mirrors anontrust.auth.models.AuditRecord."""

    id: str
    action: str
    actor_id: str
    target_id: str
    previous_tier: str
    new_tier: str
    reason: str = ""
    timestamp: str = ""


class RoleGrantResponse(BaseModel):
    """Mirrors anontrust.auth.models.RoleGrant."""

    identity_id: str
    tier: str
    nickname: str = ""
    trust_score: float = 1.0
    trust_label: str = "low"
    granted_by: str = ""
    reason: str = ""
    granted_at: str = ""


class PermissionTableResponse(BaseModel):
    tiers: dict[str, list[str]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Moderation models
# ---------------------------------------------------------------------------


class HistoryEntryResponse(BaseModel):
    action: str
    actor_id: str
    notes: str = ""
    timestamp: str = ""


class ModerationItemResponse(BaseModel):
    """Mirrors anontrust.moderation.models.ModerationItem plus its trust label."""

    id: str
    content_type: str
    content_id: str
    author_id: str
    author_trust_score: float
    trust_label: str
    trust_text: str
    priority: str
    priority_rank: int
    status: str
    flag_reason: str = ""
    community_flag_count: int = 0
    content_preview: str = ""
    review_notes: str = ""
    reviewed_by: str = ""
    reviewed_at: str = ""
    created_at: str = ""
    history: list[HistoryEntryResponse] = Field(default_factory=list)


class FlagContentRequest(BaseModel):
    content_type: str
    content_id: str
    author_id: str
    reason: str = Field(..., min_length=1)
    preview: str = ""


class ModerationActionRequest(BaseModel):
    notes: str = ""


class BulkActionRequest(BaseModel):
    item_ids: list[str] = Field(..., min_length=1)
    action: str
    notes: str = ""


class BulkFailureResponse(BaseModel):
    item_id: str
    error_code: str
    message: str


class BulkResultResponse(BaseModel):
    action: str
    succeeded: list[str] = Field(default_factory=list)
    failed: list[BulkFailureResponse] = Field(default_factory=list)


class QueueStatsResponse(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_priority: dict[str, int] = Field(default_factory=dict)
    open_urgent: int = 0


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    detail: str
    code: str
    extra: dict[str, Any] = Field(default_factory=dict)
