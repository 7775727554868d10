"""Permission table and checks.

Role hierarchy: admin > moderator > educator > trusted > anonymous

Each tier holds the permissions of every lower tier plus its own. The table
is the only place tier comparisons are made; callers ask for a permission by
name. Trust scores never take part in a permission decision.
"""

from __future__ import annotations

from typing import Literal

from anontrust.auth.models import RoleTier
from anontrust.errors import PermissionDenied

APPROVE_CONTENT = "approve_content"
ASSIGN_ROLES = "assign_roles"
REVOKE_ROLES = "revoke_roles"
VIEW_ALL_USERS = "view_all_users"
RESOLVE_ESCALATIONS = "resolve_escalations"
MANAGE_USER_PERMISSIONS = "manage_user_permissions"

# Permissions each tier adds on top of the tier below it.
_TIER_GRANTS: dict[RoleTier, frozenset[str]] = {
    RoleTier.anonymous: frozenset({
        "view_content",
        "submit_posts",
        "comment_posts",
        "vote_polls",
        "flag_content",
        "complete_learning",
        "earn_xp",
    }),
    RoleTier.trusted: frozenset({
        "peer_review",
        "fast_track_review",
        "create_challenges",
        "auto_approve_content",
    }),
    RoleTier.educator: frozenset({
        "create_lessons",
        "create_quizzes",
        "moderate_learning",
        "view_learning_analytics",
        "mentor_users",
    }),
    RoleTier.moderator: frozenset({
        APPROVE_CONTENT,
        "manage_flags",
        "verify_evidence",
        "escalate_to_admin",
        "issue_warnings",
    }),
    RoleTier.admin: frozenset({
        ASSIGN_ROLES,
        REVOKE_ROLES,
        VIEW_ALL_USERS,
        RESOLVE_ESCALATIONS,
        MANAGE_USER_PERMISSIONS,
    }),
}


def _build_table() -> dict[RoleTier, frozenset[str]]:
    table: dict[RoleTier, frozenset[str]] = {}
    inherited: frozenset[str] = frozenset()
    for tier in RoleTier.ordered():
        inherited = inherited | _TIER_GRANTS[tier]
        table[tier] = inherited
    return table


PERMISSIONS: dict[RoleTier, frozenset[str]] = _build_table()
ALL_PERMISSIONS: frozenset[str] = PERMISSIONS[RoleTier.admin]


def permissions_for(tier: RoleTier) -> frozenset[str]:
    """Return every permission held by ``tier``."""
    return PERMISSIONS[RoleTier(tier)]


def has_permission(tier: RoleTier, permission: str) -> bool:
    """Check whether ``tier`` holds ``permission``.

    Parameters
    ----------
    tier:
        The effective role tier of the acting identity.
    permission:
        The permission name, e.g. ``approve_content``.

    Returns
    -------
    bool
        False for unknown permission names.
    """
    return permission in permissions_for(tier)


def require_permission(tier: RoleTier, permission: str) -> None:
    """Raise ``PermissionDenied`` unless ``tier`` holds ``permission``."""
    if not has_permission(tier, permission):
        raise PermissionDenied(
            permission, f"Role '{RoleTier(tier).value}' lacks permission '{permission}'"
        )


def minimum_tier(permission: str) -> RoleTier | None:
    """Return the lowest tier holding ``permission``, or None if no tier does."""
    for tier in RoleTier.ordered():
        if permission in PERMISSIONS[tier]:
            return tier
    return None


TrustLabel = Literal["high", "medium", "low"]

TRUST_LABEL_TEXT: dict[str, str] = {
    "high": "Trusted",
    "medium": "Reliable",
    "low": "New",
}


def trust_label(trust_score: float) -> TrustLabel:
    """Label a trust score for display and queue ordering only."""
    if trust_score >= 3.0:
        return "high"
    if trust_score >= 2.0:
        return "medium"
    return "low"
