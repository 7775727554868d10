"""Roles router -- role assignment, revocation, history and user listing."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from anontrust.auth.models import AuditRecord, RoleGrant, RoleTier
from anontrust.auth.permissions import PERMISSIONS, trust_label
from anontrust.identity.models import Identity
from web.backend.app.middleware.auth import get_current_identity, get_services
from web.backend.app.models.api import (
    AssignRoleRequest,
    AuditRecordResponse,
    PermissionTableResponse,
    RevokeRoleRequest,
    RoleGrantResponse,
)

router = APIRouter(prefix="/api/roles", tags=["roles"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record_response(r: AuditRecord) -> AuditRecordResponse:
    """Convert a domain AuditRecord to a Pydantic AuditRecordResponse."""
    return AuditRecordResponse(
        id=r.id,
        action=r.action,
        actor_id=r.actor_id,
        target_id=r.target_id,
        previous_tier=r.previous_tier.value,
        new_tier=r.new_tier.value,
        reason=r.reason,
        timestamp=r.timestamp,
    )


def _grant_response(g: RoleGrant) -> RoleGrantResponse:
    return RoleGrantResponse(
        identity_id=g.identity_id,
        tier=g.tier.value,
        nickname=g.nickname,
        trust_score=g.trust_score,
        trust_label=trust_label(g.trust_score),
        granted_by=g.granted_by,
        reason=g.reason,
        granted_at=g.granted_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/permissions",
    response_model=PermissionTableResponse,
    summary="The fixed permission table, per tier",
)
async def permission_table():
    return PermissionTableResponse(
        tiers={tier.value: sorted(PERMISSIONS[tier]) for tier in RoleTier.ordered()}
    )


@router.post(
    "/assign",
    response_model=AuditRecordResponse,
    summary="Assign a role tier (admin only)",
)
async def assign_role(body: AssignRoleRequest, actor: Identity = Depends(get_current_identity)):
    record = get_services().roles.assign_role(actor, body.target_id, body.tier, body.reason)
    return _record_response(record)


@router.post(
    "/revoke",
    response_model=AuditRecordResponse,
    summary="Reset an identity to anonymous (admin only, reason required)",
)
async def revoke_role(body: RevokeRoleRequest, actor: Identity = Depends(get_current_identity)):
    record = get_services().roles.revoke_role(actor, body.target_id, body.reason)
    return _record_response(record)


@router.get(
    "/users",
    response_model=list[RoleGrantResponse],
    summary="List known identities and their roles",
)
async def list_users(
    role: Optional[str] = None,
    search: str = "",
    actor: Identity = Depends(get_current_identity),
):
    grants = get_services().roles.list_users(actor, role=role, search=search)
    return [_grant_response(g) for g in grants]


@router.get(
    "/{identity_id}/history",
    response_model=list[AuditRecordResponse],
    summary="Role history of an identity",
)
async def role_history(identity_id: str, actor: Identity = Depends(get_current_identity)):
    return [_record_response(r) for r in get_services().roles.role_history(actor, identity_id)]
