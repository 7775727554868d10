"""Identity router -- the identity directory service and role lookups.

The directory endpoints are the ones ``HttpDirectory`` calls; their bodies are
``DirectoryRecord`` dicts with the credential hash blanked.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from anontrust.auth.permissions import MANAGE_USER_PERMISSIONS, permissions_for
from anontrust.auth.models import RoleTier
from anontrust.errors import InvalidCredential, PermissionDenied
from anontrust.identity.directory import DirectoryRecord
from anontrust.identity.models import Identity, ProgressionState
from anontrust.security.audit_log import RESOURCE_TRUST
from web.backend.app.middleware.auth import get_current_identity, get_services
from web.backend.app.models.api import (
    ClaimIdentityRequest,
    ClaimIdentityResponse,
    DirectoryRecordModel,
    PermissionCheckResponse,
    RoleSummaryResponse,
    SessionRecordModel,
    VerifyIdentityRequest,
)

router = APIRouter(prefix="/api/identity", tags=["identity"])


class TrustScoreRequest(BaseModel):
    trust_score: float = Field(..., ge=0.1, le=5.0)
    reason: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record_response(record: DirectoryRecord) -> dict:
    """Serialize a directory record without its credential hash."""
    return record.to_dict()


def _record_from_body(body: DirectoryRecordModel) -> DirectoryRecord:
    data = body.model_dump()
    identity = Identity.from_dict(data["identity"])
    progression = data.get("progression") or {"identity_id": identity.id}
    progression["identity_id"] = identity.id
    return DirectoryRecord(identity=identity, progression=ProgressionState.from_dict(progression))


def _session_response(record: DirectoryRecord) -> dict:
    """Serialize a record together with a new session token for its identity."""
    issued = get_services().tokens.issue(record.identity.id)
    data = _record_response(record)
    data["session_token"] = issued.token
    data["expires_at"] = issued.expires_at
    return data


def _require_self(actor: Identity, identity_id: str) -> None:
    if actor.id != identity_id:
        raise PermissionDenied("self", "An identity can only change its own record")


# ---------------------------------------------------------------------------
# Directory endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/register",
    response_model=SessionRecordModel,
    summary="Register a newly created identity",
    status_code=status.HTTP_201_CREATED,
)
async def register_identity(body: DirectoryRecordModel):
    """Record a new anonymous identity with fresh progression.

    Credentials and trust are never accepted from the client at registration.
    """
    services = get_services()
    incoming = _record_from_body(body)
    identity = incoming.identity
    identity.credential_hash = ""
    identity.is_anonymous = True
    record = services.directory.register(identity, ProgressionState(identity_id=identity.id))
    services.roles.register(identity, trust_score=record.progression.trust_score)
    return _session_response(record)


@router.post(
    "/verify",
    response_model=SessionRecordModel,
    summary="Verify an identity id and, for claimed identities, its credential",
)
async def verify_identity(body: VerifyIdentityRequest):
    """Check the identity (and its credential once claimed) and issue a token.

    An unclaimed identity proves nothing beyond its id, so one holding a role
    above anonymous gets no token here; it keeps the token from registration
    or claims a credential first.
    """
    services = get_services()
    record = services.directory.verify(body.identity_id, body.credential)
    if (
        not record.identity.is_claimed
        and services.roles.effective_role(record.identity.id) != RoleTier.anonymous
    ):
        raise InvalidCredential("Claim this identity before signing in with a role")
    return _session_response(record)


@router.post(
    "/sync",
    response_model=DirectoryRecordModel,
    summary="Push profile and progression",
)
async def sync_identity(
    body: DirectoryRecordModel,
    actor: Identity = Depends(get_current_identity),
):
    """Merge profile and progression. XP and badges never go backwards and the
    stored trust score is kept."""
    services = get_services()
    incoming = _record_from_body(body)
    _require_self(actor, incoming.identity.id)
    record = services.directory.sync(incoming.identity, incoming.progression)
    services.roles.register(record.identity, trust_score=record.progression.trust_score)
    return _record_response(record)


@router.get(
    "/{identity_id}",
    response_model=DirectoryRecordModel,
    summary="Look up an identity",
)
async def get_identity(identity_id: str):
    return _record_response(get_services().directory.lookup(identity_id))


@router.post(
    "/{identity_id}/claim",
    response_model=ClaimIdentityResponse,
    summary="Attach a credential to an anonymous identity",
)
async def claim_identity(
    identity_id: str,
    body: ClaimIdentityRequest,
    actor: Identity = Depends(get_current_identity),
):
    _require_self(actor, identity_id)
    services = get_services()
    identity = services.directory.claim(identity_id, body.credential)
    services.tokens.revoke_all(identity_id)
    issued = services.tokens.issue(identity_id)
    data = identity.to_dict()
    data["credential_hash"] = ""
    return {"identity": data, "session_token": issued.token, "expires_at": issued.expires_at}


# ---------------------------------------------------------------------------
# Trust and role lookups
# ---------------------------------------------------------------------------


@router.get(
    "/{identity_id}/role",
    response_model=RoleSummaryResponse,
    summary="Effective role, permissions and trust label of an identity",
)
async def get_identity_role(identity_id: str):
    """Read-only view used by content-authoring collaborators."""
    services = get_services()
    services.directory.lookup(identity_id)
    tier = services.roles.effective_role(identity_id)
    score = services.roles.trust_score(identity_id)
    return RoleSummaryResponse(
        identity_id=identity_id,
        role=tier.value,
        trust_score=score,
        trust_label=services.roles.trust_label(identity_id),
        permissions=sorted(permissions_for(tier)),
    )


@router.get(
    "/me/permissions/{permission}",
    response_model=PermissionCheckResponse,
    summary="Check a permission for the acting identity",
)
async def check_permission(permission: str, identity: Identity = Depends(get_current_identity)):
    allowed = get_services().roles.check_permission(identity, permission)
    return PermissionCheckResponse(identity_id=identity.id, permission=permission, allowed=allowed)


@router.put(
    "/{identity_id}/trust",
    response_model=RoleSummaryResponse,
    summary="Record an externally maintained trust score",
)
async def set_trust_score(
    identity_id: str,
    body: TrustScoreRequest,
    actor: Identity = Depends(get_current_identity),
):
    """Admin-only. The score feeds labels and queue priority, never permissions."""
    services = get_services()
    services.roles.require(actor, MANAGE_USER_PERMISSIONS)
    record = services.directory.lookup(identity_id)
    services.directory.set_trust_score(identity_id, body.trust_score)
    services.roles.register(record.identity, trust_score=body.trust_score)
    services.audit.log_event(
        actor=actor.id,
        action="trust.set",
        resource_type=RESOURCE_TRUST,
        resource_id=identity_id,
        details={"trust_score": body.trust_score, "reason": body.reason},
    )
    return await get_identity_role(identity_id)
