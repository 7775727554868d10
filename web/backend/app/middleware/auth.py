"""Auth middleware -- FastAPI dependencies for the acting identity.

The acting identity is resolved from a Bearer session token issued by
``/api/identity/register`` or ``/api/identity/verify``. Role checks happen in
the core, never here.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, status

from anontrust.config import Settings
from anontrust.errors import InvalidCredential, NotFound
from anontrust.identity.directory import LocalDirectory
from anontrust.identity.models import Identity
from anontrust.services import Services, build_services

# Shared services instance
_services: Optional[Services] = None


def get_services() -> Services:
    """Return the singleton Services instance.

    The web layer is itself the identity directory, so it always serves
    records from the local directory file.
    """
    global _services
    if _services is None:
        settings = Settings.from_env()
        _services = build_services(settings, directory=LocalDirectory(settings))
    return _services


def set_services(services: Optional[Services]) -> None:
    """Replace the shared services (used by tests and embedding apps)."""
    global _services
    _services = services


async def get_current_identity(
    authorization: Optional[str] = Header(None),
) -> Identity:
    """FastAPI dependency that resolves the acting identity.

    Accepts ``Authorization: Bearer <session-token>``. Raises
    ``401 Unauthorized`` if the token is missing, unknown, expired, or
    belongs to an identity the directory no longer knows.
    """
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            services = get_services()
            try:
                identity_id = services.tokens.resolve(token)
                return services.directory.lookup(identity_id).identity
            except (InvalidCredential, NotFound):
                pass

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
