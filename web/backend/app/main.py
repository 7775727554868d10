"""FastAPI application for the anontrust service.

Provides REST API endpoints wrapping the anontrust package for:
- The identity directory (register, verify, lookup, sync, claim)
- Role assignment, revocation, and history
- The moderation queue and its decisions
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Ensure the anontrust package is importable by adding the project root to sys.path.
_project_root = str(Path(__file__).resolve().parents[3])
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from anontrust import __version__
from anontrust.errors import (
    VALIDATION_ERRORS,
    AlreadyResolved,
    AnonTrustError,
    InvalidCredential,
    InvalidState,
    NetworkUnavailable,
    NoActiveIdentity,
    NotFound,
    PermissionDenied,
    StorageUnavailable,
)
from web.backend.app.routers import identity, moderation, roles

log = logging.getLogger(__name__)

app = FastAPI(
    title="anontrust API",
    description=(
        "REST API for anonymous identities, earned trust, and role-gated "
        "moderation. Provides the identity directory, role management, and "
        "the moderation queue."
    ),
    version=__version__,
)

# ---------------------------------------------------------------------------
# CORS middleware (allow all origins for development)
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Include routers
# ---------------------------------------------------------------------------
app.include_router(identity.router)
app.include_router(roles.router)
app.include_router(moderation.router)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    ((InvalidCredential, NoActiveIdentity), status.HTTP_401_UNAUTHORIZED),
    (VALIDATION_ERRORS, status.HTTP_422_UNPROCESSABLE_ENTITY),
    ((AlreadyResolved, InvalidState), status.HTTP_409_CONFLICT),
    ((StorageUnavailable, NetworkUnavailable), status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: AnonTrustError) -> int:
    for error_types, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_types):
            return code
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(AnonTrustError)
async def anontrust_error_handler(request: Request, exc: AnonTrustError):
    code = status_for(exc)
    if code >= 500:
        log.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "code": "invalid_input"},
    )


# ---------------------------------------------------------------------------
# Root and health-check endpoints
# ---------------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root():
    """Return basic API information."""
    return {
        "name": "anontrust API",
        "version": __version__,
        "description": "Anonymous identity, trust, and role-gated moderation",
        "docs": "/docs",
        "openapi": "/openapi.json",
    }


@app.get("/health", tags=["meta"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
