"""Error taxonomy for identity, trust, role, and moderation operations.

Every error carries a stable ``code`` so that the web layer and the CLI can
report it without matching on class names.
"""

from __future__ import annotations


class AnonTrustError(Exception):
    """Base class for all anontrust errors."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(AnonTrustError):
    """Unknown identity, item, or record."""

    code = "not_found"


class PermissionDenied(AnonTrustError):
    """The acting identity's role tier lacks the required permission."""

    code = "permission_denied"

    def __init__(self, permission: str, message: str = "") -> None:
        super().__init__(message or f"Requires permission '{permission}'")
        self.permission = permission


class InvalidCredential(AnonTrustError):
    code = "invalid_credential"


class InvalidAmount(AnonTrustError):
    code = "invalid_amount"


class InvalidTier(AnonTrustError):
    code = "invalid_tier"


class MissingReason(AnonTrustError):
    code = "missing_reason"


class AlreadyResolved(AnonTrustError):
    """A moderation item is already in a terminal state."""

    code = "already_resolved"


class NoActiveIdentity(AnonTrustError):
    """An operation needs an active session identity and there is none."""

    code = "no_active_identity"


class InvalidState(AnonTrustError):
    """The session is not in a state that allows the requested step."""

    code = "invalid_state"


class StorageUnavailable(AnonTrustError):
    """Local storage could not be read or written within the timeout."""

    code = "storage_unavailable"


class NetworkUnavailable(AnonTrustError):
    """The remote identity directory could not be reached."""

    code = "network_unavailable"


# Errors that reject bad input before any state changes.
VALIDATION_ERRORS = (InvalidAmount, InvalidTier, MissingReason)
