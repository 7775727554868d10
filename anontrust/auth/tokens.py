"""Bearer session tokens for the web service.

Storage path: ``<home>/tokens/sessions.json`` -- a mapping of the SHA-256 of
each token to ``{"identity_id", "created_at", "expires_at"}``. Raw tokens are
returned once, at issue time, and never stored.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from anontrust.config import Settings
from anontrust.errors import InvalidCredential, StorageUnavailable
from anontrust.identity.models import parse_timestamp, utcnow
from anontrust.storage import ensure_dir, read_json, write_json

log = logging.getLogger(__name__)


@dataclass
class IssuedToken:
    token: str
    identity_id: str
    expires_at: str


class SessionTokenStore:
    """File-based store of web session tokens."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()
        self._base = ensure_dir(self._settings.path("tokens"))
        self._path = self._base / "sessions.json"
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _hash_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._settings.io_timeout):
            raise StorageUnavailable("Timed out waiting for the token store")

    def _read(self) -> dict:
        data = read_json(self._path, default={})
        if not isinstance(data, dict):
            raise StorageUnavailable("sessions.json does not hold a mapping")
        return data

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def issue(self, identity_id: str) -> IssuedToken:
        """Create a token for ``identity_id``. Expired entries are pruned."""
        now = utcnow()
        token = secrets.token_urlsafe(48)
        expires_at = (now + timedelta(hours=self._settings.token_hours)).isoformat()
        self._acquire()
        try:
            data = {
                k: v for k, v in self._read().items()
                if parse_timestamp(v["expires_at"]) > now
            }
            data[self._hash_token(token)] = {
                "identity_id": identity_id,
                "created_at": now.isoformat(),
                "expires_at": expires_at,
            }
            write_json(self._path, data)
        finally:
            self._lock.release()
        return IssuedToken(token=token, identity_id=identity_id, expires_at=expires_at)

    def resolve(self, token: str) -> str:
        """Return the identity id a token was issued to.

        Raises ``InvalidCredential`` for unknown or expired tokens.
        """
        key = self._hash_token(token)
        self._acquire()
        try:
            data = self._read()
            entry = data.get(key)
            if entry is None:
                raise InvalidCredential("Invalid or expired session token")
            if parse_timestamp(entry["expires_at"]) <= utcnow():
                del data[key]
                write_json(self._path, data)
                raise InvalidCredential("Invalid or expired session token")
        finally:
            self._lock.release()
        return entry["identity_id"]

    def revoke(self, token: str) -> bool:
        key = self._hash_token(token)
        self._acquire()
        try:
            data = self._read()
            if key not in data:
                return False
            del data[key]
            write_json(self._path, data)
        finally:
            self._lock.release()
        return True

    def revoke_all(self, identity_id: str) -> int:
        """Invalidate every token of an identity, e.g. after it is claimed."""
        self._acquire()
        try:
            data = self._read()
            kept = {k: v for k, v in data.items() if v["identity_id"] != identity_id}
            removed = len(data) - len(kept)
            if removed:
                write_json(self._path, kept)
        finally:
            self._lock.release()
        if removed:
            log.info("Revoked %d session token(s) of %s", removed, identity_id[:8])
        return removed
