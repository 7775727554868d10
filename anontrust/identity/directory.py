"""Identity directory: where identities are verified, registered, and synced.

Two implementations share one interface:

- ``LocalDirectory`` keeps records in ``<home>/directory/identities.json``.
- ``HttpDirectory`` talks to a remote directory service over HTTP.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from anontrust.config import Settings
from anontrust.errors import (
    AnonTrustError,
    InvalidCredential,
    InvalidState,
    NetworkUnavailable,
    NotFound,
    StorageUnavailable,
)
from anontrust.identity.credentials import hash_credential, verify_credential
from anontrust.identity.models import Identity, ProgressionState
from anontrust.storage import ensure_dir, read_json, write_json

log = logging.getLogger(__name__)


@dataclass
class DirectoryRecord:
    """An identity as known to the directory, with its last synced progression."""

    identity: Identity
    progression: ProgressionState

    def to_dict(self, include_credential: bool = False) -> dict:
        identity = self.identity.to_dict()
        if not include_credential:
            identity["credential_hash"] = ""
        return {"identity": identity, "progression": self.progression.to_dict()}

    @classmethod
    def from_dict(cls, d: dict) -> "DirectoryRecord":
        identity = Identity.from_dict(d["identity"])
        progression = d.get("progression") or {"identity_id": identity.id}
        return cls(identity=identity, progression=ProgressionState.from_dict(progression))


class IdentityDirectory(ABC):
    """Abstract directory contract used by the identity session."""

    @abstractmethod
    def register(self, identity: Identity, progression: ProgressionState) -> DirectoryRecord:
        """Record a newly created identity."""

    @abstractmethod
    def verify(self, identity_id: str, credential: Optional[str] = None) -> DirectoryRecord:
        """Verify an identity id, and its credential if the identity is claimed."""

    @abstractmethod
    def lookup(self, identity_id: str) -> DirectoryRecord:
        """Return a record without credential checks (remembered sessions)."""

    @abstractmethod
    def sync(self, identity: Identity, progression: ProgressionState) -> DirectoryRecord:
        """Push profile and progression; never changes credentials or trust."""

    @abstractmethod
    def claim(self, identity_id: str, credential: str) -> Identity:
        """Set a credential on an identity, making it claimed."""


def _merge_progression(stored: ProgressionState, incoming: ProgressionState) -> ProgressionState:
    badges = list(stored.badges)
    for badge in incoming.badges:
        if badge not in badges:
            badges.append(badge)
    xp = max(stored.xp, incoming.xp)
    return ProgressionState(
        identity_id=stored.identity_id,
        xp=xp,
        level=max(stored.level, incoming.level),
        streak_days=incoming.streak_days,
        last_active_at=incoming.last_active_at or stored.last_active_at,
        badges=badges,
        trust_score=stored.trust_score,
    )


class LocalDirectory(IdentityDirectory):
    """File-based directory.

    Storage path: ``<home>/directory/identities.json`` -- a mapping of
    identity id to ``{"identity": ..., "progression": ...}``.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()
        self._base = ensure_dir(self._settings.path("directory"))
        self._path = self._base / "identities.json"
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._settings.io_timeout):
            raise StorageUnavailable("Timed out waiting for the identity directory")

    def _load_all(self) -> dict:
        data = read_json(self._path, default={})
        if not isinstance(data, dict):
            raise StorageUnavailable("identities.json does not hold a mapping")
        return data

    def _get(self, data: dict, identity_id: str) -> DirectoryRecord:
        entry = data.get(identity_id)
        if entry is None:
            raise NotFound(f"Unknown identity '{identity_id[:8]}'")
        return DirectoryRecord.from_dict(entry)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register(self, identity: Identity, progression: ProgressionState) -> DirectoryRecord:
        self._acquire()
        try:
            data = self._load_all()
            if identity.id in data:
                raise InvalidState(f"Identity '{identity.short_id}' is already registered")
            record = DirectoryRecord(identity=identity, progression=progression)
            data[identity.id] = record.to_dict(include_credential=True)
            write_json(self._path, data)
        finally:
            self._lock.release()
        log.info("Registered identity %s", identity.short_id)
        return record

    def verify(self, identity_id: str, credential: Optional[str] = None) -> DirectoryRecord:
        self._acquire()
        try:
            record = self._get(self._load_all(), identity_id)
        finally:
            self._lock.release()
        if record.identity.is_claimed:
            if not credential or not verify_credential(credential, record.identity.credential_hash):
                log.warning("Credential mismatch for identity %s", identity_id[:8])
                raise InvalidCredential("Invalid identity or credential")
        return record

    def lookup(self, identity_id: str) -> DirectoryRecord:
        self._acquire()
        try:
            return self._get(self._load_all(), identity_id)
        finally:
            self._lock.release()

    def sync(self, identity: Identity, progression: ProgressionState) -> DirectoryRecord:
        self._acquire()
        try:
            data = self._load_all()
            stored = self._get(data, identity.id)
            stored.identity.nickname = identity.nickname
            stored.identity.avatar = identity.avatar
            stored.identity.privacy_settings = identity.privacy_settings
            stored.identity.last_active_at = identity.last_active_at
            stored.progression = _merge_progression(stored.progression, progression)
            data[identity.id] = stored.to_dict(include_credential=True)
            write_json(self._path, data)
            return stored
        finally:
            self._lock.release()

    def claim(self, identity_id: str, credential: str) -> Identity:
        credential_hash = hash_credential(credential)
        self._acquire()
        try:
            data = self._load_all()
            stored = self._get(data, identity_id)
            if stored.identity.is_claimed:
                raise InvalidState(f"Identity '{identity_id[:8]}' is already claimed")
            stored.identity.credential_hash = credential_hash
            stored.identity.is_anonymous = False
            data[identity_id] = stored.to_dict(include_credential=True)
            write_json(self._path, data)
        finally:
            self._lock.release()
        log.info("Identity %s claimed with a credential", identity_id[:8])
        return stored.identity

    def set_trust_score(self, identity_id: str, trust_score: float) -> None:
        """Record an externally maintained trust score for an identity."""
        self._acquire()
        try:
            data = self._load_all()
            stored = self._get(data, identity_id)
            stored.progression.trust_score = trust_score
            data[identity_id] = stored.to_dict(include_credential=True)
            write_json(self._path, data)
        finally:
            self._lock.release()


class HttpDirectory(IdentityDirectory):
    """Directory client for a remote identity service.

    Endpoints (relative to ``base_url``):
    - ``POST /api/identity/register``
    - ``POST /api/identity/verify``
    - ``GET  /api/identity/{id}``
    - ``POST /api/identity/sync``
    - ``POST /api/identity/{id}/claim``

    Register, verify and claim responses carry a session token; it is kept
    and sent as a Bearer token on sync and claim, which the service only
    accepts from the identity itself.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None

    def close(self) -> None:
        self._client.close()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    def _keep_token(self, data: dict) -> dict:
        token = data.get("session_token")
        if token:
            self._token = token
        return data

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkUnavailable(f"Directory timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkUnavailable(f"Directory unreachable: {exc}") from exc

        if resp.status_code == 404:
            raise NotFound(_detail(resp, "Unknown identity"))
        if resp.status_code == 401:
            raise InvalidCredential(_detail(resp, "Invalid identity or credential"))
        if resp.status_code == 409:
            raise InvalidState(_detail(resp, "Conflicting identity state"))
        if resp.status_code >= 500:
            raise NetworkUnavailable(f"Directory error {resp.status_code}")
        if resp.status_code >= 400:
            raise AnonTrustError(_detail(resp, f"Directory rejected request ({resp.status_code})"))
        try:
            return resp.json()
        except ValueError as exc:
            raise NetworkUnavailable("Directory returned malformed JSON") from exc

    def register(self, identity: Identity, progression: ProgressionState) -> DirectoryRecord:
        body = DirectoryRecord(identity=identity, progression=progression).to_dict()
        data = self._keep_token(self._request("POST", "/api/identity/register", json=body))
        return DirectoryRecord.from_dict(data)

    def verify(self, identity_id: str, credential: Optional[str] = None) -> DirectoryRecord:
        body = {"identity_id": identity_id, "credential": credential}
        data = self._keep_token(self._request("POST", "/api/identity/verify", json=body))
        return DirectoryRecord.from_dict(data)

    def lookup(self, identity_id: str) -> DirectoryRecord:
        return DirectoryRecord.from_dict(self._request("GET", f"/api/identity/{identity_id}"))

    def sync(self, identity: Identity, progression: ProgressionState) -> DirectoryRecord:
        body = DirectoryRecord(identity=identity, progression=progression).to_dict()
        data = self._request("POST", "/api/identity/sync", json=body, headers=self._auth_headers())
        return DirectoryRecord.from_dict(data)

    def claim(self, identity_id: str, credential: str) -> Identity:
        data = self._keep_token(
            self._request(
                "POST",
                f"/api/identity/{identity_id}/claim",
                json={"credential": credential},
                headers=self._auth_headers(),
            )
        )
        return Identity.from_dict(data["identity"])


def _detail(resp: httpx.Response, fallback: str) -> str:
    try:
        return str(resp.json().get("detail", fallback))
    except ValueError:
        return fallback


def directory_from_settings(settings: Settings) -> IdentityDirectory:
    """Return an HTTP directory when a URL is configured, else the local one."""
    if settings.directory_url:
        return HttpDirectory(settings.directory_url, timeout=settings.io_timeout)
    return LocalDirectory(settings)
