"""File-based storage for the current device identity.

Storage path: ``<home>/identity/`` with:
- ``identity.json`` -- the current identity
- ``progression.json`` -- the current identity's progression state
- ``remembered_session.json`` -- the optional "remember me" record
- ``onboarding.json`` -- whether onboarding was completed on this device
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from anontrust.config import Settings
from anontrust.errors import NotFound, StorageUnavailable
from anontrust.identity.models import Identity, ProgressionState, RememberedSession, utcnow
from anontrust.storage import ensure_dir, read_json, remove, write_json

log = logging.getLogger(__name__)


class IdentityStore:
    """Durable local record of the current pseudonymous identity.

    Every operation holds the store lock, acquired with a bounded wait, so a
    reader never observes a half-applied write or wipe.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()
        self._base = ensure_dir(self._settings.path("identity"))
        self._identity_path = self._base / "identity.json"
        self._progression_path = self._base / "progression.json"
        self._remembered_path = self._base / "remembered_session.json"
        self._onboarding_path = self._base / "onboarding.json"
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._settings.io_timeout):
            raise StorageUnavailable("Timed out waiting for the identity store")
        try:
            yield
        finally:
            self._lock.release()

    def _read_dict(self, path: Path) -> Optional[dict]:
        data = read_json(path)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise StorageUnavailable(f"{path.name} does not hold a record")
        return data

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def load(self) -> Identity:
        """Return the current identity. Raises ``NotFound`` if there is none."""
        with self._locked():
            data = self._read_dict(self._identity_path)
        if data is None:
            raise NotFound("No identity stored on this device")
        try:
            return Identity.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageUnavailable(f"Stored identity is corrupt: {exc}") from exc

    def exists(self) -> bool:
        with self._locked():
            return self._identity_path.exists()

    def save(self, identity: Identity) -> None:
        """Replace the current identity record in one atomic write."""
        with self._locked():
            current = self._read_dict(self._identity_path)
            if current is not None and current.get("id") != identity.id:
                # A different identity takes over the device; its progression
                # must not inherit the previous identity's counters.
                remove(self._progression_path)
            write_json(self._identity_path, identity.to_dict())

    def clear_identity(self) -> None:
        """Remove the identity and its progression, keeping other records."""
        with self._locked():
            self._remove_together([self._identity_path, self._progression_path])
        log.info("Cleared stored identity")

    # ------------------------------------------------------------------
    # Progression
    # ------------------------------------------------------------------

    def load_progression(self, identity_id: str) -> ProgressionState:
        """Return the progression of the current identity.

        A current identity with no progression yet gets a fresh state. An id
        that is not the current identity raises ``NotFound``.
        """
        with self._locked():
            identity = self._read_dict(self._identity_path)
            if identity is None or identity.get("id") != identity_id:
                raise NotFound(f"Identity '{identity_id[:8]}' is not current on this device")
            data = self._read_dict(self._progression_path)
        if data is None or data.get("identity_id") != identity_id:
            return ProgressionState(identity_id=identity_id)
        try:
            return ProgressionState.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageUnavailable(f"Stored progression is corrupt: {exc}") from exc

    def save_progression(self, state: ProgressionState) -> None:
        with self._locked():
            identity = self._read_dict(self._identity_path)
            if identity is None or identity.get("id") != state.identity_id:
                raise NotFound(
                    f"Identity '{state.identity_id[:8]}' is not current on this device"
                )
            write_json(self._progression_path, state.to_dict())

    # ------------------------------------------------------------------
    # Remembered session
    # ------------------------------------------------------------------

    def load_remembered_session(self) -> RememberedSession:
        """Return a valid remembered session. Expired records are removed."""
        with self._locked():
            data = self._read_dict(self._remembered_path)
            if data is None:
                raise NotFound("No remembered session")
            try:
                session = RememberedSession.from_dict(data)
            except (KeyError, TypeError) as exc:
                raise StorageUnavailable(f"Remembered session is corrupt: {exc}") from exc
            if session.is_expired(utcnow()):
                remove(self._remembered_path)
                raise NotFound("Remembered session has expired")
            return session

    def save_remembered_session(self, identity: Identity) -> RememberedSession:
        session = RememberedSession.for_identity(identity, self._settings.remember_days)
        with self._locked():
            write_json(self._remembered_path, session.to_dict())
        return session

    def clear_remembered_session(self) -> None:
        with self._locked():
            remove(self._remembered_path)

    # ------------------------------------------------------------------
    # Onboarding marker
    # ------------------------------------------------------------------

    def is_onboarding_completed(self) -> bool:
        with self._locked():
            data = self._read_dict(self._onboarding_path)
        return bool(data and data.get("completed"))

    def mark_onboarding_completed(self) -> None:
        with self._locked():
            write_json(
                self._onboarding_path,
                {"completed": True, "completed_at": utcnow().isoformat()},
            )

    def clear_onboarding(self) -> None:
        with self._locked():
            remove(self._onboarding_path)

    # ------------------------------------------------------------------
    # Wipe
    # ------------------------------------------------------------------

    def wipe(self) -> None:
        """Delete identity, progression, and remembered session together."""
        with self._locked():
            self._remove_together(
                [self._identity_path, self._progression_path, self._remembered_path]
            )
        log.info("Wiped identity records")

    def _remove_together(self, paths: list[Path]) -> None:
        # Move every file into a staging directory first; if any move fails the
        # ones already moved are put back, so the removal is all-or-nothing.
        try:
            staging = Path(tempfile.mkdtemp(prefix=".wipe-", dir=self._base))
        except OSError as exc:
            raise StorageUnavailable(f"Cannot stage wipe: {exc}") from exc
        moved: list[tuple[Path, Path]] = []
        try:
            for path in paths:
                if path.exists():
                    target = staging / path.name
                    os.replace(path, target)
                    moved.append((target, path))
        except OSError as exc:
            for target, original in reversed(moved):
                os.replace(target, original)
            shutil.rmtree(staging, ignore_errors=True)
            raise StorageUnavailable(f"Wipe failed: {exc}") from exc
        shutil.rmtree(staging, ignore_errors=True)
