"""Tests for the local and HTTP identity directories."""

import json
import tempfile
import uuid
from pathlib import Path

import httpx
import pytest

from anontrust.config import Settings
from anontrust.errors import (
    AnonTrustError,
    InvalidCredential,
    InvalidState,
    NetworkUnavailable,
    NotFound,
)
from anontrust.identity.directory import (
    DirectoryRecord,
    HttpDirectory,
    LocalDirectory,
    directory_from_settings,
)
from anontrust.identity.models import Identity, ProgressionState


def _identity(**kwargs) -> Identity:
    return Identity(id=str(uuid.uuid4()), **kwargs)


def _record_json(identity: Identity, **progression) -> dict:
    return DirectoryRecord(
        identity=identity, progression=ProgressionState(identity_id=identity.id, **progression)
    ).to_dict()


# ── LocalDirectory ─────────────────────────────────────────────────────


def test_local_register_and_verify():
    with tempfile.TemporaryDirectory() as tmpdir:
        directory = LocalDirectory(Settings(home=Path(tmpdir)))
        identity = _identity(nickname="Rowan")
        directory.register(identity, ProgressionState(identity_id=identity.id, xp=40))

        record = directory.verify(identity.id)
        assert record.identity.nickname == "Rowan"
        assert record.progression.xp == 40
        with pytest.raises(NotFound):
            directory.verify(str(uuid.uuid4()))


def test_local_register_twice_conflicts():
    with tempfile.TemporaryDirectory() as tmpdir:
        directory = LocalDirectory(Settings(home=Path(tmpdir)))
        identity = _identity()
        directory.register(identity, ProgressionState(identity_id=identity.id))
        with pytest.raises(InvalidState):
            directory.register(identity, ProgressionState(identity_id=identity.id, xp=999))
        assert directory.lookup(identity.id).progression.xp == 0


def test_local_claim_requires_credential_afterwards():
    with tempfile.TemporaryDirectory() as tmpdir:
        directory = LocalDirectory(Settings(home=Path(tmpdir)))
        identity = _identity()
        directory.register(identity, ProgressionState(identity_id=identity.id))

        claimed = directory.claim(identity.id, "a long passphrase")
        assert claimed.is_claimed
        assert claimed.is_anonymous is False
        with pytest.raises(InvalidState):
            directory.claim(identity.id, "another passphrase")

        with pytest.raises(InvalidCredential):
            directory.verify(identity.id)
        with pytest.raises(InvalidCredential):
            directory.verify(identity.id, "the wrong phrase")
        assert directory.verify(identity.id, "a long passphrase").identity.id == identity.id
        # Remembered sessions resume without the credential.
        assert directory.lookup(identity.id).identity.is_claimed


def test_local_sync_merges_progression_and_keeps_trust():
    with tempfile.TemporaryDirectory() as tmpdir:
        directory = LocalDirectory(Settings(home=Path(tmpdir)))
        identity = _identity(nickname="Before")
        directory.register(
            identity, ProgressionState(identity_id=identity.id, xp=300, level=4, badges=["first_lesson"])
        )
        directory.set_trust_score(identity.id, 3.2)

        identity.nickname = "After"
        incoming = ProgressionState(
            identity_id=identity.id, xp=120, level=2, badges=["early_adopter"], trust_score=5.0
        )
        record = directory.sync(identity, incoming)

        assert record.identity.nickname == "After"
        assert record.progression.xp == 300
        assert record.progression.level == 4
        assert record.progression.badges == ["first_lesson", "early_adopter"]
        assert record.progression.trust_score == 3.2


def test_local_sync_never_changes_credential():
    with tempfile.TemporaryDirectory() as tmpdir:
        directory = LocalDirectory(Settings(home=Path(tmpdir)))
        identity = _identity()
        directory.register(identity, ProgressionState(identity_id=identity.id))
        directory.claim(identity.id, "a long passphrase")

        forged = Identity.from_dict(identity.to_dict())
        forged.credential_hash = ""
        forged.is_anonymous = True
        directory.sync(forged, ProgressionState(identity_id=identity.id))

        with pytest.raises(InvalidCredential):
            directory.verify(identity.id)


def test_record_serialisation_hides_credential_by_default():
    identity = _identity(credential_hash="pbkdf2_sha256$1$00$00")
    record = DirectoryRecord(identity=identity, progression=ProgressionState(identity_id=identity.id))
    assert record.to_dict()["identity"]["credential_hash"] == ""
    assert record.to_dict(include_credential=True)["identity"]["credential_hash"]


def test_directory_from_settings():
    with tempfile.TemporaryDirectory() as tmpdir:
        assert isinstance(directory_from_settings(Settings(home=Path(tmpdir))), LocalDirectory)
        remote = directory_from_settings(
            Settings(home=Path(tmpdir), directory_url="https://directory.example.org")
        )
        assert isinstance(remote, HttpDirectory)
        remote.close()


# ── HttpDirectory ──────────────────────────────────────────────────────


def _http(handler) -> HttpDirectory:
    return HttpDirectory("https://directory.test", transport=httpx.MockTransport(handler))


def test_http_verify_sends_credential_and_parses_record():
    identity = _identity(nickname="Remote")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_record_json(identity, xp=75))

    record = _http(handler).verify(identity.id, "secret phrase")
    assert seen["path"] == "/api/identity/verify"
    assert seen["body"] == {"identity_id": identity.id, "credential": "secret phrase"}
    assert record.identity.nickname == "Remote"
    assert record.progression.xp == 75


def test_http_register_does_not_send_credential_hash():
    identity = _identity(credential_hash="pbkdf2_sha256$1$00$00")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json=seen["body"])

    _http(handler).register(identity, ProgressionState(identity_id=identity.id))
    assert seen["body"]["identity"]["credential_hash"] == ""


@pytest.mark.parametrize(
    "status,error",
    [
        (404, NotFound),
        (401, InvalidCredential),
        (409, InvalidState),
        (400, AnonTrustError),
        (500, NetworkUnavailable),
        (503, NetworkUnavailable),
    ],
)
def test_http_status_mapping(status, error):
    directory = _http(lambda request: httpx.Response(status, json={"detail": "nope"}))
    with pytest.raises(error):
        directory.lookup(str(uuid.uuid4()))


def test_http_detail_is_carried_into_the_error():
    directory = _http(lambda request: httpx.Response(404, json={"detail": "Unknown identity 'abc'"}))
    with pytest.raises(NotFound, match="Unknown identity 'abc'"):
        directory.lookup("abc")


def test_http_transport_failures_become_network_unavailable():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    def stall(request):
        raise httpx.ReadTimeout("timed out", request=request)

    for handler in (refuse, stall):
        with pytest.raises(NetworkUnavailable):
            _http(handler).verify(str(uuid.uuid4()))


def test_http_malformed_json_is_network_unavailable():
    directory = _http(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(NetworkUnavailable):
        directory.lookup(str(uuid.uuid4()))


def test_http_claim_returns_identity():
    identity = _identity()

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == f"/api/identity/{identity.id}/claim"
        assert json.loads(request.content) == {"credential": "a long passphrase"}
        claimed = identity.to_dict()
        claimed["is_anonymous"] = False
        return httpx.Response(200, json={"identity": claimed})

    claimed = _http(handler).claim(identity.id, "a long passphrase")
    assert claimed.id == identity.id
    assert claimed.is_anonymous is False


def test_http_sends_session_token_from_verify_on_sync_and_claim():
    identity = _identity()
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen[request.url.path] = request.headers.get("Authorization")
        if request.url.path == "/api/identity/verify":
            return httpx.Response(200, json={**_record_json(identity), "session_token": "tok-1"})
        if request.url.path.endswith("/claim"):
            claimed = identity.to_dict()
            claimed["is_anonymous"] = False
            return httpx.Response(200, json={"identity": claimed, "session_token": "tok-2"})
        return httpx.Response(200, json=_record_json(identity))

    directory = _http(handler)
    directory.verify(identity.id)
    assert seen["/api/identity/verify"] is None

    directory.sync(identity, ProgressionState(identity_id=identity.id))
    assert seen["/api/identity/sync"] == "Bearer tok-1"

    directory.claim(identity.id, "a long passphrase")
    assert seen[f"/api/identity/{identity.id}/claim"] == "Bearer tok-1"
    directory.sync(identity, ProgressionState(identity_id=identity.id))
    assert seen["/api/identity/sync"] == "Bearer tok-2"


def test_http_sync_without_token_is_rejected_as_invalid_credential():
    def handler(request: httpx.Request) -> httpx.Response:
        assert "Authorization" not in request.headers
        return httpx.Response(401, json={"detail": "Not authenticated"})

    identity = _identity()
    with pytest.raises(InvalidCredential, match="Not authenticated"):
        _http(handler).sync(identity, ProgressionState(identity_id=identity.id))
