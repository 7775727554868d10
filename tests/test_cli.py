"""Tests for the anontrust command line."""

import json
import tempfile
from pathlib import Path

from click.testing import CliRunner

from anontrust.cli import main
from anontrust.config import Settings
from anontrust.services import build_services


def _run(home: str, *args: str):
    return CliRunner().invoke(main, ["--home", home, *args])


def _services(home: str):
    return build_services(Settings(home=Path(home)))


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_whoami_without_identity_fails():
    with tempfile.TemporaryDirectory() as tmpdir:
        result = _run(tmpdir, "whoami")
        assert result.exit_code == 1
        assert "No identity on this device" in result.output


def test_setup_and_whoami():
    with tempfile.TemporaryDirectory() as tmpdir:
        result = _run(tmpdir, "setup", "--nickname", "Harbor")
        assert result.exit_code == 0, result.output
        assert "Created identity" in result.output

        identity = _services(tmpdir).identity_store.load()
        assert identity.nickname == "Harbor"

        result = _run(tmpdir, "whoami")
        assert result.exit_code == 0, result.output
        assert "Harbor" in result.output
        assert "anonymous" in result.output


def test_setup_rejects_overlong_nickname():
    with tempfile.TemporaryDirectory() as tmpdir:
        result = _run(tmpdir, "setup", "--nickname", "x" * 80)
        assert result.exit_code == 1
        assert "Invalid input" in result.output


def test_login_unknown_identity():
    with tempfile.TemporaryDirectory() as tmpdir:
        result = _run(tmpdir, "login", "0f8e3c1a-0000-4000-8000-000000000000")
        assert result.exit_code == 1
        assert "not_found" in result.output


def test_moderation_flow():
    with tempfile.TemporaryDirectory() as tmpdir:
        assert _run(tmpdir, "setup", "--nickname", "Admin").exit_code == 0
        assert _run(tmpdir, "roles", "bootstrap").exit_code == 0

        result = _run(tmpdir, "flag", "post", "post-7", "--author", "author-1", "--reason", "spam")
        assert result.exit_code == 0, result.output
        item_id = _services(tmpdir).moderation.list()[0].id

        result = _run(tmpdir, "queue")
        assert result.exit_code == 0
        assert "Moderation Queue (1 items)" in result.output

        result = _run(tmpdir, "moderate", item_id, "approve", "-m", "fine")
        assert result.exit_code == 0, result.output
        assert "approved" in result.output

        again = _run(tmpdir, "moderate", item_id, "approve")
        assert again.exit_code == 1
        assert "already_resolved" in again.output

        result = _run(tmpdir, "stats")
        assert result.exit_code == 0
        assert "approved" in result.output


def test_bulk_reports_failures_with_nonzero_exit():
    with tempfile.TemporaryDirectory() as tmpdir:
        _run(tmpdir, "setup")
        _run(tmpdir, "roles", "bootstrap")
        _run(tmpdir, "flag", "post", "a", "--author", "x", "--reason", "spam")
        item_id = _services(tmpdir).moderation.list()[0].id

        result = _run(tmpdir, "bulk", "reject", item_id, "missing-item")
        assert result.exit_code == 1
        assert "1 succeeded, 1 failed" in result.output
        assert "not_found" in result.output


def test_member_cannot_moderate():
    with tempfile.TemporaryDirectory() as tmpdir:
        _run(tmpdir, "setup")
        _run(tmpdir, "flag", "post", "a", "--author", "x", "--reason", "spam")
        item_id = _services(tmpdir).moderation.list()[0].id

        result = _run(tmpdir, "moderate", item_id, "reject")
        assert result.exit_code == 1
        assert "permission_denied" in result.output


def test_roles_and_audit_export():
    with tempfile.TemporaryDirectory() as tmpdir:
        _run(tmpdir, "setup", "--nickname", "Admin")
        _run(tmpdir, "roles", "bootstrap")
        admin = _services(tmpdir).identity_store.load()

        result = _run(tmpdir, "roles", "list")
        assert result.exit_code == 0
        assert "Admin" in result.output

        result = _run(tmpdir, "roles", "revoke", admin.id, "-r", "stepping down")
        assert result.exit_code == 1
        assert "invalid_tier" in result.output

        result = _run(tmpdir, "audit", "--format", "json", "--action", "role.assign")
        assert result.exit_code == 0, result.output
        events = json.loads(result.output)
        assert [e["actor"] for e in events] == [admin.id]
