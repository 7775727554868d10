"""Tests for runtime settings."""

import tempfile
from pathlib import Path

import pytest
import yaml

from anontrust.config import Settings


def test_defaults():
    settings = Settings(home=Path("/tmp/anontrust-home"))
    assert settings.force_reverify_on_start is True
    assert settings.allow_admin_self_assign is False
    assert settings.remember_days == 30
    assert settings.streak_grace_hours == 48
    assert settings.token_hours == 24
    assert settings.path("identity") == Path("/tmp/anontrust-home/identity")


def test_from_env():
    settings = Settings.from_env({
        "ANONTRUST_HOME": "/srv/anontrust",
        "ANONTRUST_IO_TIMEOUT": "2.5",
        "ANONTRUST_FORCE_REVERIFY": "off",
        "ANONTRUST_ALLOW_ADMIN_SELF_ASSIGN": "yes",
        "ANONTRUST_REMEMBER_DAYS": "7",
        "ANONTRUST_TOKEN_HOURS": "2",
        "ANONTRUST_DIRECTORY_URL": "https://directory.example.org",
    })
    assert settings.home == Path("/srv/anontrust")
    assert settings.io_timeout == 2.5
    assert settings.force_reverify_on_start is False
    assert settings.allow_admin_self_assign is True
    assert settings.remember_days == 7
    assert settings.token_hours == 2
    assert settings.directory_url == "https://directory.example.org"


def test_from_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "anontrust.yaml"
        path.write_text(yaml.safe_dump({"home": tmpdir, "force_reverify_on_start": False}))
        settings = Settings.from_file(path)
        assert settings.home == Path(tmpdir)
        assert settings.force_reverify_on_start is False


def test_from_file_rejects_unknown_keys():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "anontrust.yaml"
        path.write_text("colour: blue\n")
        with pytest.raises(ValueError):
            Settings.from_file(path)


@pytest.mark.parametrize("overrides", [{"io_timeout": 0}, {"streak_grace_hours": 12}, {"token_hours": 0}])
def test_invalid_values(overrides):
    with pytest.raises(ValueError):
        Settings(**overrides)
