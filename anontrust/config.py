"""Runtime settings.

Settings come from ``ANONTRUST_*`` environment variables or from a YAML file.
Stores default to ``~/.anontrust/`` when no home directory is configured.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

_TRUE = {"1", "true", "yes", "on"}


def _default_home() -> Path:
    return Path.home() / ".anontrust"


@dataclass
class Settings:
    """Configuration shared by the stores, the session, and the web layer."""

    home: Path = field(default_factory=_default_home)
    io_timeout: float = 5.0
    # Discard a stored identity on start and require login again.
    force_reverify_on_start: bool = True
    allow_admin_self_assign: bool = False
    remember_days: int = 30
    streak_grace_hours: int = 48
    token_hours: int = 24
    directory_url: str = ""

    def __post_init__(self) -> None:
        self.home = Path(self.home).expanduser()
        if self.io_timeout <= 0:
            raise ValueError("io_timeout must be positive")
        if self.streak_grace_hours < 24:
            raise ValueError("streak_grace_hours must be at least 24")
        if self.token_hours <= 0:
            raise ValueError("token_hours must be positive")

    def path(self, *parts: str) -> Path:
        """Return a path below the configured home directory."""
        return self.home.joinpath(*parts)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings from ``ANONTRUST_*`` environment variables."""
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        if env.get("ANONTRUST_HOME"):
            data["home"] = Path(env["ANONTRUST_HOME"])
        if env.get("ANONTRUST_IO_TIMEOUT"):
            data["io_timeout"] = float(env["ANONTRUST_IO_TIMEOUT"])
        if env.get("ANONTRUST_FORCE_REVERIFY"):
            data["force_reverify_on_start"] = env["ANONTRUST_FORCE_REVERIFY"].lower() in _TRUE
        if env.get("ANONTRUST_ALLOW_ADMIN_SELF_ASSIGN"):
            data["allow_admin_self_assign"] = (
                env["ANONTRUST_ALLOW_ADMIN_SELF_ASSIGN"].lower() in _TRUE
            )
        if env.get("ANONTRUST_REMEMBER_DAYS"):
            data["remember_days"] = int(env["ANONTRUST_REMEMBER_DAYS"])
        if env.get("ANONTRUST_TOKEN_HOURS"):
            data["token_hours"] = int(env["ANONTRUST_TOKEN_HOURS"])
        if env.get("ANONTRUST_DIRECTORY_URL"):
            data["directory_url"] = env["ANONTRUST_DIRECTORY_URL"]
        return cls(**data)

    @classmethod
    def from_file(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file with a top-level mapping."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping of settings")
        if "home" in data:
            data["home"] = Path(data["home"])
        return cls.from_mapping(data)
