"""Wiring of stores and engines for one home directory.

The CLI and the web layer both build their components here so that they share
one audit trail and one set of serialisation points per process.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from anontrust.auth.roles import RoleStore, TrustRoleModel
from anontrust.auth.tokens import SessionTokenStore
from anontrust.config import Settings
from anontrust.identity.directory import IdentityDirectory, directory_from_settings
from anontrust.identity.store import IdentityStore
from anontrust.moderation.queue import ModerationQueueEngine
from anontrust.moderation.store import ModerationStore
from anontrust.progression.engine import ProgressionEngine
from anontrust.security.audit_log import AuditLogger


@dataclass
class Services:
    settings: Settings
    audit: AuditLogger
    identity_store: IdentityStore
    directory: IdentityDirectory
    progression: ProgressionEngine
    roles: TrustRoleModel
    moderation: ModerationQueueEngine
    tokens: SessionTokenStore


def build_services(
    settings: Optional[Settings] = None,
    directory: Optional[IdentityDirectory] = None,
) -> Services:
    settings = settings or Settings.from_env()
    audit = AuditLogger(settings.path("audit_logs"))
    identity_store = IdentityStore(settings)
    progression = ProgressionEngine(identity_store, settings, audit=audit)
    roles = TrustRoleModel(RoleStore(settings), settings, progression=progression, audit=audit)
    moderation = ModerationQueueEngine(ModerationStore(settings), roles, settings, audit=audit)
    return Services(
        settings=settings,
        audit=audit,
        identity_store=identity_store,
        directory=directory or directory_from_settings(settings),
        progression=progression,
        roles=roles,
        moderation=moderation,
        tokens=SessionTokenStore(settings),
    )
