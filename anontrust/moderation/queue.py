"""Moderation queue engine: prioritisation, trust labelling, and role-gated
transitions of flagged content.

Lifecycle of an item::

    pending ──approve──▶ approved   (terminal)
       │  └───reject───▶ rejected   (terminal)
       └─escalate─▶ escalated ──approve/reject (needs resolve_escalations)──▶ terminal
                       └─escalate (re-entrant, priority capped at urgent)

Actions on one item are serialised, so two moderators can never both resolve
the same item. Different items proceed independently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from anontrust.auth.permissions import (
    APPROVE_CONTENT,
    RESOLVE_ESCALATIONS,
    TRUST_LABEL_TEXT,
    TrustLabel,
    trust_label,
)
from anontrust.auth.roles import TrustRoleModel
from anontrust.config import Settings
from anontrust.errors import AlreadyResolved, AnonTrustError, PermissionDenied
from anontrust.identity.models import Identity
from anontrust.locks import KeyedLocks
from anontrust.moderation.models import (
    BulkFailure,
    BulkResult,
    ContentType,
    HistoryEntry,
    ModerationAction,
    ModerationItem,
    ModerationStatus,
    Priority,
    QueueStats,
)
from anontrust.moderation.store import ModerationStore
from anontrust.security.audit_log import RESOURCE_MODERATION_ITEM, AuditLogger

log = logging.getLogger(__name__)

URGENT_FLAG_COUNT = 5
HIGH_FLAG_COUNT = 3


def priority_rank(item: ModerationItem) -> int:
    """Total display order: urgent(0) < high(1) < normal(2) < low(3)."""
    return item.priority.rank


def derive_priority(author_trust_score: float, flag_count: int, automated: bool = False) -> Priority:
    """Initial priority of a flagged item from community flags and author trust."""
    label = trust_label(author_trust_score)
    if flag_count >= URGENT_FLAG_COUNT:
        return Priority.urgent
    if flag_count >= HIGH_FLAG_COUNT or (automated and label == "low"):
        return Priority.high
    if label == "high":
        return Priority.low
    return Priority.normal


@dataclass
class QueueEntry:
    """An item with moderator-facing trust context."""

    item: ModerationItem
    trust_label: TrustLabel
    trust_text: str


class ModerationQueueEngine:
    """Lists the queue and applies approve / reject / escalate decisions."""

    def __init__(
        self,
        store: ModerationStore,
        roles: TrustRoleModel,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._roles = roles
        self._audit = audit
        timeout = (settings or Settings()).io_timeout
        self._item_locks = KeyedLocks(timeout, name="moderation item")
        self._content_locks = KeyedLocks(timeout, name="flagged content")

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list(
        self,
        status: Optional[ModerationStatus | str] = None,
        priority: Optional[Priority | str] = None,
    ) -> list[ModerationItem]:
        """Filter the current queue snapshot by status and/or priority."""
        return self._store.list_items(status=status, priority=priority)

    def ordered(
        self,
        status: Optional[ModerationStatus | str] = None,
        priority: Optional[Priority | str] = None,
    ) -> list[ModerationItem]:
        """Same as ``list`` but sorted most urgent first, then oldest first."""
        return sorted(self.list(status, priority), key=lambda i: (priority_rank(i), i.created_at))

    def get(self, item_id: str) -> ModerationItem:
        return self._store.get(item_id)

    @staticmethod
    def annotate(item: ModerationItem) -> QueueEntry:
        label = trust_label(item.author_trust_score)
        return QueueEntry(item=item, trust_label=label, trust_text=TRUST_LABEL_TEXT[label])

    def stats(self) -> QueueStats:
        items = self._store.list_items()
        stats = QueueStats(
            total=len(items),
            by_status={s.value: 0 for s in ModerationStatus},
            by_priority={p.value: 0 for p in Priority},
        )
        for item in items:
            stats.by_status[item.status.value] += 1
            stats.by_priority[item.priority.value] += 1
            if item.priority == Priority.urgent and not item.status.is_terminal:
                stats.open_urgent += 1
        return stats

    # ------------------------------------------------------------------
    # Flagging
    # ------------------------------------------------------------------

    def flag_content(
        self,
        content_type: ContentType | str,
        content_id: str,
        author_id: str,
        reason: str,
        reporter: Optional[Identity] = None,
        author_trust_score: Optional[float] = None,
        automated: bool = False,
        preview: str = "",
    ) -> ModerationItem:
        """Create a pending item, or add a community flag to an open one.

        A user report needs the reporter's ``flag_content`` permission;
        automated rules pass ``automated=True`` and no reporter.
        """
        content_type = ContentType(content_type)
        if reporter is None and not automated:
            raise ValueError("A user report needs a reporter")
        if reporter is not None:
            self._roles.require(reporter, "flag_content")
        if author_trust_score is None:
            author_trust_score = self._roles.trust_score(author_id)

        key = f"{content_type.value}:{content_id}"
        with self._content_locks.hold(key):
            existing = self._store.find_open(content_type.value, content_id)
            if existing is not None:
                with self._item_locks.hold(existing.id):
                    item = self._store.get(existing.id)
                    if reporter is not None:
                        item.community_flag_count += 1
                    derived = derive_priority(item.author_trust_score, item.community_flag_count, automated)
                    if derived.rank < item.priority.rank:
                        item.priority = derived
                    item.history.append(self._history("flag", reporter, reason))
                    self._store.put(item)
                log.info("Re-flagged item %s (%d flags)", item.id, item.community_flag_count)
                return item

            flags = 1 if reporter is not None else 0
            item = ModerationItem(
                content_type=content_type,
                content_id=content_id,
                author_id=author_id,
                author_trust_score=author_trust_score,
                priority=derive_priority(author_trust_score, flags, automated),
                flag_reason=reason,
                community_flag_count=flags,
                content_preview=preview[:280],
            )
            item.history.append(self._history("flag", reporter, reason))
            self._store.add(item)
        log.info("Flagged %s %s as item %s (%s)", content_type.value, content_id, item.id, item.priority.value)
        return item

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def approve(self, actor: Identity, item_id: str, notes: str = "") -> ModerationItem:
        return self._act(actor, item_id, ModerationAction.approve, notes)

    def reject(self, actor: Identity, item_id: str, notes: str = "") -> ModerationItem:
        return self._act(actor, item_id, ModerationAction.reject, notes)

    def escalate(self, actor: Identity, item_id: str, notes: str = "") -> ModerationItem:
        return self._act(actor, item_id, ModerationAction.escalate, notes)

    def apply(self, actor: Identity, item_id: str, action: ModerationAction | str, notes: str = "") -> ModerationItem:
        return self._act(actor, item_id, ModerationAction(action), notes)

    def bulk_apply(
        self,
        actor: Identity,
        item_ids: Iterable[str],
        action: ModerationAction | str,
        notes: str = "",
    ) -> BulkResult:
        """Apply one action to each item independently and report every outcome.

        A failing item never stops the remaining ones. An id repeated in
        ``item_ids`` is acted on once; each repeat is reported as ``duplicate``.
        """
        action = ModerationAction(action)
        result = BulkResult(action=action)
        seen: set[str] = set()
        for item_id in item_ids:
            if item_id in seen:
                result.failed.append(
                    BulkFailure(item_id=item_id, error_code="duplicate", message="Item listed more than once")
                )
                continue
            seen.add(item_id)
            try:
                self._act(actor, item_id, action, notes)
            except AnonTrustError as exc:
                result.failed.append(BulkFailure(item_id=item_id, error_code=exc.code, message=exc.message))
            else:
                result.succeeded.append(item_id)
        log.info(
            "Bulk %s by %s: %d succeeded, %d failed",
            action.value, actor.short_id, len(result.succeeded), len(result.failed),
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _history(action: str, actor: Optional[Identity], notes: str) -> HistoryEntry:
        return HistoryEntry(
            action=action,
            actor_id=actor.id if actor is not None else "system",
            notes=notes,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    def _act(self, actor: Identity, item_id: str, action: ModerationAction, notes: str) -> ModerationItem:
        try:
            self._roles.require(actor, APPROVE_CONTENT)
            with self._item_locks.hold(item_id):
                item = self._store.get(item_id)
                if item.status.is_terminal:
                    raise AlreadyResolved(f"Item '{item_id}' is already {item.status.value}")
                if item.status == ModerationStatus.escalated and action != ModerationAction.escalate:
                    self._roles.require(actor, RESOLVE_ESCALATIONS)

                previous = item.status
                if action == ModerationAction.escalate:
                    item.status = ModerationStatus.escalated
                    item.priority = Priority.from_rank(item.priority.rank - 1)
                elif action == ModerationAction.approve:
                    item.status = ModerationStatus.approved
                else:
                    item.status = ModerationStatus.rejected
                now = datetime.now(timezone.utc).isoformat()
                item.review_notes = notes
                item.reviewed_by = actor.id
                item.reviewed_at = now
                item.history.append(self._history(action.value, actor, notes))
                self._store.put(item)
        except (PermissionDenied, AlreadyResolved) as exc:
            self._record(actor, action, item_id, success=False, error_code=exc.code)
            raise

        self._record(
            actor, action, item_id,
            details={"from": previous.value, "to": item.status.value, "priority": item.priority.value, "notes": notes},
        )
        log.info("%s %s item %s (%s -> %s)", actor.short_id, action.value, item_id, previous.value, item.status.value)
        return item

    def _record(
        self,
        actor: Identity,
        action: ModerationAction,
        item_id: str,
        details: Optional[dict] = None,
        success: bool = True,
        error_code: str = "",
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_event(
            actor=actor.id,
            action=f"moderation.{action.value}",
            resource_type=RESOURCE_MODERATION_ITEM,
            resource_id=item_id,
            details=details,
            success=success,
            error_code=error_code,
        )
