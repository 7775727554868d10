"""Data models for the moderation queue."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ContentType(str, Enum):
    post = "post"
    submission = "submission"


class Priority(str, Enum):
    urgent = "urgent"
    high = "high"
    normal = "normal"
    low = "low"

    @property
    def rank(self) -> int:
        """Display order: urgent first."""
        return {
            Priority.urgent: 0,
            Priority.high: 1,
            Priority.normal: 2,
            Priority.low: 3,
        }[self]

    @classmethod
    def from_rank(cls, rank: int) -> "Priority":
        rank = max(0, min(3, rank))
        return next(p for p in cls if p.rank == rank)


class ModerationStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    escalated = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self in (ModerationStatus.approved, ModerationStatus.rejected)


class ModerationAction(str, Enum):
    approve = "approve"
    reject = "reject"
    escalate = "escalate"


@dataclass
class HistoryEntry:
    action: str
    actor_id: str
    notes: str = ""
    timestamp: str = ""


@dataclass
class ModerationItem:
    """A flagged piece of content awaiting a decision."""

    content_type: ContentType
    content_id: str
    author_id: str
    author_trust_score: float = 1.0
    priority: Priority = Priority.normal
    status: ModerationStatus = ModerationStatus.pending
    flag_reason: str = ""
    community_flag_count: int = 0
    content_preview: str = ""
    review_notes: str = ""
    reviewed_by: str = ""
    reviewed_at: str = ""
    history: list[HistoryEntry] = field(default_factory=list)
    id: str = ""
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = uuid.uuid4().hex[:12]
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()
        self.content_type = ContentType(self.content_type)
        self.priority = Priority(self.priority)
        self.status = ModerationStatus(self.status)
        self.history = [
            h if isinstance(h, HistoryEntry) else HistoryEntry(**h) for h in self.history
        ]

    def to_dict(self) -> dict:
        d = asdict(self)
        d["content_type"] = self.content_type.value
        d["priority"] = self.priority.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "ModerationItem":
        return cls(**d)


@dataclass
class BulkFailure:
    item_id: str
    error_code: str
    message: str


@dataclass
class BulkResult:
    """Per-item outcome of a bulk action; both lists are always reported."""

    action: ModerationAction
    succeeded: list[str] = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)

    @property
    def failed_ids(self) -> list[str]:
        return [f.item_id for f in self.failed]


@dataclass
class QueueStats:
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)
    open_urgent: int = 0
