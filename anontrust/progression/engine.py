"""Progression engine: XP, levels, streaks, badges, and the trust score.

Levels follow a fixed table of cumulative XP thresholds, 100 XP per level:
level 1 at 0 XP, level 2 at 100 XP, level 3 at 200 XP, and so on.

Every mutation for an identity runs under that identity's lock and performs
its read-modify-write inside it, so concurrent grants are applied in order
and none is lost to a stale read.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from anontrust.config import Settings
from anontrust.errors import InvalidAmount
from anontrust.identity.models import Identity, ProgressionState, parse_timestamp, utcnow
from anontrust.identity.store import IdentityStore
from anontrust.locks import KeyedLocks
from anontrust.security.audit_log import RESOURCE_TRUST, AuditLogger

log = logging.getLogger(__name__)

XP_PER_LEVEL = 100
MIN_TRUST_SCORE = 0.1
MAX_TRUST_SCORE = 5.0


def threshold(level: int) -> int:
    """Return the cumulative XP needed to reach ``level``."""
    if level < 1:
        raise ValueError("Levels start at 1")
    return XP_PER_LEVEL * (level - 1)


def level_for_xp(xp: int) -> int:
    """Return the largest level whose threshold is <= ``xp``."""
    if xp < 0:
        raise ValueError("XP cannot be negative")
    return xp // XP_PER_LEVEL + 1


def level_progress(xp: int) -> tuple[int, int]:
    """Return ``(xp into the current level, xp span of the level)``."""
    level = level_for_xp(xp)
    return xp - threshold(level), threshold(level + 1) - threshold(level)


# ---------------------------------------------------------------------------
# Badges and activities
# ---------------------------------------------------------------------------

BADGE_CATALOGUE: dict[str, dict[str, str]] = {
    "first_lesson": {"name": "First Steps", "description": "Completed a first lesson"},
    "quiz_champion": {"name": "Quiz Champion", "description": "Passed a quiz with 200 XP earned"},
    "lesson_master": {"name": "Lesson Master", "description": "Earned 500 XP"},
    "civic_scholar": {"name": "Civic Scholar", "description": "Earned 1000 XP"},
    "knowledge_seeker": {"name": "Knowledge Seeker", "description": "Earned 2000 XP"},
    "streak_warrior": {"name": "Streak Warrior", "description": "Kept a 7-day activity streak"},
    "early_adopter": {"name": "Early Adopter", "description": "Joined during the first release"},
}

_UNKNOWN_BADGE = {"name": "Unknown Badge", "description": "Badge information not available"}


def badge_info(badge_id: str) -> dict[str, str]:
    return BADGE_CATALOGUE.get(badge_id, _UNKNOWN_BADGE)


class Activity(str, Enum):
    lesson_completed = "lesson_completed"
    quiz_passed = "quiz_passed"
    module_completed = "module_completed"
    streak_achieved = "streak_achieved"


ACTIVITY_XP: dict[Activity, int] = {
    Activity.lesson_completed: 25,
    Activity.quiz_passed: 50,
    Activity.module_completed: 100,
    Activity.streak_achieved: 20,
}

_STREAK_ACTIVITIES = {Activity.lesson_completed, Activity.quiz_passed}
_STREAK_BADGE_DAYS = 7


@dataclass(frozen=True)
class _BadgeRule:
    badge_id: str
    min_xp: int
    activity: Optional[Activity] = None


_BADGE_RULES = [
    _BadgeRule("first_lesson", 0, Activity.lesson_completed),
    _BadgeRule("quiz_champion", 200, Activity.quiz_passed),
    _BadgeRule("lesson_master", 500),
    _BadgeRule("civic_scholar", 1000),
    _BadgeRule("knowledge_seeker", 2000),
]


@dataclass
class XPResult:
    xp: int
    level: int
    leveled_up: bool


@dataclass
class ActivityResult:
    activity: Activity
    xp: XPResult
    streak_days: Optional[int] = None
    new_badges: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ProgressionEngine:
    """Computes and persists progression for the current device identity."""

    def __init__(
        self,
        store: IdentityStore,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._audit = audit
        self._clock = clock
        self._locks = KeyedLocks(self._settings.io_timeout, name="identity")

    def state(self, identity: Identity) -> ProgressionState:
        """Return the stored progression for ``identity``."""
        return self._store.load_progression(identity.id)

    def add_xp(self, identity: Identity, amount: int, reason: str = "") -> XPResult:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount(f"XP amount must be an integer, got {amount!r}")
        if amount < 0:
            raise InvalidAmount(f"XP amount must be >= 0, got {amount}")

        with self._locks.hold(identity.id):
            state = self._store.load_progression(identity.id)
            old_level = level_for_xp(state.xp)
            state.xp += amount
            state.level = level_for_xp(state.xp)
            self._store.save_progression(state)

        leveled_up = state.level > old_level
        if leveled_up:
            log.info("Identity %s reached level %d (%s)", identity.short_id, state.level, reason)
        return XPResult(xp=state.xp, level=state.level, leveled_up=leveled_up)

    def update_streak(self, identity: Identity, now: Optional[datetime] = None) -> int:
        """Advance the daily activity streak and return the new streak length.

        Repeated calls on the same UTC day leave the streak unchanged. A gap
        within the grace window extends it; a longer gap resets it to 1.
        """
        now = now or self._clock()
        grace = timedelta(hours=self._settings.streak_grace_hours)

        with self._locks.hold(identity.id):
            state = self._store.load_progression(identity.id)
            if not state.last_active_at or state.streak_days < 1:
                state.streak_days = 1
            else:
                last = parse_timestamp(state.last_active_at)
                if last.date() == now.date() or now <= last:
                    return state.streak_days
                if now - last <= grace:
                    state.streak_days += 1
                else:
                    state.streak_days = 1
            state.last_active_at = now.isoformat()
            self._store.save_progression(state)
        return state.streak_days

    def add_badge(self, identity: Identity, badge_id: str) -> bool:
        """Add ``badge_id``. Returns False if the badge was already held."""
        if not badge_id:
            raise ValueError("badge_id must not be empty")
        with self._locks.hold(identity.id):
            state = self._store.load_progression(identity.id)
            if badge_id in state.badges:
                return False
            state.badges.append(badge_id)
            self._store.save_progression(state)
        log.info("Identity %s earned badge %s", identity.short_id, badge_id)
        return True

    def trust_score(self, identity: Identity) -> float:
        return self._store.load_progression(identity.id).trust_score

    def adjust_trust(self, identity: Identity, delta: float, reason: str) -> float:
        """Apply an externally decided trust change, clamped to the valid range."""
        if not isinstance(delta, (int, float)) or isinstance(delta, bool) or not math.isfinite(delta):
            raise InvalidAmount(f"Trust delta must be a finite number, got {delta!r}")
        with self._locks.hold(identity.id):
            state = self._store.load_progression(identity.id)
            previous = state.trust_score
            state.trust_score = round(
                max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, previous + delta)), 2
            )
            self._store.save_progression(state)
        if self._audit is not None:
            self._audit.log_event(
                actor=identity.id,
                action="trust.adjust",
                resource_type=RESOURCE_TRUST,
                resource_id=identity.id,
                details={"delta": delta, "previous": previous, "new": state.trust_score, "reason": reason},
            )
        return state.trust_score

    def record_activity(self, identity: Identity, activity: Activity | str) -> ActivityResult:
        """Award XP for an activity, extend the streak, and grant milestone badges."""
        activity = Activity(activity)
        with self._locks.hold(identity.id):
            xp = self.add_xp(identity, ACTIVITY_XP[activity], activity.value)
            result = ActivityResult(activity=activity, xp=xp)
            if activity in _STREAK_ACTIVITIES:
                result.streak_days = self.update_streak(identity)
            for rule in _BADGE_RULES:
                if rule.activity is not None and rule.activity != activity:
                    continue
                if xp.xp >= rule.min_xp and self.add_badge(identity, rule.badge_id):
                    result.new_badges.append(rule.badge_id)
            if (result.streak_days or 0) >= _STREAK_BADGE_DAYS and self.add_badge(identity, "streak_warrior"):
                result.new_badges.append("streak_warrior")
        return result
