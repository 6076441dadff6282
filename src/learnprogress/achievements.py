"""Achievement predicates and one-time unlocking."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .models import AchievementDefinition, AchievementKind, AchievementUnlockRecord, ProgressSnapshot
from .progress import ProgressStore
from .streaks import Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementStatistics:
    """Aggregate unlock counts for display."""

    unlocked_count: int
    total_count: int
    completion_percentage: int
    total_xp_earned: int


@dataclass(frozen=True)
class AchievementState:
    """One catalog achievement with its unlock record, if any."""

    definition: AchievementDefinition
    record: AchievementUnlockRecord | None
    progress: float

    @property
    def unlocked(self) -> bool:
        return self.record is not None


def _measure(definition: AchievementDefinition, snapshot: ProgressSnapshot) -> int:
    """Return the snapshot quantity a threshold achievement is compared against."""
    kind = definition.kind
    if kind is AchievementKind.XP_TOTAL:
        return snapshot.total_xp
    if kind is AchievementKind.LESSONS_COMPLETED:
        return len(snapshot.completed_lessons)
    if kind is AchievementKind.STREAK:
        return snapshot.current_streak
    if kind is AchievementKind.STUDY_MINUTES:
        return snapshot.study_time_minutes
    if kind is AchievementKind.DAILY_CHALLENGES:
        return snapshot.daily_challenges_completed
    raise ValueError(f"Achievement kind {kind.value} has no threshold measure.")


def predicate_holds(definition: AchievementDefinition, snapshot: ProgressSnapshot) -> bool:
    """Evaluate an achievement's predicate against a snapshot."""
    if definition.kind is AchievementKind.CUSTOM:
        if definition.custom is None:
            raise ValueError(f"Custom achievement '{definition.id}' has no predicate.")
        return bool(definition.custom(snapshot))
    if definition.kind is AchievementKind.LESSONS_SET_COMPLETED:
        return bool(definition.lesson_ids) and definition.lesson_ids <= snapshot.completed_lessons
    return _measure(definition, snapshot) >= definition.threshold


def progress_toward(definition: AchievementDefinition, snapshot: ProgressSnapshot) -> float:
    """Return how close a snapshot is to satisfying an achievement, in [0, 1]."""
    if definition.kind is AchievementKind.CUSTOM:
        try:
            return 1.0 if predicate_holds(definition, snapshot) else 0.0
        except Exception:
            logger.debug("Achievement predicate %s failed while measuring progress", definition.id, exc_info=True)
            return 0.0
    if definition.kind is AchievementKind.LESSONS_SET_COMPLETED:
        if not definition.lesson_ids:
            return 0.0
        done = len(definition.lesson_ids & snapshot.completed_lessons)
        return done / len(definition.lesson_ids)
    if definition.threshold <= 0:
        return 1.0
    return min(1.0, _measure(definition, snapshot) / definition.threshold)


class AchievementEngine:
    """Evaluates the achievement catalog and grants each unlock exactly once."""

    def __init__(self, store: ProgressStore, definitions: Sequence[AchievementDefinition], clock: Clock) -> None:
        self.store = store
        self.definitions = tuple(definitions)
        self.clock = clock
        self._by_id = {definition.id: definition for definition in self.definitions}

    def get(self, achievement_id: str) -> AchievementDefinition | None:
        """Get one definition by id."""
        return self._by_id.get(achievement_id)

    def evaluate(self, snapshot: ProgressSnapshot | None = None) -> list[AchievementDefinition]:
        """Unlock every achievement whose predicate holds and award its XP.

        Definitions are checked in catalog order. An achievement already recorded
        is skipped, so evaluating an unchanged snapshot again returns nothing.
        A predicate that raises is logged and treated as not satisfied.
        """
        target = snapshot if snapshot is not None else self.store.snapshot()
        unlocked: list[AchievementDefinition] = []
        for definition in self.definitions:
            if self.store.is_unlocked(definition.id):
                continue
            try:
                holds = predicate_holds(definition, target)
            except Exception:
                logger.exception("Achievement predicate %s failed", definition.id)
                continue
            if not holds:
                continue
            if not self.store.unlock_and_award(definition.id, self.clock.now(), definition.xp_reward):
                continue
            logger.info("Unlocked achievement %s", definition.id)
            unlocked.append(definition)
        return unlocked

    def states(self, snapshot: ProgressSnapshot | None = None) -> list[AchievementState]:
        """Return every achievement in catalog order with unlock state."""
        target = snapshot if snapshot is not None else self.store.snapshot()
        records = {record.achievement_id: record for record in self.store.unlock_records()}
        return [
            AchievementState(
                definition=definition,
                record=records.get(definition.id),
                progress=1.0 if definition.id in records else progress_toward(definition, target),
            )
            for definition in self.definitions
        ]

    def recent_unlocks(self, limit: int) -> list[AchievementState]:
        """Return the newest unlocks first."""
        if limit <= 0:
            return []
        records = sorted(
            self.store.unlock_records(),
            key=lambda item: (item.unlocked_at, item.achievement_id),
            reverse=True,
        )
        states: list[AchievementState] = []
        for record in records:
            definition = self._by_id.get(record.achievement_id)
            if definition is None:
                continue
            states.append(AchievementState(definition=definition, record=record, progress=1.0))
            if len(states) >= limit:
                break
        return states

    def statistics(self) -> AchievementStatistics:
        """Return unlock counts and XP earned from achievements."""
        unlocked = [definition for definition in self.definitions if self.store.is_unlocked(definition.id)]
        total = len(self.definitions)
        percentage = (len(unlocked) * 100) // total if total > 0 else 0
        return AchievementStatistics(
            unlocked_count=len(unlocked),
            total_count=total,
            completion_percentage=percentage,
            total_xp_earned=sum(definition.xp_reward for definition in unlocked),
        )
