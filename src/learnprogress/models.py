"""Core domain models for learner progression."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


DEFAULT_USER_NAME = "Quantum Learner"


@dataclass(frozen=True)
class LessonDefinition:
    """One unit of learning content with its reward and prerequisites."""

    id: str
    track: str
    sequence_number: int
    prerequisites: frozenset[str]
    xp_reward: int
    title: str = ""
    estimated_minutes: int = 0


@dataclass(frozen=True)
class TrackDefinition:
    """Ordered collection of lessons sharing a theme."""

    id: str
    title: str
    order: int
    lesson_ids: tuple[str, ...]

    @property
    def entry_lesson_id(self) -> str | None:
        """Return the first lesson of the track, if any."""
        return self.lesson_ids[0] if self.lesson_ids else None


@dataclass(frozen=True)
class LessonCatalog:
    """Static lesson catalog, validated at load time."""

    lessons: dict[str, LessonDefinition]
    tracks: dict[str, TrackDefinition]

    def get(self, lesson_id: str) -> LessonDefinition | None:
        """Return one lesson by id."""
        return self.lessons.get(lesson_id)

    def ordered_lessons(self) -> list[LessonDefinition]:
        """Return lessons by track order, then sequence number."""
        track_order = {track.id: track.order for track in self.tracks.values()}
        return sorted(
            self.lessons.values(),
            key=lambda item: (track_order.get(item.track, 0), item.track, item.sequence_number, item.id),
        )

    def track_lessons(self, track_id: str) -> list[LessonDefinition]:
        """Return the lessons of one track in sequence order."""
        track = self.tracks[track_id]
        return [self.lessons[lesson_id] for lesson_id in track.lesson_ids]


class Category(str, Enum):
    """Grouping used to organize achievements."""

    PROGRESS = "progress"
    STREAK = "streak"
    XP = "xp"
    TIME = "time"
    MASTERY = "mastery"
    SPECIAL = "special"


class Rarity(str, Enum):
    """How hard an achievement is to earn."""

    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class AchievementKind(str, Enum):
    """Predicate variant an achievement is guarded by."""

    XP_TOTAL = "xp_total"
    LESSONS_COMPLETED = "lessons_completed"
    LESSONS_SET_COMPLETED = "lessons_set_completed"
    STREAK = "streak"
    STUDY_MINUTES = "study_minutes"
    DAILY_CHALLENGES = "daily_challenges"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable copy of learner progress at one point in time."""

    total_xp: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    completed_lessons: frozenset[str] = frozenset()
    last_active_date: date | None = None
    daily_challenge_completed_today: bool = False
    user_name: str = DEFAULT_USER_NAME
    study_time_minutes: int = 0
    daily_challenges_completed: int = 0
    last_daily_challenge_date: date | None = None


@dataclass(frozen=True)
class AchievementDefinition:
    """One-time badge guarded by a predicate over progress state."""

    id: str
    title: str
    category: Category
    rarity: Rarity
    xp_reward: int
    kind: AchievementKind
    description: str = ""
    threshold: int = 0
    lesson_ids: frozenset[str] = frozenset()
    custom: Callable[[ProgressSnapshot], bool] | None = field(default=None, compare=False, hash=False)


@dataclass(frozen=True)
class AchievementUnlockRecord:
    """First time an achievement predicate held."""

    achievement_id: str
    unlocked_at: datetime


@dataclass(frozen=True)
class XpEvent:
    """One XP award and why it happened."""

    amount: int
    reason: str
    created_at: datetime
