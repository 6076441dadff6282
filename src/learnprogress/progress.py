"""SQLite persistence for learner progress, unlock records and the XP ledger."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path

from .errors import InvalidInputError, UnknownLessonError
from .level_curve import DEFAULT_CURVE, LevelCurve
from .models import AchievementUnlockRecord, LessonCatalog, ProgressSnapshot, XpEvent
from .streaks import Clock, StreakState, SystemClock, next_streak_state, streak_state_of

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DAILY_CHALLENGE_XP = 50
LESSON_COMPLETION_REASON = "lesson completion"


class ProgressStore:
    """Single owner of mutable learner progress.

    Every mutation is written to SQLite in one transaction and then published as
    a new immutable `ProgressSnapshot`. Callers must serialize mutations; the
    store does no locking of its own.
    """

    def __init__(
        self,
        db_path: Path | str,
        catalog: LessonCatalog,
        clock: Clock | None = None,
        curve: LevelCurve = DEFAULT_CURVE,
    ) -> None:
        """Open (or create) the database and load the stored snapshot."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        # Writes happen on the service's writer thread, not the opening thread.
        self._conn = sqlite3.connect(target, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.catalog = catalog
        self.clock: Clock = clock or SystemClock()
        self.curve = curve
        self._apply_migrations()
        self._snapshot = self._load_snapshot()
        self._unlocks = self._load_unlocks()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            with self._conn:
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, self.clock.now().isoformat()),
                )
            logger.info("Applied progress schema migration v%d", version)

    def _migrate_to_v1(self) -> None:
        """Create progress, completion, unlock and XP ledger tables."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS progress (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    total_xp INTEGER NOT NULL,
                    current_streak INTEGER NOT NULL,
                    longest_streak INTEGER NOT NULL,
                    last_active_date TEXT,
                    daily_challenge_completed_today INTEGER NOT NULL,
                    user_name TEXT NOT NULL,
                    study_time_minutes INTEGER NOT NULL,
                    daily_challenges_completed INTEGER NOT NULL,
                    last_daily_challenge_date TEXT,
                    updated_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS completed_lessons (
                    lesson_id TEXT PRIMARY KEY,
                    completed_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS achievement_unlocks (
                    achievement_id TEXT PRIMARY KEY,
                    unlocked_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS xp_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    amount INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """)

    def _load_snapshot(self) -> ProgressSnapshot:
        row = self._conn.execute("SELECT * FROM progress WHERE id = 1").fetchone()
        completed = frozenset(
            str(item["lesson_id"]) for item in self._conn.execute("SELECT lesson_id FROM completed_lessons")
        )
        if row is None:
            return ProgressSnapshot(completed_lessons=completed)
        return ProgressSnapshot(
            total_xp=int(row["total_xp"]),
            current_streak=int(row["current_streak"]),
            longest_streak=int(row["longest_streak"]),
            completed_lessons=completed,
            last_active_date=_parse_date(row["last_active_date"]),
            daily_challenge_completed_today=bool(row["daily_challenge_completed_today"]),
            user_name=str(row["user_name"]),
            study_time_minutes=int(row["study_time_minutes"]),
            daily_challenges_completed=int(row["daily_challenges_completed"]),
            last_daily_challenge_date=_parse_date(row["last_daily_challenge_date"]),
        )

    def _load_unlocks(self) -> dict[str, AchievementUnlockRecord]:
        rows = self._conn.execute(
            "SELECT achievement_id, unlocked_at FROM achievement_unlocks ORDER BY unlocked_at, achievement_id"
        ).fetchall()
        return {
            str(row["achievement_id"]): AchievementUnlockRecord(
                achievement_id=str(row["achievement_id"]),
                unlocked_at=datetime.fromisoformat(str(row["unlocked_at"])),
            )
            for row in rows
        }

    def _write_snapshot(self, snapshot: ProgressSnapshot, previous: ProgressSnapshot) -> None:
        """Persist a snapshot inside the caller's transaction, inserting lessons new since `previous`."""
        now = self.clock.now().isoformat()
        self._conn.execute(
            """
            INSERT INTO progress (
                id,
                total_xp,
                current_streak,
                longest_streak,
                last_active_date,
                daily_challenge_completed_today,
                user_name,
                study_time_minutes,
                daily_challenges_completed,
                last_daily_challenge_date,
                updated_at
            )
            VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                total_xp = excluded.total_xp,
                current_streak = excluded.current_streak,
                longest_streak = excluded.longest_streak,
                last_active_date = excluded.last_active_date,
                daily_challenge_completed_today = excluded.daily_challenge_completed_today,
                user_name = excluded.user_name,
                study_time_minutes = excluded.study_time_minutes,
                daily_challenges_completed = excluded.daily_challenges_completed,
                last_daily_challenge_date = excluded.last_daily_challenge_date,
                updated_at = excluded.updated_at
            """,
            (
                snapshot.total_xp,
                snapshot.current_streak,
                snapshot.longest_streak,
                _format_date(snapshot.last_active_date),
                int(snapshot.daily_challenge_completed_today),
                snapshot.user_name,
                snapshot.study_time_minutes,
                snapshot.daily_challenges_completed,
                _format_date(snapshot.last_daily_challenge_date),
                now,
            ),
        )
        new_lessons = snapshot.completed_lessons - previous.completed_lessons
        self._conn.executemany(
            "INSERT OR IGNORE INTO completed_lessons (lesson_id, completed_at) VALUES (?, ?)",
            [(lesson_id, now) for lesson_id in sorted(new_lessons)],
        )

    def _commit(self, snapshot: ProgressSnapshot) -> None:
        with self._conn:
            self._write_snapshot(snapshot, self._snapshot)
        self._snapshot = snapshot

    def snapshot(self) -> ProgressSnapshot:
        """Return the current immutable snapshot."""
        return self._snapshot

    def add_xp(self, amount: int, reason: str) -> bool:
        """Add XP and return whether the learner reached a new level."""
        if amount <= 0:
            logger.warning("Ignoring non-positive XP award %d (%s)", amount, reason)
            return False
        return self._award(self._snapshot, amount, reason)

    def _award(
        self,
        base: ProgressSnapshot,
        amount: int,
        reason: str,
        unlock: AchievementUnlockRecord | None = None,
    ) -> bool:
        """Write `base` plus `amount` XP, its ledger row and any unlock in one transaction."""
        previous_level = self.curve.level_for(self._snapshot.total_xp).level
        updated = replace(base, total_xp=base.total_xp + amount)
        with self._conn:
            if unlock is not None:
                self._insert_unlock(unlock)
            self._write_snapshot(updated, self._snapshot)
            self._conn.execute(
                "INSERT INTO xp_events (amount, reason, created_at) VALUES (?, ?, ?)",
                (amount, reason, self.clock.now().isoformat()),
            )
        self._snapshot = updated
        if unlock is not None:
            self._publish_unlock(unlock)
        new_level = self.curve.level_for(updated.total_xp).level
        logger.info("Added %d XP for: %s (total %d)", amount, reason, updated.total_xp)
        if new_level > previous_level:
            logger.info("Level up: %d -> %d", previous_level, new_level)
            return True
        return False

    def complete_lesson(self, lesson_id: str) -> bool:
        """Mark a lesson completed and award its XP once; repeat calls return False."""
        lesson = self.catalog.get(lesson_id)
        if lesson is None:
            raise UnknownLessonError(lesson_id)
        if lesson_id in self._snapshot.completed_lessons:
            logger.debug("Lesson %s already completed; no XP awarded", lesson_id)
            return False
        logger.info("Completed lesson %s", lesson_id)
        base = replace(self._snapshot, completed_lessons=self._snapshot.completed_lessons | {lesson_id})
        self._award(base, lesson.xp_reward, LESSON_COMPLETION_REASON)
        return True

    def record_activity(self, today: date) -> StreakState:
        """Apply streak-qualifying activity on `today` and return the new streak state."""
        current = self._snapshot
        state = next_streak_state(streak_state_of(current), today)
        updated = replace(
            current,
            current_streak=state.streak,
            longest_streak=state.longest_streak,
            last_active_date=state.last_active_date,
        )
        if current.last_daily_challenge_date != today:
            updated = replace(updated, daily_challenge_completed_today=False)
        if updated != current:
            self._commit(updated)
            logger.info("Streak now %d (longest %d)", state.streak, state.longest_streak)
        return state

    def complete_daily_challenge(self, today: date) -> bool:
        """Complete today's challenge once, counting it as activity."""
        self.record_activity(today)
        if self._snapshot.last_daily_challenge_date == today:
            logger.debug("Daily challenge already completed on %s", today.isoformat())
            return False
        base = replace(
            self._snapshot,
            daily_challenge_completed_today=True,
            daily_challenges_completed=self._snapshot.daily_challenges_completed + 1,
            last_daily_challenge_date=today,
        )
        self._award(base, DAILY_CHALLENGE_XP, "daily challenge")
        return True

    def add_study_time(self, minutes: int) -> None:
        """Accumulate study time."""
        if minutes <= 0:
            raise InvalidInputError(f"Study time must be positive, got {minutes}.")
        self._commit(replace(self._snapshot, study_time_minutes=self._snapshot.study_time_minutes + minutes))

    def set_user_name(self, name: str) -> None:
        """Rename the learner."""
        cleaned = name.strip()
        if not cleaned:
            raise InvalidInputError("User name is required.")
        self._commit(replace(self._snapshot, user_name=cleaned))

    def replace_snapshot(self, snapshot: ProgressSnapshot) -> None:
        """Write a reconciled snapshot; completed lessons may not shrink."""
        missing = self._snapshot.completed_lessons - snapshot.completed_lessons
        if missing:
            raise InvalidInputError(f"Replacement would drop completed lessons: {', '.join(sorted(missing))}.")
        if snapshot.longest_streak < snapshot.current_streak:
            raise InvalidInputError("Longest streak cannot be below the current streak.")
        # The flag only holds for the day the challenge was actually done.
        done_today = snapshot.last_daily_challenge_date == self.clock.today()
        if snapshot.daily_challenge_completed_today != done_today:
            snapshot = replace(snapshot, daily_challenge_completed_today=done_today)
        if snapshot == self._snapshot:
            return
        self._commit(snapshot)

    def record_unlock(self, achievement_id: str, unlocked_at: datetime) -> bool:
        """Store an achievement unlock; returns False if it was already recorded."""
        if achievement_id in self._unlocks:
            return False
        record = AchievementUnlockRecord(achievement_id=achievement_id, unlocked_at=unlocked_at)
        with self._conn:
            self._insert_unlock(record)
        self._publish_unlock(record)
        return True

    def unlock_and_award(self, achievement_id: str, unlocked_at: datetime, xp_reward: int) -> bool:
        """Store an unlock together with its XP reward; returns False if it was already recorded."""
        if achievement_id in self._unlocks:
            return False
        if xp_reward <= 0:
            return self.record_unlock(achievement_id, unlocked_at)
        record = AchievementUnlockRecord(achievement_id=achievement_id, unlocked_at=unlocked_at)
        self._award(self._snapshot, xp_reward, f"achievement: {achievement_id}", unlock=record)
        return True

    def _insert_unlock(self, record: AchievementUnlockRecord) -> None:
        self._conn.execute(
            "INSERT INTO achievement_unlocks (achievement_id, unlocked_at) VALUES (?, ?)",
            (record.achievement_id, record.unlocked_at.isoformat()),
        )

    def _publish_unlock(self, record: AchievementUnlockRecord) -> None:
        # Replaced rather than mutated so readers on other threads never see a dict change size.
        self._unlocks = {**self._unlocks, record.achievement_id: record}

    def is_unlocked(self, achievement_id: str) -> bool:
        """Return whether an achievement has been recorded."""
        return achievement_id in self._unlocks

    def unlock_records(self) -> list[AchievementUnlockRecord]:
        """Return unlock records, oldest first."""
        return sorted(self._unlocks.values(), key=lambda item: (item.unlocked_at, item.achievement_id))

    def xp_events(self, limit: int = 20) -> list[XpEvent]:
        """Return the newest XP ledger entries first."""
        rows = self._conn.execute(
            "SELECT amount, reason, created_at FROM xp_events ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            XpEvent(
                amount=int(row["amount"]),
                reason=str(row["reason"]),
                created_at=datetime.fromisoformat(str(row["created_at"])),
            )
            for row in rows
        ]

    def completed_lesson_rows(self) -> list[dict[str, object]]:
        """Return completion rows with timestamps, for export."""
        rows = self._conn.execute(
            "SELECT lesson_id, completed_at FROM completed_lessons ORDER BY completed_at, lesson_id"
        ).fetchall()
        return [{"lesson_id": str(row["lesson_id"]), "completed_at": str(row["completed_at"])} for row in rows]

    def restore(self, snapshot: ProgressSnapshot, unlocks: Iterable[AchievementUnlockRecord]) -> None:
        """Replace all stored progress with imported data."""
        records = {record.achievement_id: record for record in unlocks}
        with self._conn:
            self._clear_tables()
            self._conn.executemany(
                "INSERT INTO achievement_unlocks (achievement_id, unlocked_at) VALUES (?, ?)",
                [(record.achievement_id, record.unlocked_at.isoformat()) for record in records.values()],
            )
            self._write_snapshot(snapshot, ProgressSnapshot())
        self._snapshot = snapshot
        self._unlocks = records
        logger.info("Restored progress with %d lessons and %d unlocks", len(snapshot.completed_lessons), len(records))

    def reset(self) -> None:
        """Replace progress with a fresh learner and clear unlocks and the XP ledger."""
        fresh = ProgressSnapshot()
        with self._conn:
            self._clear_tables()
            self._write_snapshot(fresh, fresh)
        self._snapshot = fresh
        self._unlocks = {}
        logger.info("Progress reset")

    def _clear_tables(self) -> None:
        self._conn.execute("DELETE FROM completed_lessons")
        self._conn.execute("DELETE FROM achievement_unlocks")
        self._conn.execute("DELETE FROM xp_events")
        self._conn.execute("DELETE FROM progress")

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort connection cleanup."""
        try:
            self.close()
        except Exception:
            pass


def _parse_date(value: object) -> date | None:
    if value is None or value == "":
        return None
    return date.fromisoformat(str(value))


def _format_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None
