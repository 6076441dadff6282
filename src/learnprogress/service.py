"""Application service wiring progress storage, unlocks, achievements and sync."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, TypeVar, cast

from . import __version__
from .achievements import AchievementEngine, AchievementState, AchievementStatistics
from .api_client import ProgressApiClient
from .catalog_loader import load_catalog
from .config import EngineConfig
from .errors import ApiError, InvalidInputError, UnknownLessonError
from .level_curve import DEFAULT_CURVE, LevelCurve, LevelInfo
from .models import (
    DEFAULT_USER_NAME,
    AchievementDefinition,
    AchievementUnlockRecord,
    LessonCatalog,
    LessonDefinition,
    ProgressSnapshot,
    XpEvent,
)
from .progress import SCHEMA_VERSION, ProgressStore
from .reconciler import RemoteReconciler, coerce_date, coerce_int, snapshot_from_remote
from .streaks import Clock, StreakState, StreakSummary, SystemClock, streak_summary
from .unlocks import is_lesson_unlocked, is_track_unlocked, is_unlocked, missing_prerequisites, recommended_lesson

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1

T = TypeVar("T")


@dataclass(frozen=True)
class LessonState:
    """Lesson state for the current learner."""

    lesson: LessonDefinition
    unlocked: bool
    completed: bool
    missing_prerequisites: tuple[str, ...]


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of completing one lesson."""

    lesson_id: str
    newly_completed: bool
    leveled_up: bool
    unlocked_achievements: tuple[AchievementDefinition, ...]
    reported: bool
    server_xp: int | None


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of pulling remote progress."""

    ok: bool
    applied: bool
    error: str | None = None


@dataclass(frozen=True)
class ProgressTransferSummary:
    """Summary emitted by progress export/import operations."""

    user_name: str
    total_xp: int
    lesson_rows: int
    unlock_rows: int


class ProgressionService:
    """Single-writer facade over learner progression.

    Every mutation runs on one dedicated writer thread in submission order.
    Network calls run on a separate pool and hand their results back to the
    writer, so the store itself needs no locking.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        catalog: LessonCatalog | None = None,
        achievements: Sequence[AchievementDefinition] | None = None,
        clock: Clock | None = None,
        api_client: ProgressApiClient | None = None,
        curve: LevelCurve = DEFAULT_CURVE,
    ) -> None:
        """Load catalogs, open the store and start the writer."""
        if catalog is None:
            catalog, bundled = load_catalog()
            if achievements is None:
                achievements = bundled
        self.config = config
        self.catalog = catalog
        self.curve = curve
        self.clock: Clock = clock or SystemClock(config.timezone)
        self.store = ProgressStore(config.db_path, catalog, self.clock, curve)
        self.achievements = AchievementEngine(self.store, achievements or (), self.clock)
        self.reconciler = RemoteReconciler()
        if api_client is None and not config.offline and config.api_base_url is not None:
            api_client = ProgressApiClient(config.api_base_url, config.api_token, config.timeout_seconds)
        self.api = api_client
        self.last_refresh_error: str | None = None
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="progress-writer")
        self._network = ThreadPoolExecutor(max_workers=2, thread_name_prefix="progress-network")
        self._closed = False

    def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a callable on the writer thread and wait for its result."""
        return self._writer.submit(fn, *args).result()

    # Read API

    def snapshot(self) -> ProgressSnapshot:
        """Return the current immutable snapshot."""
        return self.store.snapshot()

    def current_level_info(self) -> LevelInfo:
        """Return level information for the current XP total."""
        return self.curve.level_for(self.store.snapshot().total_xp)

    def is_lesson_unlocked(self, lesson_id: str) -> bool:
        """Return whether a lesson is reachable now."""
        return is_lesson_unlocked(self.catalog, lesson_id, self.store.snapshot().completed_lessons)

    def is_track_unlocked(self, track_id: str) -> bool:
        """Return whether a track's entry lesson is reachable now."""
        return is_track_unlocked(self.catalog, track_id, self.store.snapshot().completed_lessons)

    def lesson_states(self) -> list[LessonState]:
        """Return every lesson in catalog order with unlock and completion state."""
        completed = self.store.snapshot().completed_lessons
        return [
            LessonState(
                lesson=lesson,
                unlocked=is_unlocked(lesson, completed),
                completed=lesson.id in completed,
                missing_prerequisites=missing_prerequisites(lesson, completed),
            )
            for lesson in self.catalog.ordered_lessons()
        ]

    def recommended_lesson(self) -> LessonDefinition | None:
        """Return the next lesson to study."""
        return recommended_lesson(self.catalog, self.store.snapshot().completed_lessons)

    def streak_summary(self) -> StreakSummary:
        """Return streak counters as of the clock's today."""
        return streak_summary(self.store.snapshot(), self.clock.today())

    def recent_unlocks(self, limit: int = 5) -> list[AchievementState]:
        """Return the newest achievement unlocks first."""
        return self.achievements.recent_unlocks(limit)

    def achievement_states(self) -> list[AchievementState]:
        """Return all achievements with unlock state and progress."""
        return self.achievements.states(self.store.snapshot())

    def achievement_statistics(self) -> AchievementStatistics:
        """Return achievement unlock totals."""
        return self.achievements.statistics()

    def xp_history(self, limit: int = 20) -> list[XpEvent]:
        """Return the newest XP awards first."""
        return self._run(self.store.xp_events, limit)

    # Write API

    def _unlock_achievements(self) -> list[AchievementDefinition]:
        """Evaluate achievements until no more unlock; rewards may unlock XP milestones."""
        unlocked: list[AchievementDefinition] = []
        while True:
            batch = self.achievements.evaluate()
            if not batch:
                return unlocked
            unlocked.extend(batch)

    def _complete_locally(self, lesson_id: str) -> tuple[bool, bool, list[AchievementDefinition]]:
        if self.catalog.get(lesson_id) is None:
            raise UnknownLessonError(lesson_id)
        level_before = self.curve.level_for(self.store.snapshot().total_xp).level
        try:
            self.store.record_activity(self.clock.today())
        except InvalidInputError as exc:
            logger.warning("Streak not updated for completion of %s: %s", lesson_id, exc)
        newly_completed = self.store.complete_lesson(lesson_id)
        unlocked = self._unlock_achievements()
        level_after = self.curve.level_for(self.store.snapshot().total_xp).level
        return newly_completed, level_after > level_before, unlocked

    def complete_lesson(
        self, lesson_id: str, quiz_score: int | None = None, report: bool | None = None
    ) -> CompletionResult:
        """Complete a lesson locally, then report it to the server when configured.

        Local completion is idempotent, so reporting can be retried safely. The
        XP the server credits is logged but never added on top of the local
        award; a successful report triggers a refresh that reconciles it.
        """
        newly_completed, leveled_up, unlocked = self._run(self._complete_locally, lesson_id)

        should_report = self.config.report_completions if report is None else report
        reported = False
        server_xp: int | None = None
        if should_report and self.api is not None:
            try:
                server_xp = self._network.submit(self.api.report_completion, lesson_id, quiz_score).result()
                reported = True
                logger.info("Server credited %d XP for lesson %s", server_xp, lesson_id)
            except ApiError as exc:
                logger.warning("Could not report completion of %s: %s", lesson_id, exc)
            if reported:
                self.refresh()

        return CompletionResult(
            lesson_id=lesson_id,
            newly_completed=newly_completed,
            leveled_up=leveled_up,
            unlocked_achievements=tuple(unlocked),
            reported=reported,
            server_xp=server_xp,
        )

    def _record_activity(self) -> tuple[StreakState, list[AchievementDefinition]]:
        state = self.store.record_activity(self.clock.today())
        return state, self._unlock_achievements()

    def record_activity(self) -> StreakState:
        """Count today as an active day (called when the app is opened)."""
        state, _ = self._run(self._record_activity)
        return state

    def _complete_daily_challenge(self) -> bool:
        completed = self.store.complete_daily_challenge(self.clock.today())
        self._unlock_achievements()
        return completed

    def complete_daily_challenge(self) -> bool:
        """Complete today's challenge; False if already done today."""
        return self._run(self._complete_daily_challenge)

    def _add_study_time(self, minutes: int) -> list[AchievementDefinition]:
        self.store.add_study_time(minutes)
        return self._unlock_achievements()

    def add_study_time(self, minutes: int) -> list[AchievementDefinition]:
        """Accumulate study time and return achievements it unlocked."""
        return self._run(self._add_study_time, minutes)

    def set_user_name(self, name: str) -> None:
        """Rename the learner."""
        self._run(self.store.set_user_name, name)

    def reset(self) -> None:
        """Discard all progress and unlocks."""
        self._run(self.store.reset)

    # Remote sync

    def _apply_remote(self, ticket: int, payload: dict[str, Any]) -> bool:
        remote = snapshot_from_remote(payload)
        unknown = {lesson_id for lesson_id in remote.completed_lessons if lesson_id not in self.catalog.lessons}
        if unknown:
            for lesson_id in sorted(unknown):
                logger.warning("Ignoring remote completion of unknown lesson %s", lesson_id)
            remote = replace(remote, completed_lessons=remote.completed_lessons - unknown)
        merged = self.reconciler.accept(ticket, self.store.snapshot(), remote)
        if merged is None:
            return False
        self.store.replace_snapshot(merged)
        self._unlock_achievements()
        return True

    def _fetch_and_apply(self, ticket: int) -> RefreshResult:
        assert self.api is not None
        try:
            payload = self.api.fetch_stats()
        except ApiError as exc:
            self.last_refresh_error = str(exc)
            logger.warning("Could not refresh progress: %s", exc)
            return RefreshResult(ok=False, applied=False, error=str(exc))
        applied = self._writer.submit(self._apply_remote, ticket, payload).result()
        self.last_refresh_error = None
        return RefreshResult(ok=True, applied=applied)

    def refresh_async(self) -> Future[RefreshResult]:
        """Start fetching remote progress; the result is merged on the writer thread."""
        if self.api is None:
            future: Future[RefreshResult] = Future()
            future.set_result(RefreshResult(ok=False, applied=False, error="offline"))
            return future
        ticket = self._run(self.reconciler.begin_fetch)
        return self._network.submit(self._fetch_and_apply, ticket)

    def refresh(self) -> RefreshResult:
        """Fetch remote progress and merge it (login, app foreground, after reporting)."""
        return self.refresh_async().result()

    # Export / import

    def _export_payload(self) -> dict[str, object]:
        snapshot = self.store.snapshot()
        return {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": self.clock.now().isoformat(),
            "source": {
                "app_version": __version__,
                "schema_version": SCHEMA_VERSION,
            },
            "progress": {
                "total_xp": snapshot.total_xp,
                "current_streak": snapshot.current_streak,
                "longest_streak": snapshot.longest_streak,
                "last_active_date": _format_date(snapshot.last_active_date),
                "daily_challenge_completed_today": snapshot.daily_challenge_completed_today,
                "user_name": snapshot.user_name,
                "study_time_minutes": snapshot.study_time_minutes,
                "daily_challenges_completed": snapshot.daily_challenges_completed,
                "last_daily_challenge_date": _format_date(snapshot.last_daily_challenge_date),
            },
            "completed_lessons": self.store.completed_lesson_rows(),
            "achievement_unlocks": [
                {"achievement_id": record.achievement_id, "unlocked_at": record.unlocked_at.isoformat()}
                for record in self.store.unlock_records()
            ],
        }

    def export_progress(self, export_path: Path | str) -> ProgressTransferSummary:
        """Export progress and unlock records to a JSON file."""
        payload = self._run(self._export_payload)
        path = Path(export_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        progress = cast(dict[str, Any], payload["progress"])
        return ProgressTransferSummary(
            user_name=str(progress["user_name"]),
            total_xp=int(progress["total_xp"]),
            lesson_rows=len(cast(list[object], payload["completed_lessons"])),
            unlock_rows=len(cast(list[object], payload["achievement_unlocks"])),
        )

    def import_progress(self, import_path: Path | str) -> ProgressTransferSummary:
        """Replace local progress with a progress export JSON file."""
        path = Path(import_path)
        raw_obj: object = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw_obj, dict):
            raise ValueError("Import file root must be a JSON object.")
        raw = cast(dict[str, object], raw_obj)

        format_version = coerce_int(raw.get("format_version", 0))
        if format_version is None:
            raise ValueError("Import file has invalid format_version.")
        if format_version > EXPORT_FORMAT_VERSION:
            raise ValueError(
                f"Import file format version {format_version} is newer than supported {EXPORT_FORMAT_VERSION}."
            )

        now = self.clock.now()
        snapshot = _normalize_progress(raw.get("progress"), _normalize_lesson_rows(raw.get("completed_lessons")))
        unlocks = _normalize_unlock_rows(raw.get("achievement_unlocks"), now)
        self._run(self.store.restore, snapshot, unlocks)
        return ProgressTransferSummary(
            user_name=snapshot.user_name,
            total_xp=snapshot.total_xp,
            lesson_rows=len(snapshot.completed_lessons),
            unlock_rows=len(unlocks),
        )

    def close(self) -> None:
        """Stop worker threads and close resources."""
        if self._closed:
            return
        self._closed = True
        self._network.shutdown(wait=True)
        self._writer.shutdown(wait=True)
        self.store.close()
        if self.api is not None:
            self.api.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort cleanup for test/process teardown."""
        try:
            self.close()
        except Exception:
            pass


def _format_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _normalize_lesson_rows(raw: object) -> frozenset[str]:
    """Normalize completed lesson rows (or bare ids) from import payload."""
    if not isinstance(raw, list):
        return frozenset()
    lesson_ids: set[str] = set()
    for item in cast(list[object], raw):
        value: object = item
        if isinstance(item, dict):
            value = cast(dict[str, object], item).get("lesson_id")
        if isinstance(value, str) and value.strip():
            lesson_ids.add(value.strip())
    return frozenset(lesson_ids)


def _normalize_progress(raw: object, completed: frozenset[str]) -> ProgressSnapshot:
    """Normalize the progress section of an import payload."""
    row = cast(dict[str, object], raw) if isinstance(raw, dict) else {}
    current_streak = max(0, coerce_int(row.get("current_streak", 0), default=0) or 0)
    longest_streak = max(current_streak, coerce_int(row.get("longest_streak", 0), default=0) or 0)
    user_name = row.get("user_name")
    return ProgressSnapshot(
        total_xp=max(0, coerce_int(row.get("total_xp", 0), default=0) or 0),
        current_streak=current_streak,
        longest_streak=longest_streak,
        completed_lessons=completed,
        last_active_date=coerce_date(row.get("last_active_date")),
        daily_challenge_completed_today=bool(coerce_int(row.get("daily_challenge_completed_today", 0), default=0)),
        user_name=user_name.strip() if isinstance(user_name, str) and user_name.strip() else DEFAULT_USER_NAME,
        study_time_minutes=max(0, coerce_int(row.get("study_time_minutes", 0), default=0) or 0),
        daily_challenges_completed=max(0, coerce_int(row.get("daily_challenges_completed", 0), default=0) or 0),
        last_daily_challenge_date=coerce_date(row.get("last_daily_challenge_date")),
    )


def _normalize_unlock_rows(raw: object, now: datetime) -> list[AchievementUnlockRecord]:
    """Normalize raw achievement unlock rows from import payload."""
    if not isinstance(raw, list):
        return []
    records: dict[str, AchievementUnlockRecord] = {}
    for item in cast(list[object], raw):
        if not isinstance(item, dict):
            continue
        row = cast(dict[str, object], item)
        achievement_id: object = row.get("achievement_id")
        if not isinstance(achievement_id, str) or not achievement_id.strip():
            continue
        unlocked_at = _coerce_datetime(row.get("unlocked_at")) or now
        records.setdefault(
            achievement_id.strip(),
            AchievementUnlockRecord(achievement_id=achievement_id.strip(), unlocked_at=unlocked_at),
        )
    return list(records.values())

def _coerce_datetime(value: object) -> datetime | None:
    """Coerce an ISO timestamp to an aware datetime, assuming UTC when naive."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
