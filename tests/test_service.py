import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from learnprogress.config import EngineConfig
from learnprogress.errors import ServerError, UnknownLessonError
from learnprogress.level_curve import LevelCurve
from learnprogress.service import EXPORT_FORMAT_VERSION, ProgressionService
from learnprogress.streaks import FixedClock

BEGINNER = ["intro-quantum-computing", "understanding-qubits", "superposition", "measurement"]


class FakeApi:
    def __init__(self, stats: dict[str, Any] | None = None, server_xp: int = 150) -> None:
        self.stats = stats or {}
        self.server_xp = server_xp
        self.fetch_error: Exception | None = None
        self.report_error: Exception | None = None
        self.reported: list[tuple[str, int | None]] = []
        self.fetches = 0
        self.closed = False

    def fetch_stats(self) -> dict[str, Any]:
        self.fetches += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return dict(self.stats)

    def report_completion(self, lesson_id: str, quiz_score: int | None = None) -> int:
        if self.report_error is not None:
            raise self.report_error
        self.reported.append((lesson_id, quiz_score))
        return self.server_xp

    def close(self) -> None:
        self.closed = True


class GatedApi(FakeApi):
    """First fetch blocks until released; later fetches return at once."""

    def __init__(self, first: dict[str, Any], later: dict[str, Any]) -> None:
        super().__init__()
        self.first = first
        self.later = later
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_stats(self) -> dict[str, Any]:
        self.fetches += 1
        if self.fetches == 1:
            self.entered.set()
            assert self.release.wait(timeout=5)
            return self.first
        return self.later


def _clock() -> FixedClock:
    return FixedClock(datetime(2026, 1, 1, 9, 0, tzinfo=UTC))


def _service(
    api: FakeApi | None = None, clock: FixedClock | None = None, db: Path | str = ":memory:"
) -> ProgressionService:
    config = EngineConfig(db_path=db, api_base_url=None)
    return ProgressionService(config, clock=clock or _clock(), api_client=api)  # type: ignore[arg-type]


def test_complete_lesson_offline_awards_xp_and_achievement() -> None:
    service = _service()
    result = service.complete_lesson("intro-quantum-computing")
    assert result.newly_completed is True
    assert result.leveled_up is False
    assert [item.id for item in result.unlocked_achievements] == ["first_lesson"]
    assert result.reported is False
    assert result.server_xp is None
    assert service.snapshot().total_xp == 125
    assert service.streak_summary().current == 1
    service.close()


def test_complete_lesson_twice_awards_once() -> None:
    service = _service()
    service.complete_lesson("intro-quantum-computing")
    again = service.complete_lesson("intro-quantum-computing")
    assert again.newly_completed is False
    assert again.unlocked_achievements == ()
    assert service.snapshot().total_xp == 125
    service.close()


def test_complete_unknown_lesson_raises() -> None:
    service = _service()
    try:
        service.complete_lesson("nope")
        raise AssertionError("Expected UnknownLessonError.")
    except UnknownLessonError:
        pass
    service.close()


def test_completing_beginner_track_levels_up_and_chains_unlocks() -> None:
    service = _service()
    results = [service.complete_lesson(lesson_id) for lesson_id in BEGINNER]
    last = results[-1]
    assert last.leveled_up is True
    assert [item.id for item in last.unlocked_achievements] == ["quantum_novice", "xp_500"]
    assert service.snapshot().total_xp == 100 + 25 + 150 + 150 + 150 + 100 + 25
    assert service.current_level_info().level == 2
    assert service.is_track_unlocked("intermediate") is True
    assert service.is_track_unlocked("advanced") is False
    recommended = service.recommended_lesson()
    assert recommended is not None and recommended.id == "quantum-gates"
    service.close()


def test_concurrent_completions_are_serialized() -> None:
    service = _service()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: service.complete_lesson("intro-quantum-computing"), range(16)))
    assert sum(1 for result in results if result.newly_completed) == 1
    assert service.snapshot().total_xp == 125
    assert len(service.xp_history()) == 2
    service.close()


def test_reported_completion_uses_server_response_without_double_award() -> None:
    api = FakeApi(stats={"total_xp": 100, "completed_lessons": ["intro-quantum-computing"]})
    service = _service(api)
    result = service.complete_lesson("intro-quantum-computing", quiz_score=90)
    assert result.reported is True
    assert result.server_xp == 150
    assert api.reported == [("intro-quantum-computing", 90)]
    assert api.fetches == 1
    assert service.snapshot().total_xp == 125
    service.close()
    assert api.closed is True


def test_report_failure_keeps_local_completion() -> None:
    api = FakeApi()
    api.report_error = ServerError("Server error (503).", status_code=503)
    service = _service(api)
    result = service.complete_lesson("intro-quantum-computing")
    assert result.newly_completed is True
    assert result.reported is False
    assert api.fetches == 0
    assert "intro-quantum-computing" in service.snapshot().completed_lessons
    service.close()


def test_report_can_be_disabled_per_call() -> None:
    api = FakeApi()
    service = _service(api)
    result = service.complete_lesson("intro-quantum-computing", report=False)
    assert result.reported is False
    assert api.reported == []
    service.close()


def test_refresh_merges_remote_progress_and_unlocks() -> None:
    api = FakeApi(
        stats={
            "total_xp": 2100,
            "current_streak": 4,
            "longest_streak": 9,
            "completed_lessons": ["intro-quantum-computing", "understanding-qubits"],
            "last_active_date": "2026-01-01",
        }
    )
    service = _service(api)
    service.complete_lesson("superposition", report=False)
    result = service.refresh()
    assert result.ok is True
    assert result.applied is True
    snapshot = service.snapshot()
    assert snapshot.completed_lessons == frozenset({"intro-quantum-computing", "understanding-qubits", "superposition"})
    assert snapshot.total_xp >= 2100
    assert snapshot.longest_streak == 9
    unlocked = {state.definition.id for state in service.achievement_states() if state.unlocked}
    assert {"first_lesson", "xp_500", "xp_1000", "xp_2000"} <= unlocked
    assert service.last_refresh_error is None
    service.close()


def test_refresh_failure_leaves_local_state() -> None:
    api = FakeApi()
    api.fetch_error = ServerError("Server error (500).", status_code=500)
    service = _service(api)
    service.complete_lesson("intro-quantum-computing", report=False)
    before = service.snapshot()
    result = service.refresh()
    assert result.ok is False
    assert result.error == "Server error (500)."
    assert service.snapshot() == before
    assert service.last_refresh_error == "Server error (500)."

    api.fetch_error = None
    assert service.refresh().ok is True
    assert service.last_refresh_error is None
    service.close()


def test_refresh_offline_reports_error() -> None:
    service = _service()
    result = service.refresh()
    assert result.ok is False
    assert result.error == "offline"
    service.close()


def test_superseded_fetch_result_is_discarded() -> None:
    api = GatedApi(first={"total_xp": 5000}, later={"total_xp": 700})
    service = _service(api)
    older = service.refresh_async()
    assert api.entered.wait(timeout=5)
    newer = service.refresh_async()
    assert newer.result(timeout=5).applied is True
    api.release.set()
    stale = older.result(timeout=5)
    assert stale.ok is True
    assert stale.applied is False
    assert service.snapshot().total_xp < 5000
    service.close()


def test_daily_challenge_once_per_day() -> None:
    clock = _clock()
    service = _service(clock=clock)
    assert service.complete_daily_challenge() is True
    assert service.complete_daily_challenge() is False
    assert service.snapshot().total_xp == 50
    clock.advance(days=1)
    assert service.complete_daily_challenge() is True
    snapshot = service.snapshot()
    assert snapshot.daily_challenges_completed == 2
    assert snapshot.current_streak == 2
    service.close()


def test_record_activity_follows_clock() -> None:
    clock = _clock()
    service = _service(clock=clock)
    assert service.record_activity().streak == 1
    clock.advance(days=1)
    assert service.record_activity().streak == 2
    clock.advance(days=3)
    state = service.record_activity()
    assert state.streak == 1
    assert state.longest_streak == 2
    service.close()


def test_study_time_unlocks_time_achievement() -> None:
    service = _service()
    assert service.add_study_time(30) == []
    unlocked = service.add_study_time(30)
    assert [item.id for item in unlocked] == ["hour_scholar"]
    service.close()


def test_lesson_states_report_missing_prerequisites() -> None:
    service = _service()
    states = {state.lesson.id: state for state in service.lesson_states()}
    assert states["intro-quantum-computing"].unlocked is True
    assert states["understanding-qubits"].missing_prerequisites == ("intro-quantum-computing",)
    assert states["deutsch-jozsa"].missing_prerequisites == ("interference", "quantum-circuits")
    assert service.is_lesson_unlocked("understanding-qubits") is False
    service.complete_lesson("intro-quantum-computing")
    assert service.is_lesson_unlocked("understanding-qubits") is True
    assert service.is_lesson_unlocked("not-a-lesson") is False
    service.close()


def test_recent_unlocks_and_statistics() -> None:
    clock = _clock()
    service = _service(clock=clock)
    service.complete_lesson("intro-quantum-computing")
    clock.advance(minutes=5)
    service.add_study_time(60)
    recent = service.recent_unlocks(5)
    assert [state.definition.id for state in recent] == ["hour_scholar", "first_lesson"]
    stats = service.achievement_statistics()
    assert stats.unlocked_count == 2
    assert stats.total_xp_earned == 50
    service.close()


def test_reset_clears_everything() -> None:
    service = _service()
    service.complete_lesson("intro-quantum-computing")
    service.set_user_name("Ada")
    service.reset()
    snapshot = service.snapshot()
    assert snapshot.completed_lessons == frozenset()
    assert snapshot.total_xp == 0
    assert snapshot.current_streak == 0
    assert snapshot.user_name == "Quantum Learner"
    assert service.recent_unlocks(5) == []
    assert service.xp_history() == []
    service.close()


def test_progress_survives_restart(tmp_path: Path) -> None:
    db_path = tmp_path / "progress.db"
    service = _service(db=db_path)
    service.complete_lesson("intro-quantum-computing")
    expected = service.snapshot()
    service.close()

    reopened = _service(db=db_path)
    assert reopened.snapshot() == expected
    assert [state.definition.id for state in reopened.recent_unlocks(5)] == ["first_lesson"]
    reopened.close()


def test_export_and_import_round_trip(tmp_path: Path) -> None:
    source = _service()
    source.complete_lesson("intro-quantum-computing")
    source.complete_lesson("understanding-qubits")
    source.complete_daily_challenge()
    source.add_study_time(15)
    source.set_user_name("Grace")
    export_path = tmp_path / "exports" / "progress.json"
    summary = source.export_progress(export_path)
    assert summary.user_name == "Grace"
    assert summary.lesson_rows == 2
    assert summary.unlock_rows == 1

    payload = json.loads(export_path.read_text(encoding="utf-8"))
    assert payload["format_version"] == EXPORT_FORMAT_VERSION
    assert payload["progress"]["last_active_date"] == "2026-01-01"

    target = _service()
    target.complete_lesson("superposition", report=False)
    imported = target.import_progress(export_path)
    assert imported.total_xp == source.snapshot().total_xp
    assert target.snapshot() == source.snapshot()
    assert [state.definition.id for state in target.recent_unlocks(5)] == ["first_lesson"]
    source.close()
    target.close()


def test_import_rejects_newer_format(tmp_path: Path) -> None:
    path = tmp_path / "future.json"
    path.write_text(json.dumps({"format_version": EXPORT_FORMAT_VERSION + 1}), encoding="utf-8")
    service = _service()
    try:
        service.import_progress(path)
        raise AssertionError("Expected ValueError for newer format.")
    except ValueError as exc:
        assert "newer than supported" in str(exc)
    service.close()


def test_import_rejects_non_object_root(tmp_path: Path) -> None:
    path = tmp_path / "list.json"
    path.write_text("[]", encoding="utf-8")
    service = _service()
    try:
        service.import_progress(path)
        raise AssertionError("Expected ValueError for list root.")
    except ValueError as exc:
        assert "JSON object" in str(exc)
    service.close()


def test_import_normalizes_loose_values(tmp_path: Path) -> None:
    payload = {
        "format_version": 1,
        "progress": {
            "total_xp": "300",
            "current_streak": 5,
            "longest_streak": 2,
            "last_active_date": "not-a-date",
            "user_name": "   ",
            "study_time_minutes": -10,
        },
        "completed_lessons": [{"lesson_id": " superposition "}, "measurement", {"lesson_id": 3}, ""],
        "achievement_unlocks": [
            {"achievement_id": "xp_500", "unlocked_at": "2025-12-31T08:00:00"},
            {"achievement_id": "xp_500", "unlocked_at": "2026-01-01T08:00:00+00:00"},
            {"achievement_id": ""},
            "junk",
        ],
    }
    path = tmp_path / "loose.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    service = _service()
    summary = service.import_progress(path)
    snapshot = service.snapshot()
    assert snapshot.total_xp == 300
    assert snapshot.current_streak == 5
    assert snapshot.longest_streak == 5
    assert snapshot.last_active_date is None
    assert snapshot.user_name == "Quantum Learner"
    assert snapshot.study_time_minutes == 0
    assert snapshot.completed_lessons == frozenset({"superposition", "measurement"})
    assert summary.unlock_rows == 1
    records = service.store.unlock_records()
    assert records[0].unlocked_at == datetime(2025, 12, 31, 8, 0, tzinfo=UTC)
    service.close()


def test_streak_summary_uses_clock_today() -> None:
    clock = _clock()
    service = _service(clock=clock)
    service.record_activity()
    clock.advance(days=1)
    summary = service.streak_summary()
    assert summary.at_risk is True
    assert summary.active_today is False
    clock.advance(days=2)
    assert service.streak_summary().current == 0
    assert service.snapshot().last_active_date == date(2026, 1, 1)
    service.close()


def test_daily_challenge_flag_from_remote_does_not_carry_into_next_day() -> None:
    clock = _clock()
    api = FakeApi()
    service = _service(api, clock=clock)
    assert service.complete_daily_challenge() is True
    clock.advance(days=1)
    # Another device was active today but has not done today's challenge.
    api.stats = {
        "total_xp": 50,
        "current_streak": 2,
        "longest_streak": 2,
        "last_active_date": "2026-01-02",
        "daily_challenge_completed_today": True,
        "last_daily_challenge_date": "2026-01-01",
    }
    assert service.refresh().applied is True
    snapshot = service.snapshot()
    assert snapshot.last_active_date == date(2026, 1, 2)
    assert snapshot.last_daily_challenge_date == date(2026, 1, 1)
    assert snapshot.daily_challenge_completed_today is False

    assert service.complete_daily_challenge() is True
    snapshot = service.snapshot()
    assert snapshot.daily_challenge_completed_today is True
    assert snapshot.last_daily_challenge_date == date(2026, 1, 2)
    assert snapshot.daily_challenges_completed == 2
    assert service.complete_daily_challenge() is False
    service.close()


def test_refresh_ignores_lessons_missing_from_catalog() -> None:
    api = FakeApi(stats={"completed_lessons": ["bogus-lesson", "intro-quantum-computing"]})
    service = _service(api)
    assert service.refresh().applied is True
    snapshot = service.snapshot()
    assert snapshot.completed_lessons == frozenset({"intro-quantum-computing"})

    api.stats = {"completed_lessons": ["bogus-lesson"]}
    service.reset()
    assert service.refresh().applied is True
    snapshot = service.snapshot()
    assert snapshot.completed_lessons == frozenset()
    assert snapshot.total_xp == 0
    assert service.recent_unlocks(5) == []
    service.close()


def test_level_uses_injected_curve() -> None:
    config = EngineConfig(db_path=":memory:", api_base_url=None)
    service = ProgressionService(config, clock=_clock(), curve=LevelCurve((0, 50, 100)))
    service.complete_lesson("intro-quantum-computing", report=False)
    assert service.snapshot().total_xp == 125
    assert service.current_level_info().level == 3
    service.close()
