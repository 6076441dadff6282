"""CLI entrypoint for the learner progression engine."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from .config import EngineConfig
from .errors import InvalidInputError, ProgressionError
from .progress import DAILY_CHALLENGE_XP
from .service import CompletionResult, ProgressionService

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
MENU_QUIT_COMMANDS = {"q"}
MENU_BACK_COMMANDS = {"b"}
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class QuitApp(Exception):
    """Signal immediate app exit from nested menu flows."""


def _service(config: EngineConfig) -> ProgressionService:
    """Create the app service for the resolved settings."""
    return ProgressionService(config)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="learnprogress", description="Track lessons, XP, streaks and achievements")
    parser.add_argument("command", nargs="?", default="play", choices=["play", "status", "sync"])
    parser.add_argument("--db", type=Path, help="progress database path")
    parser.add_argument("--api-url", help="progress API base URL")
    parser.add_argument("--timezone", help="IANA time zone used for day boundaries")
    parser.add_argument("--offline", action="store_true", help="never contact the progress API")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output")
    return parser


def _config_from_args(args: argparse.Namespace) -> EngineConfig:
    """Apply command-line overrides on top of environment settings."""
    config = EngineConfig.from_env()
    if args.db is not None:
        config = replace(config, db_path=args.db.expanduser())
    if args.api_url:
        config = replace(config, api_base_url=args.api_url)
    if args.timezone:
        config = replace(config, timezone=args.timezone)
    if args.offline:
        config = replace(config, api_base_url=None, report_completions=False)
    return config


def run(argv: list[str] | None = None) -> int:
    """Run the CLI application."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=LOG_FORMAT)
    config = _config_from_args(args)
    if args.command == "play":
        return play_shell(config)

    service = _service(config)
    try:
        if args.command == "status":
            _status_flow(service, print)
            return 0
        return 0 if _sync_flow(service, print) else 1
    finally:
        service.close()


def play_shell(config: EngineConfig | None = None, input_fn: InputFn = input, print_fn: PrintFn = print) -> int:
    """Run persistent menu-driven shell."""
    service = _service(config or EngineConfig.from_env())
    try:
        try:
            service.record_activity()
        except InvalidInputError as exc:
            print_fn(f"Streak not updated: {exc}")
        try:
            while True:
                snapshot = service.snapshot()
                print_fn("\n=== Learning Progress ===")
                level = service.current_level_info().level
                print_fn(f"Learner: {snapshot.user_name} (level {level}, {snapshot.total_xp} XP)")
                print_fn("1) Status")
                print_fn("2) Lessons")
                print_fn("3) Complete a lesson")
                print_fn("4) Daily challenge")
                print_fn("5) Achievements")
                print_fn("6) Sync with server")
                print_fn("7) Admin")
                print_fn("q) Quit")
                choice = input_fn("Choose: ").strip().lower()

                if choice == "1":
                    _status_flow(service, print_fn)
                elif choice == "2":
                    _lessons_flow(service, print_fn)
                elif choice == "3":
                    _complete_lesson_flow(service, input_fn, print_fn)
                elif choice == "4":
                    _daily_challenge_flow(service, print_fn)
                elif choice == "5":
                    _achievements_flow(service, print_fn)
                elif choice == "6":
                    _sync_flow(service, print_fn)
                elif choice == "7":
                    _admin_flow(service, input_fn, print_fn)
                elif choice in MENU_QUIT_COMMANDS:
                    return 0
                else:
                    print_fn("Invalid choice.")
        except QuitApp:
            return 0
    finally:
        service.close()


def _status_flow(service: ProgressionService, print_fn: PrintFn) -> None:
    """Print level, XP, streak and next lesson."""
    snapshot = service.snapshot()
    info = service.current_level_info()
    streak = service.streak_summary()
    print_fn("\n=== Status ===")
    print_fn(f"- Learner: {snapshot.user_name}")
    print_fn(f"- Level: {info.level}")
    if info.at_cap:
        print_fn(f"- XP: {snapshot.total_xp} (max level)")
    else:
        print_fn(
            f"- XP: {snapshot.total_xp} ({info.xp_into_level} into level, "
            f"{info.xp_for_next_level} to next, {info.fraction * 100:.0f}%)"
        )
    streak_note = " (study today to keep it)" if streak.at_risk else ""
    print_fn(f"- Streak: {streak.current} days, longest {streak.longest}{streak_note}")
    print_fn(f"- Lessons completed: {len(snapshot.completed_lessons)}/{len(service.catalog.lessons)}")
    print_fn(f"- Study time: {snapshot.study_time_minutes} min")
    print_fn(f"- Daily challenge: {'done' if snapshot.daily_challenge_completed_today else 'open'}")
    recommended = service.recommended_lesson()
    print_fn(f"- Next lesson: {recommended.title if recommended is not None else 'all lessons completed'}")
    recent = service.recent_unlocks(3)
    if recent:
        print_fn(f"- Recent achievements: {', '.join(state.definition.title for state in recent)}")
    if service.last_refresh_error:
        print_fn(f"- Last sync failed: {service.last_refresh_error}")


def _lessons_flow(service: ProgressionService, print_fn: PrintFn) -> None:
    """Print every lesson with unlock and completion state."""
    print_fn("\n=== Lessons ===")
    states = service.lesson_states()
    if not states:
        print_fn("No lessons defined.")
        return
    rows: list[tuple[str, str, str, str, str]] = []
    for state in states:
        stage = "completed" if state.completed else ("unlocked" if state.unlocked else "locked")
        if state.lesson.prerequisites:
            prereq_items = [
                f"*{dep}" if dep in state.missing_prerequisites else dep for dep in sorted(state.lesson.prerequisites)
            ]
            prerequisites = ", ".join(prereq_items)
        else:
            prerequisites = "none"
        rows.append((state.lesson.id, state.lesson.track, str(state.lesson.xp_reward), stage, prerequisites))

    lesson_width = max(len("Lesson"), max(len(row[0]) for row in rows))
    track_width = max(len("Track"), max(len(row[1]) for row in rows))
    xp_width = max(len("XP"), max(len(row[2]) for row in rows))
    stage_width = max(len("Stage"), max(len(row[3]) for row in rows))
    header = (
        f"{'Lesson':<{lesson_width}} "
        f"{'Track':<{track_width}} "
        f"{'XP':>{xp_width}} "
        f"{'Stage':<{stage_width}} "
        "Prerequisites"
    )
    print_fn(header)
    print_fn("-" * len(header))
    for row in rows:
        print_fn(
            f"{row[0]:<{lesson_width}} "
            f"{row[1]:<{track_width}} "
            f"{row[2]:>{xp_width}} "
            f"{row[3]:<{stage_width}} "
            f"{row[4]}"
        )
    print_fn("* = missing prerequisite")


def _complete_lesson_flow(service: ProgressionService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Pick an unlocked lesson and mark it completed."""
    available = [state for state in service.lesson_states() if state.unlocked and not state.completed]
    if not available:
        print_fn("No unlocked lessons left to complete.")
        return

    print_fn("\n=== Complete Lesson ===")
    for idx, state in enumerate(available, start=1):
        print_fn(f"{idx:>2} {state.lesson.id} - {state.lesson.title} (+{state.lesson.xp_reward} XP)")
    print_fn("b) Back")
    print_fn("q) Quit")
    choice = input_fn("Choose lesson: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if not choice.isdigit():
        print_fn("Invalid choice.")
        return
    index = int(choice) - 1
    if not (0 <= index < len(available)):
        print_fn("Invalid choice.")
        return
    lesson = available[index].lesson

    score_text = input_fn("Quiz score (blank = none): ").strip()
    quiz_score: int | None = None
    if score_text:
        if not score_text.isdigit():
            print_fn("Quiz score must be a whole number.")
            return
        quiz_score = int(score_text)

    try:
        result = service.complete_lesson(lesson.id, quiz_score=quiz_score)
    except ProgressionError as exc:
        print_fn(f"Could not complete lesson: {exc}")
        return
    _print_completion(result, lesson.xp_reward, print_fn)


def _print_completion(result: CompletionResult, xp_reward: int, print_fn: PrintFn) -> None:
    if not result.newly_completed:
        print_fn("Lesson was already completed. No XP awarded.")
    else:
        print_fn(f"Lesson completed: +{xp_reward} XP")
    if result.leveled_up:
        print_fn("Level up!")
    for achievement in result.unlocked_achievements:
        print_fn(f"Achievement unlocked: {achievement.title} (+{achievement.xp_reward} XP)")
    if result.reported:
        print_fn("Completion synced with server.")


def _daily_challenge_flow(service: ProgressionService, print_fn: PrintFn) -> None:
    """Complete today's challenge."""
    try:
        completed = service.complete_daily_challenge()
    except ProgressionError as exc:
        print_fn(f"Could not complete daily challenge: {exc}")
        return
    if completed:
        print_fn(f"Daily challenge complete: +{DAILY_CHALLENGE_XP} XP")
    else:
        print_fn("Daily challenge already completed today.")


def _achievements_flow(service: ProgressionService, print_fn: PrintFn) -> None:
    """Print achievement statistics and every achievement's state."""
    stats = service.achievement_statistics()
    print_fn("\n=== Achievements ===")
    print_fn(
        f"Unlocked {stats.unlocked_count}/{stats.total_count} ({stats.completion_percentage}%), "
        f"{stats.total_xp_earned} XP earned"
    )
    states = service.achievement_states()
    if not states:
        return
    title_width = max(len("Achievement"), max(len(state.definition.title) for state in states))
    rarity_width = max(len("Rarity"), max(len(state.definition.rarity.value) for state in states))
    header = f"{'Achievement':<{title_width}} {'Rarity':<{rarity_width}} {'XP':>5} Progress"
    print_fn(header)
    print_fn("-" * len(header))
    for state in states:
        if state.record is not None:
            progress = f"unlocked {state.record.unlocked_at.strftime('%Y-%m-%d')}"
        else:
            progress = f"{state.progress * 100:.0f}%"
        print_fn(
            f"{state.definition.title:<{title_width}} "
            f"{state.definition.rarity.value:<{rarity_width}} "
            f"{state.definition.xp_reward:>5} "
            f"{progress}"
        )


def _sync_flow(service: ProgressionService, print_fn: PrintFn) -> bool:
    """Pull remote progress and report the outcome."""
    result = service.refresh()
    if not result.ok:
        print_fn(f"Sync failed: {result.error}")
        return False
    if result.applied:
        print_fn("Progress synced with server.")
    else:
        print_fn("A newer sync was already applied.")
    return True


def _admin_flow(service: ProgressionService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Admin menu for learner data management."""
    while True:
        print_fn("\n=== Admin ===")
        print_fn("1) Rename learner")
        print_fn("2) Log study time")
        print_fn("3) XP history")
        print_fn("4) Export progress")
        print_fn("5) Import progress")
        print_fn("6) Reset progress")
        print_fn("b) Back")
        print_fn("q) Quit")
        choice = input_fn("Choose admin option: ").strip().lower()
        if choice in MENU_BACK_COMMANDS:
            return
        if choice in MENU_QUIT_COMMANDS:
            raise QuitApp()
        if choice == "1":
            _rename_flow(service, input_fn, print_fn)
        elif choice == "2":
            _study_time_flow(service, input_fn, print_fn)
        elif choice == "3":
            _xp_history_flow(service, print_fn)
        elif choice == "4":
            _export_progress_flow(service, input_fn, print_fn)
        elif choice == "5":
            _import_progress_flow(service, input_fn, print_fn)
        elif choice == "6":
            _reset_flow(service, input_fn, print_fn)
        else:
            print_fn("Invalid choice.")


def _rename_flow(service: ProgressionService, input_fn: InputFn, print_fn: PrintFn) -> None:
    name = input_fn("New learner name: ").strip()
    if not name:
        print_fn("Learner name is required.")
        return
    service.set_user_name(name)
    print_fn(f"Learner renamed to '{name}'.")


def _study_time_flow(service: ProgressionService, input_fn: InputFn, print_fn: PrintFn) -> None:
    minutes_text = input_fn("Minutes studied: ").strip()
    if not minutes_text.isdigit() or int(minutes_text) <= 0:
        print_fn("Minutes must be a positive whole number.")
        return
    unlocked = service.add_study_time(int(minutes_text))
    print_fn(f"Logged {int(minutes_text)} minutes.")
    for achievement in unlocked:
        print_fn(f"Achievement unlocked: {achievement.title} (+{achievement.xp_reward} XP)")


def _xp_history_flow(service: ProgressionService, print_fn: PrintFn) -> None:
    """Show the newest XP awards."""
    events = service.xp_history(limit=20)
    print_fn("\n=== XP History ===")
    if not events:
        print_fn("No XP earned yet.")
        return
    for event in events:
        print_fn(f"{event.created_at.strftime('%Y-%m-%d %H:%M')} {event.amount:>5} {event.reason}")


def _export_progress_flow(service: ProgressionService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Export progress to a JSON file."""
    print_fn("\n=== Export Progress ===")
    path_text = input_fn("Export file path: ").strip()
    if not path_text:
        print_fn("File path is required.")
        return
    try:
        summary = service.export_progress(path_text)
    except (OSError, ValueError) as exc:
        print_fn(f"Export failed: {exc}")
        return
    print_fn(f"Exported progress for '{summary.user_name}' to {path_text}")
    print_fn(f"- total XP: {summary.total_xp}")
    print_fn(f"- lesson rows: {summary.lesson_rows}")
    print_fn(f"- achievement rows: {summary.unlock_rows}")


def _import_progress_flow(service: ProgressionService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Replace progress with a JSON export after confirmation."""
    print_fn("\n=== Import Progress ===")
    path_text = input_fn("Import file path: ").strip()
    if not path_text:
        print_fn("File path is required.")
        return
    print_fn("WARNING: Importing replaces all current progress and achievements.")
    confirm = input_fn("Type YES to confirm import: ").strip()
    if confirm != "YES":
        print_fn("Import cancelled.")
        return
    try:
        summary = service.import_progress(path_text)
    except (OSError, ValueError) as exc:
        print_fn(f"Import failed: {exc}")
        return
    print_fn(f"Imported progress for '{summary.user_name}'.")
    print_fn(f"- total XP: {summary.total_xp}")
    print_fn(f"- lesson rows: {summary.lesson_rows}")
    print_fn(f"- achievement rows: {summary.unlock_rows}")


def _reset_flow(service: ProgressionService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Reset all progress with explicit confirmation safeguard."""
    print_fn("WARNING: This permanently deletes all progress (XP, lessons, streaks, achievements).")
    confirm = input_fn("Type YES to confirm reset: ").strip()
    if confirm != "YES":
        print_fn("Reset cancelled.")
        return
    service.reset()
    print_fn("Progress reset.")


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
