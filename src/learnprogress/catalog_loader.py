"""Load lesson and achievement catalogs from bundled JSON resources."""

from __future__ import annotations

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any

from .errors import CatalogError
from .models import (
    AchievementDefinition,
    AchievementKind,
    Category,
    LessonCatalog,
    LessonDefinition,
    Rarity,
    TrackDefinition,
)
from .unlocks import validate_prerequisite_graph

logger = logging.getLogger(__name__)

CONTENT_PACKAGE = "learnprogress.content"
LESSONS_FILE = "lessons.json"
ACHIEVEMENTS_FILE = "achievements.json"

THRESHOLD_KINDS = {
    AchievementKind.XP_TOTAL,
    AchievementKind.LESSONS_COMPLETED,
    AchievementKind.STREAK,
    AchievementKind.STUDY_MINUTES,
    AchievementKind.DAILY_CHALLENGES,
}


def _lessons_from_track(track_id: str, raw_lessons: list[dict[str, Any]]) -> list[LessonDefinition]:
    """Build the lessons of one track.

    A lesson without a `prerequisites` key depends on the previous lesson of its
    track; an explicit empty list makes it freely reachable.
    """
    ordered = sorted(raw_lessons, key=lambda item: int(item.get("sequence_number", 0)))
    lessons: list[LessonDefinition] = []
    previous_id: str | None = None
    for raw in ordered:
        lesson_id = str(raw["id"]).strip()
        if not lesson_id:
            raise CatalogError(f"Track '{track_id}' has a lesson with an empty id.")
        xp_reward = int(raw.get("xp_reward", 0))
        if xp_reward <= 0:
            raise CatalogError(f"Lesson '{lesson_id}' must have a positive xp_reward.")
        if "prerequisites" in raw:
            prerequisites = frozenset(str(item).strip() for item in raw["prerequisites"] if str(item).strip())
        else:
            prerequisites = frozenset({previous_id}) if previous_id is not None else frozenset()
        lessons.append(
            LessonDefinition(
                id=lesson_id,
                track=track_id,
                sequence_number=int(raw.get("sequence_number", 0)),
                prerequisites=prerequisites,
                xp_reward=xp_reward,
                title=str(raw.get("title", lesson_id)),
                estimated_minutes=int(raw.get("estimated_minutes", 0)),
            )
        )
        previous_id = lesson_id
    return lessons


def lesson_catalog_from_dict(raw: dict[str, Any]) -> LessonCatalog:
    """Build and validate a lesson catalog from raw JSON content."""
    lessons: dict[str, LessonDefinition] = {}
    tracks: dict[str, TrackDefinition] = {}
    try:
        for index, raw_track in enumerate(raw.get("tracks", []), start=1):
            track_id = str(raw_track["id"])
            if track_id in tracks:
                raise CatalogError(f"Duplicate track id: {track_id}")
            track_lessons = _lessons_from_track(track_id, list(raw_track.get("lessons", [])))
            for lesson in track_lessons:
                if lesson.id in lessons:
                    previous = lessons[lesson.id].track
                    raise CatalogError(f"Duplicate lesson id: {lesson.id} (in {previous} and {track_id})")
                lessons[lesson.id] = lesson
            tracks[track_id] = TrackDefinition(
                id=track_id,
                title=str(raw_track.get("title", track_id)),
                order=int(raw_track.get("order", index)),
                lesson_ids=tuple(lesson.id for lesson in track_lessons),
            )
    except CatalogError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise CatalogError(f"Malformed lesson catalog: {exc!r}") from exc

    validate_prerequisite_graph(lessons)
    return LessonCatalog(lessons=lessons, tracks=tracks)


def _achievement_from_dict(raw: dict[str, Any], catalog: LessonCatalog) -> AchievementDefinition:
    """Build one achievement, resolving track and lesson references to a lesson set."""
    achievement_id = str(raw["id"])
    try:
        kind = AchievementKind(str(raw["kind"]))
        category = Category(str(raw.get("category", "progress")))
        rarity = Rarity(str(raw.get("rarity", "common")))
    except ValueError as exc:
        raise CatalogError(f"Achievement '{achievement_id}': {exc}") from exc
    if kind is AchievementKind.CUSTOM:
        raise CatalogError(f"Achievement '{achievement_id}' cannot use a custom predicate in catalog content.")

    threshold = int(raw.get("threshold", 0))
    lesson_ids: frozenset[str] = frozenset()
    if kind in THRESHOLD_KINDS and threshold <= 0:
        raise CatalogError(f"Achievement '{achievement_id}' needs a positive threshold.")
    if kind is AchievementKind.LESSONS_SET_COMPLETED:
        if raw.get("all_lessons"):
            lesson_ids = frozenset(catalog.lessons)
        elif "track" in raw:
            track_id = str(raw["track"])
            if track_id not in catalog.tracks:
                raise CatalogError(f"Achievement '{achievement_id}' references unknown track '{track_id}'.")
            lesson_ids = frozenset(catalog.tracks[track_id].lesson_ids)
        else:
            lesson_ids = frozenset(str(item) for item in raw.get("lessons", []))
        unknown = sorted(lesson_ids - set(catalog.lessons))
        if unknown:
            raise CatalogError(f"Achievement '{achievement_id}' references unknown lessons: {', '.join(unknown)}.")
        if not lesson_ids:
            raise CatalogError(f"Achievement '{achievement_id}' has no lessons to complete.")

    xp_reward = int(raw.get("xp_reward", 0))
    if xp_reward < 0:
        raise CatalogError(f"Achievement '{achievement_id}' has a negative xp_reward.")
    return AchievementDefinition(
        id=achievement_id,
        title=str(raw.get("title", achievement_id)),
        description=str(raw.get("description", "")),
        category=category,
        rarity=rarity,
        xp_reward=xp_reward,
        kind=kind,
        threshold=threshold,
        lesson_ids=lesson_ids,
    )


def achievements_from_list(raw: list[dict[str, Any]], catalog: LessonCatalog) -> tuple[AchievementDefinition, ...]:
    """Build achievements in file order, rejecting duplicate ids."""
    definitions: list[AchievementDefinition] = []
    seen: set[str] = set()
    try:
        for item in raw:
            definition = _achievement_from_dict(item, catalog)
            if definition.id in seen:
                raise CatalogError(f"Duplicate achievement id: {definition.id}")
            seen.add(definition.id)
            definitions.append(definition)
    except CatalogError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise CatalogError(f"Malformed achievement catalog: {exc!r}") from exc
    return tuple(definitions)


def _read_json(text: str, source: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise CatalogError(f"Invalid JSON in {source}: {exc}") from exc


def load_catalog() -> tuple[LessonCatalog, tuple[AchievementDefinition, ...]]:
    """Load bundled lesson and achievement catalogs."""
    content = resources.files(CONTENT_PACKAGE)
    lessons_raw = _read_json(content.joinpath(LESSONS_FILE).read_text(encoding="utf-8-sig"), LESSONS_FILE)
    achievements_raw = _read_json(
        content.joinpath(ACHIEVEMENTS_FILE).read_text(encoding="utf-8-sig"), ACHIEVEMENTS_FILE
    )
    return _build(lessons_raw, achievements_raw)


def load_catalog_from_dir(path: Path) -> tuple[LessonCatalog, tuple[AchievementDefinition, ...]]:
    """Load catalogs from a directory for tests/tools; achievements are optional."""
    lessons_path = path / LESSONS_FILE
    if not lessons_path.exists():
        raise CatalogError(f"Missing {LESSONS_FILE} in {path}")
    lessons_raw = _read_json(lessons_path.read_text(encoding="utf-8-sig"), str(lessons_path))
    achievements_path = path / ACHIEVEMENTS_FILE
    achievements_raw: Any = []
    if achievements_path.exists():
        achievements_raw = _read_json(achievements_path.read_text(encoding="utf-8-sig"), str(achievements_path))
    return _build(lessons_raw, achievements_raw)


def _build(lessons_raw: Any, achievements_raw: Any) -> tuple[LessonCatalog, tuple[AchievementDefinition, ...]]:
    if not isinstance(lessons_raw, dict):
        raise CatalogError("Lesson catalog root must be a JSON object.")
    if not isinstance(achievements_raw, list):
        raise CatalogError("Achievement catalog root must be a JSON list.")
    catalog = lesson_catalog_from_dict(lessons_raw)
    achievements = achievements_from_list(achievements_raw, catalog)
    logger.debug(
        "Loaded %d lessons in %d tracks and %d achievements",
        len(catalog.lessons),
        len(catalog.tracks),
        len(achievements),
    )
    return catalog, achievements
