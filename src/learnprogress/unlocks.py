"""Lesson and track reachability from the completed-lesson set."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Set

from .errors import CatalogError
from .models import LessonCatalog, LessonDefinition

logger = logging.getLogger(__name__)


def is_unlocked(lesson: LessonDefinition, completed: Set[str]) -> bool:
    """Return whether every prerequisite of a lesson has been completed."""
    return all(prerequisite in completed for prerequisite in lesson.prerequisites)


def missing_prerequisites(lesson: LessonDefinition, completed: Set[str]) -> tuple[str, ...]:
    """Return prerequisites that still block a lesson, sorted by id."""
    return tuple(sorted(item for item in lesson.prerequisites if item not in completed))


def is_lesson_unlocked(catalog: LessonCatalog, lesson_id: str, completed: Set[str]) -> bool:
    """Return lesson reachability by id; unknown lessons are never reachable."""
    lesson = catalog.get(lesson_id)
    if lesson is None:
        logger.debug("Unlock check for unknown lesson %s", lesson_id)
        return False
    return is_unlocked(lesson, completed)


def is_track_unlocked(catalog: LessonCatalog, track_id: str, completed: Set[str]) -> bool:
    """Return track reachability, decided by the track's entry lesson."""
    track = catalog.tracks.get(track_id)
    if track is None or track.entry_lesson_id is None:
        return False
    return is_lesson_unlocked(catalog, track.entry_lesson_id, completed)


def recommended_lesson(catalog: LessonCatalog, completed: Set[str]) -> LessonDefinition | None:
    """Return the first reachable lesson that has not been completed yet."""
    for lesson in catalog.ordered_lessons():
        if lesson.id not in completed and is_unlocked(lesson, completed):
            return lesson
    return None


def validate_prerequisite_graph(lessons: Mapping[str, LessonDefinition]) -> None:
    """Validate prerequisites exist and the dependency graph has no cycles."""
    for lesson in lessons.values():
        for prerequisite in sorted(lesson.prerequisites):
            if prerequisite not in lessons:
                raise CatalogError(f"Lesson '{lesson.id}' has unknown prerequisite '{prerequisite}'.")

    visiting: set[str] = set()
    visited: set[str] = set()

    def visit(lesson_id: str, path: list[str]) -> None:
        if lesson_id in visited:
            return
        if lesson_id in visiting:
            cycle_start = path.index(lesson_id)
            cycle_path = path[cycle_start:] + [lesson_id]
            raise CatalogError(f"Circular lesson prerequisite detected: {' -> '.join(cycle_path)}")

        visiting.add(lesson_id)
        path.append(lesson_id)
        for prerequisite in sorted(lessons[lesson_id].prerequisites):
            visit(prerequisite, path)
        path.pop()
        visiting.remove(lesson_id)
        visited.add(lesson_id)

    for lesson_id in lessons:
        visit(lesson_id, [])
