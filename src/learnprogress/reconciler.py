"""Merging authoritative remote progress into the local snapshot."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime
from typing import cast

from .models import DEFAULT_USER_NAME, ProgressSnapshot

logger = logging.getLogger(__name__)


def merge(local: ProgressSnapshot, remote: ProgressSnapshot) -> ProgressSnapshot:
    """Combine two snapshots without losing progress from either side.

    XP and counters take the maximum, completed lessons are the union, streak
    fields come from whichever side was active more recently (local on ties) and
    boolean flags are OR-ed.
    """
    if _more_recent(remote.last_active_date, local.last_active_date):
        streak_source = remote
    else:
        streak_source = local
    current_streak = streak_source.current_streak
    longest_streak = max(local.longest_streak, remote.longest_streak, current_streak)

    user_name = local.user_name
    if user_name == DEFAULT_USER_NAME and remote.user_name:
        user_name = remote.user_name

    return ProgressSnapshot(
        total_xp=max(local.total_xp, remote.total_xp),
        current_streak=current_streak,
        longest_streak=longest_streak,
        completed_lessons=local.completed_lessons | remote.completed_lessons,
        last_active_date=streak_source.last_active_date,
        daily_challenge_completed_today=local.daily_challenge_completed_today or remote.daily_challenge_completed_today,
        user_name=user_name,
        study_time_minutes=max(local.study_time_minutes, remote.study_time_minutes),
        daily_challenges_completed=max(local.daily_challenges_completed, remote.daily_challenges_completed),
        last_daily_challenge_date=_latest(local.last_daily_challenge_date, remote.last_daily_challenge_date),
    )


def _more_recent(candidate: date | None, baseline: date | None) -> bool:
    if candidate is None:
        return False
    return baseline is None or candidate > baseline


def _latest(first: date | None, second: date | None) -> date | None:
    if first is None:
        return second
    if second is None:
        return first
    return max(first, second)


class RemoteReconciler:
    """Tracks in-flight remote fetches so stale results are never applied.

    Each fetch takes a ticket when it is issued. Once the result of a fetch has
    been accepted, results from fetches issued before it are discarded when they
    land later.
    """

    def __init__(self) -> None:
        self._issued = 0
        self._applied = 0

    def begin_fetch(self) -> int:
        """Issue a ticket for a new fetch."""
        self._issued += 1
        return self._issued

    def is_stale(self, ticket: int) -> bool:
        """Return whether a newer fetch has already been applied."""
        return ticket <= self._applied

    def accept(self, ticket: int, local: ProgressSnapshot, remote: ProgressSnapshot) -> ProgressSnapshot | None:
        """Merge a fetch result, or return None when it has been superseded."""
        if self.is_stale(ticket):
            logger.info("Discarding stale remote progress from fetch %d (applied %d)", ticket, self._applied)
            return None
        self._applied = ticket
        return merge(local, remote)


def snapshot_from_remote(payload: Mapping[str, object]) -> ProgressSnapshot:
    """Build a snapshot from a remote stats payload.

    Only an explicit `completed_lessons` list is trusted. A bare
    `levels_completed` count does not say which lessons were completed, so it is
    never expanded into a lesson set.
    """
    raw_completed = payload.get("completed_lessons")
    completed: frozenset[str] = frozenset()
    if isinstance(raw_completed, list):
        completed = frozenset(
            str(item).strip() for item in cast(list[object], raw_completed) if str(item).strip()
        )
    elif "levels_completed" in payload:
        logger.warning("Remote stats only report a completed-lesson count; ignoring it for the completed set")

    current_streak = max(0, coerce_int(payload.get("current_streak"), default=0) or 0)
    longest_streak = max(current_streak, coerce_int(payload.get("longest_streak"), default=0) or 0)
    user_name = payload.get("user_name")
    return ProgressSnapshot(
        total_xp=max(0, coerce_int(payload.get("total_xp"), default=0) or 0),
        current_streak=current_streak,
        longest_streak=longest_streak,
        completed_lessons=completed,
        last_active_date=coerce_date(payload.get("last_active_date")),
        daily_challenge_completed_today=bool(payload.get("daily_challenge_completed_today", False)),
        user_name=user_name.strip() if isinstance(user_name, str) and user_name.strip() else DEFAULT_USER_NAME,
        study_time_minutes=max(0, coerce_int(payload.get("total_study_time_minutes"), default=0) or 0),
        daily_challenges_completed=max(0, coerce_int(payload.get("daily_challenges_completed"), default=0) or 0),
        last_daily_challenge_date=coerce_date(payload.get("last_daily_challenge_date")),
    )


def coerce_int(value: object, default: int | None = None) -> int | None:
    """Coerce value to int for payload normalization."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


def coerce_date(value: object) -> date | None:
    """Coerce an ISO date or datetime string to a date."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        logger.warning("Ignoring unparseable remote date %r", value)
        return None
