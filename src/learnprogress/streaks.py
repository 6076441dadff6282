"""Day-streak transitions and the calendar used to decide day boundaries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidInputError
from .models import ProgressSnapshot


class Clock(Protocol):
    """Source of the current instant and the current calendar day."""

    def now(self) -> datetime:
        """Return the current aware UTC instant."""
        ...

    def today(self) -> date:
        """Return the current calendar day in the clock's zone."""
        ...


class SystemClock:
    """Wall clock that resolves calendar days in one fixed time zone."""

    def __init__(self, tz_name: str = "UTC") -> None:
        """Bind the clock to an IANA time zone name."""
        try:
            self._zone = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidInputError(f"Unknown time zone: {tz_name!r}.") from exc
        self.tz_name = tz_name

    def now(self) -> datetime:
        """Return the current aware UTC instant."""
        return datetime.now(UTC)

    def today(self) -> date:
        """Return today's date in the configured zone."""
        return self.day_of(self.now())

    def day_of(self, instant: datetime) -> date:
        """Return the calendar day an aware instant falls on in the configured zone."""
        if instant.tzinfo is None:
            raise InvalidInputError("Cannot resolve the calendar day of a naive datetime.")
        return instant.astimezone(self._zone).date()


class FixedClock:
    """Clock pinned to a settable instant, for tests and replays."""

    def __init__(self, current: datetime, tz_name: str = "UTC") -> None:
        self._calendar = SystemClock(tz_name)
        self.current = current

    def now(self) -> datetime:
        return self.current

    def today(self) -> date:
        return self._calendar.day_of(self.current)

    def advance(self, **kwargs: float) -> None:
        """Move the clock forward by a `timedelta(**kwargs)`."""
        self.current = self.current + timedelta(**kwargs)


@dataclass(frozen=True)
class StreakState:
    """Streak counters and the day they were last updated."""

    streak: int
    longest_streak: int
    last_active_date: date | None


@dataclass(frozen=True)
class StreakSummary:
    """Read-only streak view for display."""

    current: int
    longest: int
    active_today: bool
    at_risk: bool


def next_streak_state(current: StreakState, today: date) -> StreakState:
    """Return streak counters after qualifying activity on `today`.

    Same day leaves the state unchanged, the following day extends the streak,
    and any longer gap restarts it at 1. Activity dated before the last active
    day is rejected.
    """
    last = current.last_active_date
    if last is None:
        return StreakState(streak=1, longest_streak=max(current.longest_streak, 1), last_active_date=today)
    if today < last:
        raise InvalidInputError(f"Activity on {today.isoformat()} is before last active day {last.isoformat()}.")
    if today == last:
        return current

    if today == last + timedelta(days=1):
        streak = current.streak + 1
    else:
        streak = 1
    return StreakState(streak=streak, longest_streak=max(current.longest_streak, streak), last_active_date=today)


def streak_state_of(snapshot: ProgressSnapshot) -> StreakState:
    """Extract streak counters from a progress snapshot."""
    return StreakState(
        streak=snapshot.current_streak,
        longest_streak=snapshot.longest_streak,
        last_active_date=snapshot.last_active_date,
    )


def streak_summary(snapshot: ProgressSnapshot, today: date) -> StreakSummary:
    """Summarize streak state; a streak is at risk when yesterday was the last active day."""
    last = snapshot.last_active_date
    active_today = last == today
    at_risk = last is not None and snapshot.current_streak > 0 and last == today - timedelta(days=1)
    current = snapshot.current_streak
    if last is not None and today - last > timedelta(days=1):
        current = 0
    return StreakSummary(current=current, longest=snapshot.longest_streak, active_today=active_today, at_risk=at_risk)
