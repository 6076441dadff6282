"""Mapping from cumulative XP to level numbers."""

from __future__ import annotations

from bisect import bisect_right
from collections.abc import Sequence
from dataclasses import dataclass

from .errors import CatalogError, InvalidInputError


@dataclass(frozen=True)
class LevelInfo:
    """Level position derived from total XP.

    `xp_for_next_level` is the XP still required to reach the next threshold
    (0 once the last level is reached) and `fraction` is
    `xp_into_level / xp_for_next_level` clamped to [0, 1].
    """

    level: int
    xp_into_level: int
    xp_for_next_level: int
    fraction: float

    @property
    def at_cap(self) -> bool:
        """Return whether no further level exists."""
        return self.xp_for_next_level == 0


class LevelCurve:
    """Strictly increasing XP thresholds indexed by level (level 1 starts at 0 XP)."""

    def __init__(self, thresholds: Sequence[int]) -> None:
        """Validate and store level thresholds."""
        values = tuple(int(value) for value in thresholds)
        if not values or values[0] != 0:
            raise CatalogError("Level thresholds must start at 0 XP.")
        for previous, current in zip(values, values[1:]):
            if current <= previous:
                raise CatalogError(f"Level thresholds must be strictly increasing: {previous} then {current}.")
        self._thresholds = values

    @classmethod
    def linear(cls, step: int = 500, max_level: int = 100) -> LevelCurve:
        """Build a curve where every `step` XP is one more level."""
        if step <= 0 or max_level <= 0:
            raise CatalogError("Linear level curve needs a positive step and level count.")
        return cls([step * index for index in range(max_level)])

    @property
    def thresholds(self) -> tuple[int, ...]:
        """Return the XP threshold of every level."""
        return self._thresholds

    @property
    def max_level(self) -> int:
        """Return the highest reachable level."""
        return len(self._thresholds)

    def level_for(self, total_xp: int) -> LevelInfo:
        """Return level information for a cumulative XP total."""
        if total_xp < 0:
            raise InvalidInputError(f"Total XP cannot be negative: {total_xp}.")
        level = bisect_right(self._thresholds, total_xp)
        xp_into_level = total_xp - self._thresholds[level - 1]
        if level >= len(self._thresholds):
            return LevelInfo(level=level, xp_into_level=xp_into_level, xp_for_next_level=0, fraction=1.0)

        xp_for_next_level = self._thresholds[level] - total_xp
        fraction = min(1.0, max(0.0, xp_into_level / xp_for_next_level))
        return LevelInfo(
            level=level,
            xp_into_level=xp_into_level,
            xp_for_next_level=xp_for_next_level,
            fraction=fraction,
        )


DEFAULT_CURVE = LevelCurve.linear()


def level_for(total_xp: int, curve: LevelCurve = DEFAULT_CURVE) -> LevelInfo:
    """Return level information on the given curve."""
    return curve.level_for(total_xp)
