"""Player levels derived from lifetime XP.

Levels are a pure function of the lifetime total, so voiding XP during
cleanup moves a player back down without any stored level to repair. The
named levels are sparse (1-5, then every fifth level up to 45, then 49);
from level 50 every further level costs 2000 XP, ending at level 100.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from typing import Optional

MAX_LEVEL = 100


@dataclass(frozen=True)
class Level:
    level: int
    name: str
    min_xp: int


_NAMED_LEVELS = (
    Level(1, "Paddle Novice", 0),
    Level(2, "Court Rookie", 100),
    Level(3, "Rally Beginner", 250),
    Level(4, "Serve Starter", 500),
    Level(5, "Dink Dabbler", 750),
    Level(10, "Volley Apprentice", 1000),
    Level(15, "Kitchen Keeper", 2000),
    Level(20, "Spin Specialist", 4000),
    Level(25, "Volley Virtuoso", 7000),
    Level(30, "Dink Dynamo", 10000),
    Level(35, "Smash Specialist", 15000),
    Level(40, "Court Commander", 20000),
    Level(45, "Pickleball Pro", 30000),
    Level(49, "Legendary Competitor", 40000),
)

LEVELS: tuple[Level, ...] = _NAMED_LEVELS + tuple(
    Level(n, "Grandmaster" if n == MAX_LEVEL else f"Level {n}", 50000 + (n - 50) * 2000)
    for n in range(50, MAX_LEVEL + 1)
)
_THRESHOLDS = [level.min_xp for level in LEVELS]


@dataclass(frozen=True)
class LevelProgress:
    level: int
    name: str
    xp: int
    level_xp: int
    next_level_xp: Optional[int]
    progress: int

    def as_dict(self) -> dict[str, object]:
        return {
            "level": self.level,
            "levelName": self.name,
            "xp": self.xp,
            "levelXp": self.level_xp,
            "nextLevelXp": self.next_level_xp,
            "progress": self.progress,
        }


@dataclass(frozen=True)
class LevelChange:
    old_level: int
    new_level: int

    @property
    def level_up(self) -> bool:
        return self.new_level > self.old_level


def _index_for(xp: int) -> int:
    return max(bisect_right(_THRESHOLDS, max(xp, 0)) - 1, 0)


def level_for(xp: int) -> Level:
    return LEVELS[_index_for(xp)]


def level_progress(xp: int) -> LevelProgress:
    """Current level and the percentage of the way to the next one."""

    index = _index_for(xp)
    current = LEVELS[index]
    if index + 1 == len(LEVELS):
        return LevelProgress(current.level, current.name, xp, current.min_xp, None, 100)
    following = LEVELS[index + 1]
    span = following.min_xp - current.min_xp
    progress = min(round((xp - current.min_xp) * 100 / span), 100)
    return LevelProgress(
        current.level, current.name, xp, current.min_xp, following.min_xp, progress
    )


def level_change(before: int, after: int) -> LevelChange:
    return LevelChange(level_for(before).level, level_for(after).level)
