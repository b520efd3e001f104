"""Immutable value objects for match records and ranking bucket keys.

These are the shapes the reward calculator, ranking replay and integrity
auditor operate on. They carry no session or ORM state, so every function
that accepts them can be exercised without a database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..time_utils import epoch_millis

SIDES = ("A", "B")


class MatchFormat(str, Enum):
    SINGLES = "singles"
    DOUBLES = "doubles"


class MatchType(str, Enum):
    CASUAL = "casual"
    LEAGUE = "league"
    TOURNAMENT = "tournament"


class EventTier(str, Enum):
    LOCAL = "local"
    REGIONAL = "regional"
    NATIONAL = "national"
    INTERNATIONAL = "international"


class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    DISPUTED = "disputed"
    REJECTED = "rejected"


class XPSource(str, Enum):
    MATCH_PARTICIPATION = "match_participation"
    TOURNAMENT_BONUS = "tournament_bonus"
    ACHIEVEMENT = "achievement"


AGE_DIVISIONS = ("open", "19+", "35+", "50+", "60+", "70+")
SKILL_TIERS = ("open", "2.5", "3.0", "3.5", "4.0", "4.5", "5.0")
TEAM_SIZES = {MatchFormat.SINGLES: 1, MatchFormat.DOUBLES: 2}


def other_side(side: str) -> str:
    return "B" if side == "A" else "A"


@dataclass(frozen=True)
class GameScore:
    A: int
    B: int

    def points(self, side: str) -> int:
        return self.A if side == "A" else self.B

    @property
    def winner(self) -> Optional[str]:
        if self.A == self.B:
            return None
        return "A" if self.A > self.B else "B"


@dataclass(frozen=True, order=True)
class BucketKey:
    format: str
    age_division: str
    skill_tier: str

    def as_dict(self) -> dict[str, str]:
        return {
            "format": self.format,
            "division": self.age_division,
            "tier": self.skill_tier,
        }


@dataclass(frozen=True)
class MatchRecord:
    id: str
    side_a: tuple[str, ...]
    side_b: tuple[str, ...]
    games: tuple[GameScore, ...]
    format: MatchFormat
    match_type: MatchType
    event_tier: EventTier
    division: str
    recorded_at: datetime
    skill_tier: str = "open"
    points_to: int = 11
    created_at: Optional[datetime] = None
    validation_status: ValidationStatus = ValidationStatus.VALIDATED
    location: Optional[str] = None
    deleted: bool = False

    @property
    def bucket_key(self) -> BucketKey:
        return BucketKey(self.format.value, self.division, self.skill_tier)

    @property
    def recorded_ms(self) -> int:
        return epoch_millis(self.recorded_at)

    @property
    def participants(self) -> tuple[str, ...]:
        return self.side_a + self.side_b

    @property
    def participant_set(self) -> frozenset[str]:
        return frozenset(self.participants)

    @property
    def is_valid(self) -> bool:
        """Whether the record counts towards rankings and XP."""

        return (
            not self.deleted
            and self.validation_status == ValidationStatus.VALIDATED
        )

    def players(self, side: str) -> tuple[str, ...]:
        return self.side_a if side == "A" else self.side_b

    def side_of(self, player_id: str) -> Optional[str]:
        if player_id in self.side_a:
            return "A"
        if player_id in self.side_b:
            return "B"
        return None

    def games_won(self, side: str) -> int:
        return sum(1 for game in self.games if game.winner == side)

    @property
    def winner_side(self) -> Optional[str]:
        a_games = self.games_won("A")
        b_games = self.games_won("B")
        if a_games == b_games:
            return None
        return "A" if a_games > b_games else "B"

    def won(self, player_id: str) -> bool:
        side = self.side_of(player_id)
        return side is not None and side == self.winner_side

    @property
    def signature(self) -> tuple:
        """Identity of the physical event: format, teams and per-game points.

        Side labels are normalised away so a match entered with teams swapped
        produces the same signature.
        """

        teams = frozenset(
            (
                tuple(sorted(self.players(side))),
                tuple(game.points(side) for game in self.games),
            )
            for side in SIDES
        )
        return (self.format.value, teams)

    @property
    def completeness(self) -> int:
        score = 0
        if self.location:
            score += 1
        if self.validation_status == ValidationStatus.VALIDATED:
            score += 1
        return score
