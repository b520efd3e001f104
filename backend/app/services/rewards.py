"""Reward calculator: XP and ranking-point deltas for a validated match.

The calculator is a pure function of the match and the participants'
bucket snapshots taken just before the match was applied. It performs no
I/O and keeps no state, which is what lets the ranking index replay it over
the ledger and land on exactly the same totals as live recording.

XP rewards participation. Every participant receives::

    BASE_PARTICIPATION_XP + MATCH_TYPE_XP[type] + EVENT_TIER_XP[tier]
        + WIN_BONUS_XP (winners only)

Ranking points depend on relative standing. For a side whose average
bucket points differ from the opponents' by ``diff = opponent - own``::

    win:  +WIN_POINTS[type]  * tier * format * clamp(1 + diff / SCALE)
    loss: -LOSS_POINTS[type] * tier * format * clamp(1 - diff / SCALE)

so beating a stronger side pays more than beating a weaker one, and losing
to a weaker side costs more than losing to a stronger one. The clamp keeps
the strength factor within [0.5, 1.5]. Doubles teams receive a pool of
``per-player delta * team size`` split equally between teammates, and each
player's result is floored so their points never drop below zero.

Deltas are kept to two decimals, rounded up when the opponents are stronger
and down when they are weaker. A one-cent gap in standing therefore still
orders the rewards strictly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping

from .records import (
    SIDES,
    EventTier,
    MatchFormat,
    MatchRecord,
    MatchType,
    other_side,
)

BASE_PARTICIPATION_XP = 30
WIN_BONUS_XP = 50
MATCH_TYPE_XP = {
    MatchType.CASUAL: 0,
    MatchType.LEAGUE: 15,
    MatchType.TOURNAMENT: 40,
}
EVENT_TIER_XP = {
    EventTier.LOCAL: 0,
    EventTier.REGIONAL: 10,
    EventTier.NATIONAL: 25,
    EventTier.INTERNATIONAL: 50,
}

WIN_POINTS = {
    MatchType.CASUAL: 10.0,
    MatchType.LEAGUE: 20.0,
    MatchType.TOURNAMENT: 30.0,
}
LOSS_POINTS = {match_type: points / 2 for match_type, points in WIN_POINTS.items()}
EVENT_TIER_MULTIPLIER = {
    EventTier.LOCAL: 1.0,
    EventTier.REGIONAL: 1.5,
    EventTier.NATIONAL: 2.0,
    EventTier.INTERNATIONAL: 3.0,
}
FORMAT_MULTIPLIER = {
    MatchFormat.SINGLES: 1.2,
    MatchFormat.DOUBLES: 1.0,
}

STRENGTH_SCALE = 100.0
MIN_STRENGTH = 0.5
MAX_STRENGTH = 1.5
POINT_PRECISION = 2


@dataclass(frozen=True)
class BucketSnapshot:
    ranking_points: float = 0.0
    match_count: int = 0


EMPTY_SNAPSHOT = BucketSnapshot()


@dataclass(frozen=True)
class RewardDelta:
    player_id: str
    xp_delta: int
    ranking_point_delta: float
    won: bool

    def as_dict(self) -> dict[str, object]:
        return {
            "playerId": self.player_id,
            "xpDelta": self.xp_delta,
            "rankingPointDelta": self.ranking_point_delta,
            "won": self.won,
        }


def xp_for(match: MatchRecord, won: bool) -> int:
    xp = (
        BASE_PARTICIPATION_XP
        + MATCH_TYPE_XP[match.match_type]
        + EVENT_TIER_XP[match.event_tier]
    )
    if won:
        xp += WIN_BONUS_XP
    return xp


def strength_factor(diff: float, won: bool) -> float:
    """Map the opponent-minus-own point differential to a multiplier."""

    raw = 1 + diff / STRENGTH_SCALE if won else 1 - diff / STRENGTH_SCALE
    return min(MAX_STRENGTH, max(MIN_STRENGTH, raw))


def _team_points(players: tuple[str, ...], snapshots: Mapping[str, BucketSnapshot]) -> float:
    if not players:
        return 0.0
    total = sum(snapshots.get(pid, EMPTY_SNAPSHOT).ranking_points for pid in players)
    return total / len(players)
def round_toward(value: float, diff: float) -> float:
    """Round ``value`` to ``POINT_PRECISION`` decimals in the direction of
    ``diff``: up against stronger opposition, down against weaker.
    """

    if diff == 0:
        return round(value, POINT_PRECISION)
    scale = 10 ** POINT_PRECISION
    # drop float noise first so exact cents stay put
    scaled = round(value * scale, 6)
    steps = math.ceil(scaled) if diff > 0 else math.floor(scaled)
    return steps / scale


def _floor(current: float, delta: float) -> float:
    if current + delta < 0:
        delta = -current
    delta = round(delta, POINT_PRECISION)
    # avoid reporting -0.0
    return delta if delta != 0 else 0.0


def calculate_rewards(
    match: MatchRecord, snapshots: Mapping[str, BucketSnapshot]
) -> dict[str, RewardDelta]:
    """Return the reward for every participant of ``match``.

    ``snapshots`` holds each participant's bucket state for the match's
    bucket key; players without an entry are treated as fresh buckets.
    """

    winner = match.winner_side
    if winner is None:
        raise ValueError(f"match {match.id} has no winner")

    team_points = {side: _team_points(match.players(side), snapshots) for side in SIDES}
    multiplier = (
        EVENT_TIER_MULTIPLIER[match.event_tier] * FORMAT_MULTIPLIER[match.format]
    )

    rewards: dict[str, RewardDelta] = {}
    for side in SIDES:
        players = match.players(side)
        if not players:
            continue
        won = side == winner
        diff = team_points[other_side(side)] - team_points[side]
        if won:
            per_player = WIN_POINTS[match.match_type] * multiplier * strength_factor(diff, True)
        else:
            per_player = -LOSS_POINTS[match.match_type] * multiplier * strength_factor(diff, False)
        # an equal split of the side's pool is the per-player figure itself
        share = round_toward(per_player, diff)

        xp = xp_for(match, won)
        for pid in players:
            current = snapshots.get(pid, EMPTY_SNAPSHOT).ranking_points
            rewards[pid] = RewardDelta(
                player_id=pid,
                xp_delta=xp,
                ranking_point_delta=_floor(current, share),
                won=won,
            )
    return rewards
