from typing import Any, Dict, List, Optional, Sequence

from .records import (
    AGE_DIVISIONS,
    SKILL_TIERS,
    TEAM_SIZES,
    EventTier,
    GameScore,
    MatchFormat,
    MatchType,
)


class ValidationError(Exception):
    """Raised when a submitted match cannot be admitted to the ledger."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


POINT_TARGETS = (11, 15, 21)
WIN_BY = 2
BEST_OF_VALUES = (1, 3, 5)

# Default game target per match type when the submission does not name one.
DEFAULT_POINTS_TO: Dict[MatchType, int] = {
    MatchType.CASUAL: 11,
    MatchType.LEAGUE: 11,
    MatchType.TOURNAMENT: 11,
}


def _coerce_choice(enum_cls, value: Any, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Unknown {label} '{value}'. Expected one of: {allowed}.")


def validate_classification(
    format: Any,
    match_type: Any,
    event_tier: Any,
    division: Any,
    skill_tier: Any,
) -> tuple[MatchFormat, MatchType, EventTier, str, str]:
    fmt = _coerce_choice(MatchFormat, format, "format")
    mtype = _coerce_choice(MatchType, match_type, "match type")
    tier = _coerce_choice(EventTier, event_tier, "event tier")
    if division not in AGE_DIVISIONS:
        raise ValidationError(
            f"Unknown division '{division}'. Expected one of: {', '.join(AGE_DIVISIONS)}."
        )
    if skill_tier not in SKILL_TIERS:
        raise ValidationError(
            f"Unknown skill tier '{skill_tier}'. Expected one of: {', '.join(SKILL_TIERS)}."
        )
    return fmt, mtype, tier, division, skill_tier


def validate_participants(
    format: MatchFormat, side_players: Dict[str, List[str]]
) -> None:
    """Check side count, team sizes and that nobody appears twice."""

    if set(side_players) != {"A", "B"}:
        raise ValidationError("Matches require exactly two sides, A and B.")

    team_size = TEAM_SIZES[format]
    seen: set[str] = set()
    for side in ("A", "B"):
        players = side_players[side]
        if len(players) != team_size:
            raise ValidationError(
                f"{format.value.title()} matches require exactly {team_size}"
                " player(s) per side."
            )
        for pid in players:
            if not isinstance(pid, str) or not pid.strip():
                raise ValidationError(f"Side {side} contains an empty player id.")
            if pid in seen:
                raise ValidationError(f"Player '{pid}' appears more than once.")
            seen.add(pid)


def _game_value(raw: Any, index: int) -> int:
    # Reject booleans explicitly (bool is a subclass of int in Python)
    if isinstance(raw, bool):
        raise ValidationError(f"Game #{index} scores must be integers (not booleans).")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Game #{index} scores must be integers.")
    if value < 0:
        raise ValidationError(f"Game #{index} scores must be >= 0.")
    return value


def validate_game_scores(
    games: Sequence[Any],
    *,
    points_to: int = 11,
    best_of: Optional[int] = None,
) -> tuple[List[GameScore], int]:
    """Validate pickleball game scores and return them with the best-of value.

    Rules:
    - At least one game is required, at most ``best_of`` games
    - Each game is an object ``{A, B}`` (or a 2-item list) of integers >= 0
    - A game is won by reaching ``points_to`` with a 2-point lead; past the
      target the margin must be exactly 2 (play stops as soon as it is won)
    - Ties are not allowed
    - One side must clinch the match in the final game and no games may
      follow the clinching one
    """

    if points_to not in POINT_TARGETS:
        raise ValidationError(
            f"Point target must be one of {', '.join(str(p) for p in POINT_TARGETS)}."
        )
    if not isinstance(games, (list, tuple)) or len(games) == 0:
        raise ValidationError("At least one game is required.")

    if best_of is None:
        best_of = 1 if len(games) == 1 else (3 if len(games) <= 3 else 5)
    if best_of not in BEST_OF_VALUES:
        raise ValidationError("Best-of must be 1, 3 or 5.")
    if len(games) > best_of:
        raise ValidationError(f"Too many games. Max allowed is {best_of}.")

    parsed: List[GameScore] = []
    for i, game in enumerate(games, start=1):
        if isinstance(game, GameScore):
            raw_a, raw_b = game.A, game.B
        elif isinstance(game, dict):
            if "A" not in game or "B" not in game:
                raise ValidationError(f"Game #{i} must include both A and B.")
            raw_a, raw_b = game["A"], game["B"]
        elif isinstance(game, (list, tuple)) and len(game) == 2:
            raw_a, raw_b = game
        else:
            raise ValidationError(f"Game #{i} must be an object with fields A and B.")

        a = _game_value(raw_a, i)
        b = _game_value(raw_b, i)
        if a == b:
            raise ValidationError(f"Game #{i} cannot be a tie.")

        high, low = max(a, b), min(a, b)
        if high < points_to or high - low < WIN_BY:
            raise ValidationError(
                f"Game #{i} is not finished: a game goes to {points_to}, win by {WIN_BY}."
            )
        if high > points_to and high - low != WIN_BY:
            raise ValidationError(
                f"Game #{i} score {a}-{b} is inconsistent with a {points_to}-point game."
            )
        parsed.append(GameScore(A=a, B=b))

    needed = best_of // 2 + 1
    wins = {"A": 0, "B": 0}
    for i, game in enumerate(parsed, start=1):
        wins[game.winner] += 1
        if wins[game.winner] >= needed and i != len(parsed):
            raise ValidationError(
                f"Game #{i + 1} was played after the match was already decided."
            )
    if max(wins.values()) < needed:
        raise ValidationError(
            f"Match has no winner: one side must win {needed} of {best_of} games."
        )

    return parsed, best_of
