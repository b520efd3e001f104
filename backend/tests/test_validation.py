import pytest
from app.services.records import MatchFormat, MatchType
from app.services.validation import (
    ValidationError,
    validate_classification,
    validate_game_scores,
    validate_participants,
)


def test_accepts_valid_games() -> None:
    games, best_of = validate_game_scores([{"A": 11, "B": 7}])
    assert best_of == 1
    assert games[0].winner == "A"

    games, best_of = validate_game_scores(
        [{"A": 11, "B": 9}, {"A": 9, "B": 11}, {"A": 13, "B": 11}]
    )
    assert best_of == 3
    assert [g.winner for g in games] == ["A", "B", "A"]


def test_accepts_tuple_games_and_other_targets() -> None:
    games, _ = validate_game_scores([(15, 13), (17, 15)], points_to=15)
    assert [(g.A, g.B) for g in games] == [(15, 13), (17, 15)]


@pytest.mark.parametrize(
    "games, msg",
    [
        ([], "At least one game"),                      # empty list
        ([{"A": 10, "B": 10}], "cannot be a tie"),      # tie
        ([{"A": -1, "B": 11}], ">= 0"),                 # negative
        ([{"A": "x", "B": 0}], "integers"),             # non-integer
        ([{"A": True, "B": 0}], "not booleans"),        # boolean
        ([{"A": 11}], "include both A and B"),          # missing key
        ("not a list", "At least one game"),            # wrong top-level type
        ([42], "must be an object"),                    # non-dict game entry
        ([{"A": 10, "B": 8}], "not finished"),          # below target
        ([{"A": 11, "B": 10}], "not finished"),         # no two-point lead
        ([{"A": 15, "B": 9}], "inconsistent"),          # overshoot
        ([{"A": 11, "B": 2}, {"A": 11, "B": 3}, {"A": 11, "B": 4}], "already decided"),
        ([{"A": 11, "B": 2}, {"A": 2, "B": 11}], "no winner"),
    ],
    ids=[
        "empty",
        "tie",
        "negative",
        "non-integer",
        "boolean",
        "missing-key",
        "not-a-list",
        "non-dict-entry",
        "unfinished",
        "win-by-one",
        "overshoot",
        "game-after-decided",
        "split",
    ],
)
def test_rejects_invalid_games(games, msg) -> None:
    with pytest.raises(ValidationError) as exc:
        validate_game_scores(games)  # type: ignore[arg-type]
    assert msg.lower() in str(exc.value).lower()


def test_rejects_too_many_games() -> None:
    with pytest.raises(ValidationError):
        validate_game_scores([{"A": 11, "B": 0}] * 4, best_of=3)


def test_rejects_unknown_point_target() -> None:
    with pytest.raises(ValidationError):
        validate_game_scores([{"A": 12, "B": 0}], points_to=12)


def test_participants_require_team_sizes() -> None:
    validate_participants(MatchFormat.DOUBLES, {"A": ["p1", "p2"], "B": ["p3", "p4"]})
    with pytest.raises(ValidationError, match="exactly 2"):
        validate_participants(MatchFormat.DOUBLES, {"A": ["p1"], "B": ["p3", "p4"]})
    with pytest.raises(ValidationError, match="exactly 1"):
        validate_participants(MatchFormat.SINGLES, {"A": ["p1", "p2"], "B": ["p3"]})


def test_participants_must_be_distinct() -> None:
    with pytest.raises(ValidationError, match="more than once"):
        validate_participants(MatchFormat.SINGLES, {"A": ["p1"], "B": ["p1"]})


def test_classification_rejects_unknown_values() -> None:
    fmt, mtype, _, division, tier = validate_classification(
        "doubles", "league", "regional", "50+", "3.5"
    )
    assert fmt is MatchFormat.DOUBLES
    assert mtype is MatchType.LEAGUE
    assert (division, tier) == ("50+", "3.5")

    with pytest.raises(ValidationError, match="format"):
        validate_classification("triples", "casual", "local", "open", "open")
    with pytest.raises(ValidationError, match="division"):
        validate_classification("singles", "casual", "local", "45+", "open")
    with pytest.raises(ValidationError, match="skill tier"):
        validate_classification("singles", "casual", "local", "open", "6.0")
