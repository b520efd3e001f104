import pytest

from app.services.levels import LEVELS, MAX_LEVEL, level_change, level_for, level_progress


@pytest.mark.parametrize(
    "xp, level",
    [
        (0, 1),
        (99, 1),
        (100, 2),
        (999, 5),
        (1000, 10),
        (1999, 10),
        (49999, 49),
        (50000, 50),
        (51999, 50),
        (52000, 51),
        (150000, 100),
        (10**7, 100),
        (-5, 1),
    ],
)
def test_level_for_thresholds(xp, level):
    assert level_for(xp).level == level


def test_level_table_is_ordered():
    assert LEVELS[0].min_xp == 0
    assert LEVELS[-1].level == MAX_LEVEL
    assert LEVELS[-1].name == "Grandmaster"
    thresholds = [lvl.min_xp for lvl in LEVELS]
    assert thresholds == sorted(set(thresholds))


def test_progress_towards_next_level():
    progress = level_progress(130)
    assert (progress.level, progress.name) == (2, "Court Rookie")
    assert (progress.level_xp, progress.next_level_xp) == (100, 250)
    assert progress.progress == 20

    assert level_progress(0).progress == 0
    top = level_progress(200000)
    assert top.level == MAX_LEVEL
    assert top.next_level_xp is None
    assert top.progress == 100
    assert top.as_dict()["levelName"] == "Grandmaster"


def test_level_change():
    assert level_change(80, 160).level_up is True
    assert level_change(0, 80).level_up is False
    # voided XP can move a player back down
    dropped = level_change(1040, 880)
    assert (dropped.old_level, dropped.new_level) == (10, 5)
    assert dropped.level_up is False
