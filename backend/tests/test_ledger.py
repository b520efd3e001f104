import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app import db
from app.exceptions import MatchConflictError, MatchStateError
from app.models import Match, XPLedgerEntry
from app.services.ledger import (
    MatchInput,
    append_xp,
    confirm_match,
    dispute_match,
    get_level,
    get_lifetime_xp,
    get_match_record,
    load_ledger,
    recompute_player_xp,
    record_match,
    reject_match,
    sum_xp,
    xp_history,
)
from app.services.ranking import get_position
from app.services.records import BucketKey, XPSource
from app.services.validation import ValidationError
from ledger_fixtures import BASE_TIME, add_players

SINGLES = BucketKey("singles", "open", "open")


def _singles(a="p1", b="p2", games=None, at=BASE_TIME, **kwargs):
    return MatchInput(
        side_a=[a],
        side_b=[b],
        games=games or [{"A": 11, "B": 6}, {"A": 11, "B": 8}],
        format="singles",
        match_type="casual",
        event_tier="local",
        division="open",
        recorded_at=at,
        **kwargs,
    )


async def _players(session, *ids):
    await add_players(session, *ids)
    await session.commit()


def test_record_match_applies_rewards():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1", "p2")
            result = await record_match(session, _singles(location="Court 3"))

            assert result.status == "validated"
            assert result.rewards["p1"].won is True
            assert result.rewards["p1"].xp_delta == 80
            assert result.as_dict()["rewards"][0]["playerId"] == "p1"

            position = await get_position(session, "p1", SINGLES)
            assert position.match_count == 1
            assert position.ranking_points == pytest.approx(12.0)
            assert await get_lifetime_xp(session, "p1") == 80
            assert await get_lifetime_xp(session, "p2") == 30

            record = await get_match_record(session, result.match_id)
            assert record.participants == ("p1", "p2")
            assert record.location == "Court 3"

    asyncio.run(inner())


def test_identical_submission_is_rejected():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1", "p2")
            at = datetime(2025, 8, 17, 13, 20, 33, 742100, tzinfo=timezone.utc)
            first = await record_match(session, _singles(at=at))

            # same event entered from the other side's point of view
            swapped = _singles(
                a="p2",
                b="p1",
                games=[{"A": 6, "B": 11}, {"A": 8, "B": 11}],
                at=at + timedelta(microseconds=600),
            )
            with pytest.raises(MatchConflictError) as exc:
                await record_match(session, swapped)
            assert exc.value.existing_match_id == first.match_id

            count = (await session.execute(select(func.count(Match.id)))).scalar_one()
            assert count == 1
            assert (await get_position(session, "p1", SINGLES)).match_count == 1

            # a genuine rematch a second later is fine
            await record_match(session, _singles(at=at + timedelta(seconds=1)))
            assert (await get_position(session, "p1", SINGLES)).match_count == 2

    asyncio.run(inner())


def test_unknown_players_are_rejected():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1")
            with pytest.raises(ValidationError, match="Unknown players: ghost"):
                await record_match(session, _singles(b="ghost"))

    asyncio.run(inner())


def test_naive_timestamp_is_rejected():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1", "p2")
            with pytest.raises(ValidationError, match="timezone"):
                await record_match(session, _singles(at=datetime(2025, 8, 1, 12, 0)))

    asyncio.run(inner())


def test_pending_match_counts_only_after_confirmation():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1", "p2")
            result = await record_match(session, _singles(), auto_validate=False)
            assert result.status == "pending"
            assert result.rewards == {}
            assert (await get_position(session, "p1", SINGLES)).match_count == 0
            assert await get_lifetime_xp(session, "p1") == 0

            confirmed = await confirm_match(session, result.match_id)
            assert confirmed.status == "validated"
            assert (await get_position(session, "p1", SINGLES)).match_count == 1
            assert await get_lifetime_xp(session, "p1") == 80

            with pytest.raises(MatchStateError):
                await confirm_match(session, result.match_id)
            assert (await get_position(session, "p1", SINGLES)).match_count == 1

    asyncio.run(inner())


def test_disputed_and_rejected_matches_never_count():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1", "p2")
            disputed = await record_match(session, _singles(), auto_validate=False)
            rejected = await record_match(
                session, _singles(at=BASE_TIME + timedelta(hours=1)), auto_validate=False
            )

            assert (await dispute_match(session, disputed.match_id)).status == "disputed"
            assert (await reject_match(session, rejected.match_id)).status == "rejected"
            with pytest.raises(MatchStateError):
                await confirm_match(session, disputed.match_id)
            with pytest.raises(MatchStateError):
                await dispute_match(session, rejected.match_id)

            assert (await get_position(session, "p1", SINGLES)).match_count == 0
            assert await get_lifetime_xp(session, "p2") == 0

    asyncio.run(inner())


def test_xp_entries_are_unique_per_match_and_source():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1")
            assert await append_xp(session, "p1", 25, source=XPSource.ACHIEVEMENT) is True
            assert await append_xp(session, "p1", 40, match_id=None) is True
            await session.commit()

            assert await get_lifetime_xp(session, "p1") == 65
            assert await sum_xp(session, "p1") == 65
            with pytest.raises(ValueError):
                await append_xp(session, "p1", 0)

    asyncio.run(inner())


def test_voided_xp_is_kept_but_excluded():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1", "p2")
            result = await record_match(session, _singles())
            entry = (
                await session.execute(
                    select(XPLedgerEntry).where(
                        XPLedgerEntry.player_id == "p1",
                        XPLedgerEntry.match_id == result.match_id,
                    )
                )
            ).scalar_one()
            entry.voided_at = BASE_TIME
            await session.flush()

            assert await recompute_player_xp(session, "p1") == 0
            await session.commit()
            assert await xp_history(session, "p1") == []
            history = await xp_history(session, "p1", include_voided=True)
            assert [e.id for e in history] == [entry.id]

    asyncio.run(inner())


def test_load_ledger_snapshot():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1", "p2")
            first = await record_match(session, _singles())
            pending = await record_match(
                session,
                _singles(at=BASE_TIME + timedelta(hours=1)),
                auto_validate=False,
            )
            match = await session.get(Match, first.match_id)
            match.deleted_at = BASE_TIME + timedelta(days=1)
            await session.commit()

            live = await load_ledger(session)
            assert [r.id for r in live] == [pending.match_id]
            assert live[0].validation_status.value == "pending"

            everything = await load_ledger(session, include_deleted=True)
            assert [r.id for r in everything] == [first.match_id, pending.match_id]
            assert everything[0].deleted is True

    asyncio.run(inner())


def test_recording_reports_level_ups():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await _players(session, "p1", "p2")
            first = await record_match(session, _singles())
            assert first.levels["p1"].new_level == 1
            assert first.levels["p1"].level_up is False

            second = await record_match(session, _singles(at=BASE_TIME + timedelta(days=1)))
            assert second.levels["p1"].level_up is True
            assert (second.levels["p1"].old_level, second.levels["p1"].new_level) == (1, 2)
            assert second.levels["p2"].level_up is False
            entry = next(r for r in second.as_dict()["rewards"] if r["playerId"] == "p1")
            assert (entry["level"], entry["levelUp"]) == (2, True)

            level = await get_level(session, "p1")
            assert (level.level, level.xp, level.next_level_xp) == (2, 160, 250)

    asyncio.run(inner())
