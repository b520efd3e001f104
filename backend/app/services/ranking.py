"""Multi-dimensional ranking index.

Each player owns one :class:`~app.models.RankingBucket` per
``(format, age division, skill tier)``. Bucket totals are only ever changed
by :func:`apply_match` (live recording) and :func:`recompute_bucket`
(replay after reconciliation); both go through the reward calculator so the
totals always equal the sum of the deltas in the bucket's applied set.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .. import config
from ..exceptions import ConcurrentUpdateError
from ..models import BucketMatch, Player, RankingBucket
from .records import BucketKey, MatchRecord
from .rewards import (
    EMPTY_SNAPSHOT,
    POINT_PRECISION,
    BucketSnapshot,
    RewardDelta,
    calculate_rewards,
)
from .snapshots import load_match_records

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankingPosition:
    ranking_points: float
    match_count: int
    required_matches: int

    @property
    def is_ranked(self) -> bool:
        return self.match_count >= self.required_matches

    def as_dict(self) -> dict[str, object]:
        return {
            "rankingPoints": self.ranking_points,
            "matchCount": self.match_count,
            "requiredMatches": self.required_matches,
            "isRanked": self.is_ranked,
        }


@dataclass
class BucketState:
    """In-memory bucket used while replaying the ledger."""

    ranking_points: float = 0.0
    match_count: int = 0
    win_count: int = 0
    applied: list[tuple[str, float, bool]] = field(default_factory=list)

    def snapshot(self) -> BucketSnapshot:
        return BucketSnapshot(self.ranking_points, self.match_count)

    def apply(self, match_id: str, reward: RewardDelta) -> None:
        self.ranking_points = _next_points(self.ranking_points, reward.ranking_point_delta)
        self.match_count += 1
        if reward.won:
            self.win_count += 1
        self.applied.append((match_id, reward.ranking_point_delta, reward.won))


def _next_points(current: float, delta: float) -> float:
    return round(max(0.0, current + delta), POINT_PRECISION)


def chronological(records: Iterable[MatchRecord]) -> list[MatchRecord]:
    return sorted(
        records,
        key=lambda r: (r.recorded_at, r.created_at or r.recorded_at, r.id),
    )


def replay_ledger(
    records: Iterable[MatchRecord],
) -> dict[tuple[str, BucketKey], BucketState]:
    """Re-derive every bucket touched by ``records`` from empty state.

    Only valid (validated, not deleted) records are applied, in
    chronological order, each against the snapshots produced by the records
    before it. The result is identical to recording the same matches live
    in that order.
    """

    states: dict[tuple[str, BucketKey], BucketState] = {}
    for record in chronological(r for r in records if r.is_valid):
        key = record.bucket_key
        snapshots = {
            pid: states[(pid, key)].snapshot() if (pid, key) in states else EMPTY_SNAPSHOT
            for pid in record.participants
        }
        for pid, reward in calculate_rewards(record, snapshots).items():
            states.setdefault((pid, key), BucketState()).apply(record.id, reward)
    return states


def _bucket_query(player_id: str, key: BucketKey):
    return select(RankingBucket).where(
        RankingBucket.player_id == player_id,
        RankingBucket.format == key.format,
        RankingBucket.age_division == key.age_division,
        RankingBucket.skill_tier == key.skill_tier,
    )


async def get_bucket(
    session: AsyncSession, player_id: str, key: BucketKey, *, for_update: bool = False
) -> Optional[RankingBucket]:
    stmt = _bucket_query(player_id, key)
    if for_update:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_or_create_bucket(
    session: AsyncSession, player_id: str, key: BucketKey
) -> RankingBucket:
    bucket = await get_bucket(session, player_id, key, for_update=True)
    if bucket is None:
        bucket = RankingBucket(
            id=uuid.uuid4().hex,
            player_id=player_id,
            format=key.format,
            age_division=key.age_division,
            skill_tier=key.skill_tier,
            ranking_points=0.0,
            match_count=0,
            win_count=0,
            required_matches=config.REQUIRED_MATCHES,
        )
        session.add(bucket)
    return bucket


async def load_snapshots(
    session: AsyncSession, player_ids: Sequence[str], key: BucketKey
) -> dict[str, BucketSnapshot]:
    """Lock and read the current bucket state of ``player_ids``."""

    rows = (
        await session.execute(
            select(RankingBucket)
            .where(
                RankingBucket.player_id.in_(list(player_ids)),
                RankingBucket.format == key.format,
                RankingBucket.age_division == key.age_division,
                RankingBucket.skill_tier == key.skill_tier,
            )
            .with_for_update()
        )
    ).scalars().all()
    return {
        row.player_id: BucketSnapshot(row.ranking_points, row.match_count)
        for row in rows
    }


async def _flush(session: AsyncSession) -> None:
    try:
        await session.flush()
    except StaleDataError as exc:
        raise ConcurrentUpdateError() from exc


async def apply_match(
    session: AsyncSession,
    match_id: str,
    player_id: str,
    key: BucketKey,
    delta: RewardDelta,
) -> bool:
    """Add ``delta`` to the player's bucket unless the match is already in it.

    Returns ``False`` when ``match_id`` was applied to this bucket before;
    the bucket is left untouched in that case.
    """

    bucket = await get_or_create_bucket(session, player_id, key)
    if bucket.match_count:
        existing = (
            await session.execute(
                select(BucketMatch.id).where(
                    BucketMatch.bucket_id == bucket.id,
                    BucketMatch.match_id == match_id,
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.debug(
                "match %s already applied to bucket %s of player %s",
                match_id,
                key,
                player_id,
            )
            return False

    session.add(
        BucketMatch(
            id=uuid.uuid4().hex,
            bucket_id=bucket.id,
            match_id=match_id,
            points_delta=delta.ranking_point_delta,
            won=delta.won,
        )
    )
    bucket.ranking_points = _next_points(bucket.ranking_points or 0.0, delta.ranking_point_delta)
    bucket.match_count = (bucket.match_count or 0) + 1
    if delta.won:
        bucket.win_count = (bucket.win_count or 0) + 1
    await _flush(session)
    return True


def _position(bucket: Optional[RankingBucket]) -> RankingPosition:
    if bucket is None:
        return RankingPosition(0.0, 0, config.REQUIRED_MATCHES)
    return RankingPosition(
        ranking_points=bucket.ranking_points,
        match_count=bucket.match_count,
        required_matches=bucket.required_matches,
    )


async def get_position(
    session: AsyncSession, player_id: str, key: BucketKey
) -> RankingPosition:
    return _position(await get_bucket(session, player_id, key))


async def list_positions(
    session: AsyncSession, player_id: str
) -> list[tuple[BucketKey, RankingPosition]]:
    rows = (
        await session.execute(
            select(RankingBucket)
            .where(RankingBucket.player_id == player_id)
            .order_by(
                RankingBucket.format,
                RankingBucket.age_division,
                RankingBucket.skill_tier,
            )
        )
    ).scalars().all()
    return [
        (BucketKey(row.format, row.age_division, row.skill_tier), _position(row))
        for row in rows
    ]


async def applied_match_ids(session: AsyncSession, bucket_id: str) -> list[str]:
    return list(
        (
            await session.execute(
                select(BucketMatch.match_id).where(BucketMatch.bucket_id == bucket_id)
            )
        ).scalars().all()
    )


async def _write_state(
    session: AsyncSession, bucket: RankingBucket, state: BucketState
) -> None:
    await session.execute(delete(BucketMatch).where(BucketMatch.bucket_id == bucket.id))
    for match_id, points_delta, won in state.applied:
        session.add(
            BucketMatch(
                id=uuid.uuid4().hex,
                bucket_id=bucket.id,
                match_id=match_id,
                points_delta=points_delta,
                won=won,
            )
        )
    bucket.ranking_points = state.ranking_points
    bucket.match_count = state.match_count
    bucket.win_count = state.win_count
    await _flush(session)


async def recompute_bucket(
    session: AsyncSession, player_id: str, key: BucketKey
) -> RankingPosition:
    """Rebuild one bucket from the currently valid ledger.

    Every valid match of the bucket key is replayed so opponent snapshots
    come from the same corrected history; only this player's bucket and
    applied set are rewritten.
    """

    records = await load_match_records(session, key=key)
    state = replay_ledger(records).get((player_id, key), BucketState())
    bucket = await get_or_create_bucket(session, player_id, key)
    await _write_state(session, bucket, state)
    logger.info(
        "recomputed bucket %s for player %s: points=%.2f matches=%d",
        key,
        player_id,
        state.ranking_points,
        state.match_count,
    )
    return _position(bucket)


async def recompute_all(session: AsyncSession) -> int:
    """Re-derive every bucket from the ledger. Returns the bucket count."""

    states = replay_ledger(await load_match_records(session))
    existing = (await session.execute(select(RankingBucket))).scalars().all()
    seen: set[tuple[str, BucketKey]] = set()
    for bucket in existing:
        ident = (bucket.player_id, BucketKey(bucket.format, bucket.age_division, bucket.skill_tier))
        seen.add(ident)
        await _write_state(session, bucket, states.get(ident, BucketState()))
    for (player_id, key), state in states.items():
        if (player_id, key) in seen:
            continue
        bucket = await get_or_create_bucket(session, player_id, key)
        await _write_state(session, bucket, state)
    total = len(seen | set(states))
    logger.info("recomputed %d ranking buckets from the ledger", total)
    return total


async def leaderboard(
    session: AsyncSession, key: BucketKey, *, limit: int = 50, offset: int = 0
) -> tuple[int, list[tuple[RankingBucket, Player]]]:
    """Ranked buckets for ``key`` ordered by points, with the total count."""

    conditions = [
        RankingBucket.format == key.format,
        RankingBucket.age_division == key.age_division,
        RankingBucket.skill_tier == key.skill_tier,
        RankingBucket.match_count >= RankingBucket.required_matches,
        Player.deleted_at.is_(None),
    ]
    total = (
        await session.execute(
            select(func.count(RankingBucket.id))
            .join(Player, Player.id == RankingBucket.player_id)
            .where(*conditions)
        )
    ).scalar_one()
    rows = (
        await session.execute(
            select(RankingBucket, Player)
            .join(Player, Player.id == RankingBucket.player_id)
            .where(*conditions)
            .order_by(RankingBucket.ranking_points.desc(), RankingBucket.player_id)
            .offset(offset)
            .limit(limit)
        )
    ).all()
    return int(total or 0), [(row.RankingBucket, row.Player) for row in rows]
