"""Load ledger snapshots as :class:`MatchRecord` value objects."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Match, MatchParticipant
from ..time_utils import coerce_utc
from .records import (
    BucketKey,
    EventTier,
    GameScore,
    MatchFormat,
    MatchRecord,
    MatchType,
    ValidationStatus,
)


def to_record(match: Match, participants: Sequence[MatchParticipant]) -> MatchRecord:
    sides: dict[str, tuple[str, ...]] = {"A": (), "B": ()}
    for part in participants:
        sides[part.side] = tuple(part.player_ids or ())

    games = tuple(
        GameScore(A=int(game["A"]), B=int(game["B"])) for game in (match.games or [])
    )
    return MatchRecord(
        id=match.id,
        side_a=sides["A"],
        side_b=sides["B"],
        games=games,
        format=MatchFormat(match.format),
        match_type=MatchType(match.match_type),
        event_tier=EventTier(match.event_tier),
        division=match.division,
        skill_tier=match.skill_tier or "open",
        points_to=match.points_to or 11,
        recorded_at=coerce_utc(match.recorded_at),
        created_at=coerce_utc(match.created_at),
        validation_status=ValidationStatus(match.validation_status),
        location=match.location,
        deleted=match.deleted_at is not None,
    )


async def load_match_records(
    session: AsyncSession,
    *,
    key: Optional[BucketKey] = None,
    match_ids: Optional[Iterable[str]] = None,
    validated_only: bool = True,
    include_deleted: bool = False,
) -> list[MatchRecord]:
    """Return ledger records matching the filters, oldest first."""

    stmt = select(Match)
    if key is not None:
        stmt = stmt.where(
            Match.format == key.format,
            Match.division == key.age_division,
            Match.skill_tier == key.skill_tier,
        )
    if match_ids is not None:
        ids = list(set(match_ids))
        if not ids:
            return []
        stmt = stmt.where(Match.id.in_(ids))
    if validated_only:
        stmt = stmt.where(Match.validation_status == ValidationStatus.VALIDATED.value)
    if not include_deleted:
        stmt = stmt.where(Match.deleted_at.is_(None))
    stmt = stmt.order_by(Match.recorded_at, Match.created_at, Match.id)

    matches = (await session.execute(stmt)).scalars().all()
    if not matches:
        return []

    by_match: dict[str, list[MatchParticipant]] = defaultdict(list)
    part_rows = (
        await session.execute(
            select(MatchParticipant).where(
                MatchParticipant.match_id.in_([m.id for m in matches])
            )
        )
    ).scalars().all()
    for part in part_rows:
        by_match[part.match_id].append(part)

    return [to_record(match, by_match.get(match.id, [])) for match in matches]


async def load_match_record(session: AsyncSession, match_id: str) -> Optional[MatchRecord]:
    records = await load_match_records(
        session, match_ids=[match_id], validated_only=False, include_deleted=True
    )
    return records[0] if records else None
