from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_session
from ..schemas import RankingBucketsOut, RankingPositionOut
from ..exceptions import http_problem
from ..services.ranking import RankingPosition, get_position, list_positions
from ..services.records import AGE_DIVISIONS, SKILL_TIERS, BucketKey, MatchFormat
from .players import get_live_player

# Resource-only prefix; no /api or /api/v0 here
router = APIRouter(prefix="/rankings", tags=["rankings"])


def resolve_bucket_key(format: str, division: str, tier: str) -> BucketKey:
    """Validate ranking query parameters and build the bucket key."""

    if format not in {f.value for f in MatchFormat}:
        raise http_problem(
            status_code=422,
            detail=f"unknown format '{format}'",
            code="ranking_invalid_format",
        )
    if division not in AGE_DIVISIONS:
        raise http_problem(
            status_code=422,
            detail=f"unknown division '{division}'",
            code="ranking_invalid_division",
        )
    if tier not in SKILL_TIERS:
        raise http_problem(
            status_code=422,
            detail=f"unknown skill tier '{tier}'",
            code="ranking_invalid_tier",
        )
    return BucketKey(format, division, tier)


def _position_out(
    player_id: str, key: BucketKey, position: RankingPosition
) -> RankingPositionOut:
    return RankingPositionOut(
        playerId=player_id,
        **key.as_dict(),
        **position.as_dict(),
        progress=f"{min(position.match_count, position.required_matches)}/{position.required_matches}",
    )


# GET /api/v0/rankings/{player_id}?format=doubles&division=open&tier=3.5
@router.get("/{player_id}", response_model=RankingPositionOut)
async def ranking_position(
    player_id: str,
    format: str = Query(..., description="singles or doubles"),
    division: str = Query("open", description="Age division, e.g. '50+'"),
    tier: str = Query("open", description="Skill tier, e.g. '3.5'"),
    session: AsyncSession = Depends(get_session),
):
    key = resolve_bucket_key(format, division, tier)
    await get_live_player(session, player_id)
    return _position_out(player_id, key, await get_position(session, player_id, key))


# GET /api/v0/rankings/{player_id}/buckets
@router.get("/{player_id}/buckets", response_model=RankingBucketsOut)
async def ranking_buckets(player_id: str, session: AsyncSession = Depends(get_session)):
    await get_live_player(session, player_id)
    positions = await list_positions(session, player_id)
    return RankingBucketsOut(
        playerId=player_id,
        buckets=[_position_out(player_id, key, pos) for key, pos in positions],
    )
