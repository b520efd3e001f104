from fastapi import APIRouter, Query, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_session
from ..services.ranking import leaderboard as ranked_buckets
from ..schemas import LeaderboardEntryOut, LeaderboardOut
from .rankings import resolve_bucket_key

# Resource-only prefix; no /api or /api/v0 here
router = APIRouter(prefix="/leaderboards", tags=["leaderboards"])


# GET /api/v0/leaderboards?format=doubles&division=open&tier=open
@router.get("", response_model=LeaderboardOut)
async def leaderboard(
    format: str = Query(..., description="singles or doubles"),
    division: str = Query("open"),
    tier: str = Query("open"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    key = resolve_bucket_key(format, division, tier)
    total, rows = await ranked_buckets(session, key, limit=limit, offset=offset)
    leaders = [
        LeaderboardEntryOut(
            rank=offset + i + 1,
            playerId=bucket.player_id,
            playerName=player.name,
            rankingPoints=bucket.ranking_points,
            matchCount=bucket.match_count,
            winCount=bucket.win_count,
        )
        for i, (bucket, player) in enumerate(rows)
    ]
    return LeaderboardOut(
        **key.as_dict(),
        leaders=leaders,
        total=total,
        limit=limit,
        offset=offset,
    )
