import uuid

from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_session
from ..models import Player, User
from ..schemas import PlayerCreate, PlayerOut, PlayerXPOut, XPEntryOut
from ..exceptions import PlayerAlreadyExists, PlayerNotFound
from ..services.ledger import get_level, xp_history
from ..time_utils import coerce_utc
from .admin import require_admin

# Resource-only prefix; versioning is added in main.py
router = APIRouter(prefix="/players", tags=["players"])


async def get_live_player(session: AsyncSession, player_id: str) -> Player:
    p = await session.get(Player, player_id)
    if not p or p.deleted_at is not None:
        raise PlayerNotFound(player_id)
    return p


# POST /api/v0/players
@router.post("", response_model=PlayerOut)
async def create_player(
    body: PlayerCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require_admin),
):
    normalized_name = body.name.strip().lower()
    exists = (
        await session.execute(
            select(Player).where(func.lower(Player.name) == normalized_name)
        )
    ).scalar_one_or_none()
    if exists:
        raise PlayerAlreadyExists(body.name)
    pid = uuid.uuid4().hex
    p = Player(id=pid, name=normalized_name, user_id=body.userId)
    session.add(p)
    await session.commit()
    return PlayerOut(id=pid, name=p.name, userId=p.user_id)


# GET /api/v0/players/{player_id}
@router.get("/{player_id}", response_model=PlayerOut)
async def get_player(player_id: str, session: AsyncSession = Depends(get_session)):
    p = await get_live_player(session, player_id)
    return PlayerOut(id=p.id, name=p.name, userId=p.user_id)


# GET /api/v0/players/{player_id}/xp
@router.get("/{player_id}/xp", response_model=PlayerXPOut)
async def get_player_xp(
    player_id: str,
    include_voided: bool = False,
    session: AsyncSession = Depends(get_session),
):
    await get_live_player(session, player_id)
    entries = await xp_history(session, player_id, include_voided=include_voided)
    level = await get_level(session, player_id)
    return PlayerXPOut(
        playerId=player_id,
        lifetimeXp=level.xp,
        level=level.level,
        levelName=level.name,
        levelXp=level.level_xp,
        nextLevelXp=level.next_level_xp,
        progress=level.progress,
        entries=[
            XPEntryOut(
                id=e.id,
                matchId=e.match_id,
                amount=e.amount,
                source=e.source,
                createdAt=coerce_utc(e.created_at),
                voided=e.voided_at is not None,
            )
            for e in entries
        ],
    )
