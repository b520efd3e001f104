# backend/app/routers/matches.py
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_session
from ..models import Match, MatchParticipant, Player, User
from ..schemas import (
    GameScoreIn,
    MatchCreate,
    MatchOut,
    MatchRecordedOut,
    ParticipantOut,
)
from ..services.ledger import (
    MatchInput,
    RecordedMatch,
    confirm_match,
    dispute_match,
    record_match,
)
from ..services.validation import ValidationError
from ..exceptions import MatchNotFound, http_problem
from .auth import get_current_user, limiter, match_rate_limit
from ..time_utils import coerce_utc

# Resource-only prefix; versioning is added in main.py
router = APIRouter(prefix="/matches", tags=["matches"])


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        parts = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
        if parts:
            return parts[-1]
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def _recorded_out(result: RecordedMatch) -> MatchRecordedOut:
    return MatchRecordedOut.model_validate(result.as_dict())


async def _user_player_ids(session: AsyncSession, user: User) -> set[str]:
    return set(
        (
            await session.execute(select(Player.id).where(Player.user_id == user.id))
        ).scalars().all()
    )


async def _require_participant(
    session: AsyncSession, user: User, player_ids: list[str]
) -> None:
    if user.is_admin:
        return
    own = await _user_player_ids(session, user)
    if not own or not own.intersection(player_ids):
        raise http_problem(
            status_code=403,
            detail="forbidden",
            code="match_forbidden",
        )


async def create_match(
    body: MatchCreate,
    session: AsyncSession,
    user: User,
) -> MatchRecordedOut:
    data = MatchInput(
        side_a=body.side("A"),
        side_b=body.side("B"),
        games=[{"A": g.A, "B": g.B} for g in body.games],
        format=body.format,
        match_type=body.matchType,
        event_tier=body.eventTier,
        division=body.division,
        skill_tier=body.skillTier,
        points_to=body.pointsTo,
        best_of=body.bestOf,
        recorded_at=body.recordedAt,
        location=body.location,
    )
    await _require_participant(session, user, [*data.side_a, *data.side_b])
    try:
        result = await record_match(session, data)
    except ValidationError as exc:
        raise http_problem(
            status_code=422,
            detail=str(exc),
            code="match_invalid",
        )
    return _recorded_out(result)


# POST /api/v0/matches
@router.post("", response_model=MatchRecordedOut)
@limiter.limit(match_rate_limit, key_func=_client_ip)
async def create_match_route(
    request: Request,
    body: MatchCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> MatchRecordedOut:
    return await create_match(body, session, user)


async def _match_player_ids(session: AsyncSession, mid: str) -> list[str]:
    parts = (
        await session.execute(select(MatchParticipant).where(MatchParticipant.match_id == mid))
    ).scalars().all()
    return [pid for p in parts for pid in (p.player_ids or [])]


# POST /api/v0/matches/{mid}/confirm
@router.post("/{mid}/confirm", response_model=MatchRecordedOut)
async def confirm_match_route(
    mid: str,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> MatchRecordedOut:
    await _require_participant(session, user, await _match_player_ids(session, mid))
    return _recorded_out(await confirm_match(session, mid))


# POST /api/v0/matches/{mid}/dispute
@router.post("/{mid}/dispute", response_model=MatchRecordedOut)
async def dispute_match_route(
    mid: str,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> MatchRecordedOut:
    await _require_participant(session, user, await _match_player_ids(session, mid))
    return _recorded_out(await dispute_match(session, mid))


# GET /api/v0/matches/{mid}
@router.get("/{mid}", response_model=MatchOut)
async def get_match(mid: str, session: AsyncSession = Depends(get_session)):
    m = (
        await session.execute(
            select(Match).where(Match.id == mid, Match.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if not m:
        raise MatchNotFound(mid)

    parts = (
        await session.execute(
            select(MatchParticipant)
            .where(MatchParticipant.match_id == mid)
            .order_by(MatchParticipant.side)
        )
    ).scalars().all()

    return MatchOut(
        id=m.id,
        format=m.format,
        matchType=m.match_type,
        eventTier=m.event_tier,
        division=m.division,
        skillTier=m.skill_tier,
        pointsTo=m.points_to,
        bestOf=m.best_of,
        games=[GameScoreIn(A=g["A"], B=g["B"]) for g in (m.games or [])],
        location=m.location,
        recordedAt=coerce_utc(m.recorded_at),
        createdAt=coerce_utc(m.created_at),
        validationStatus=m.validation_status,
        participants=[ParticipantOut(side=p.side, playerIds=p.player_ids) for p in parts],
    )
