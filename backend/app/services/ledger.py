"""Match ledger: admission, lifecycle and reward application.

A match is validated, checked against committed copies of itself and then
persisted. Rewards are applied in the same transaction as the status that
makes the match count, so a match is either fully reflected in every
participant's bucket and XP or not at all.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..exceptions import MatchConflictError, MatchNotFound, MatchStateError
from ..locks import player_locks
from ..models import Match, MatchParticipant, Player, PlayerXP, XPLedgerEntry
from ..time_utils import require_utc, utcnow
from .ranking import apply_match, load_snapshots
from .levels import LevelChange, LevelProgress, level_change, level_progress
from .records import MatchRecord, ValidationStatus, XPSource
from .rewards import RewardDelta, calculate_rewards
from .snapshots import load_match_record, load_match_records, to_record
from .validation import (
    DEFAULT_POINTS_TO,
    ValidationError,
    validate_classification,
    validate_game_scores,
    validate_participants,
)

logger = logging.getLogger(__name__)


@dataclass
class MatchInput:
    """A match submission after transport decoding."""

    side_a: Sequence[str]
    side_b: Sequence[str]
    games: Sequence[object]
    format: str
    match_type: str
    event_tier: str
    division: str
    skill_tier: str = "open"
    points_to: Optional[int] = None
    best_of: Optional[int] = None
    recorded_at: Optional[datetime] = None
    location: Optional[str] = None


@dataclass
class RecordedMatch:
    match_id: str
    status: str
    rewards: dict[str, RewardDelta] = field(default_factory=dict)
    levels: dict[str, LevelChange] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        rewards = []
        for pid, reward in sorted(self.rewards.items()):
            entry = reward.as_dict()
            change = self.levels.get(pid)
            if change is not None:
                entry["level"] = change.new_level
                entry["levelUp"] = change.level_up
            rewards.append(entry)
        return {"matchId": self.match_id, "status": self.status, "rewards": rewards}


async def _ensure_players(session: AsyncSession, player_ids: Sequence[str]) -> None:
    wanted = set(player_ids)
    existing = (
        await session.execute(
            select(Player.id)
            .where(Player.id.in_(wanted))
            .where(Player.deleted_at.is_(None))
        )
    ).scalars().all()
    missing = sorted(wanted - set(existing))
    if missing:
        raise ValidationError("Unknown players: " + ", ".join(missing) + ".")


def _millisecond_window(value: datetime) -> tuple[datetime, datetime]:
    start = value.replace(microsecond=(value.microsecond // 1000) * 1000)
    return start, start + timedelta(milliseconds=1)


async def find_exact_duplicate(
    session: AsyncSession, record: MatchRecord
) -> Optional[str]:
    """Return the id of a live match identical to ``record``, if any.

    Identical means same format, same teams and per-game points (either side
    orientation) and a ``recorded_at`` in the same millisecond.
    """

    start, end = _millisecond_window(record.recorded_at)
    candidate_ids = (
        await session.execute(
            select(Match.id).where(
                Match.format == record.format.value,
                Match.recorded_at >= start,
                Match.recorded_at < end,
                Match.deleted_at.is_(None),
                Match.id != record.id,
            )
        )
    ).scalars().all()
    if not candidate_ids:
        return None
    candidates = await load_match_records(
        session, match_ids=candidate_ids, validated_only=False
    )
    for candidate in candidates:
        if candidate.signature == record.signature:
            return candidate.id
    return None


async def append_xp(
    session: AsyncSession,
    player_id: str,
    amount: int,
    *,
    match_id: Optional[str] = None,
    source: XPSource = XPSource.MATCH_PARTICIPATION,
) -> bool:
    """Append one XP entry and bump the cached total.

    Entries are unique per ``(player, match, source)``; a second append for
    the same triple is ignored and returns ``False``.
    """

    if amount <= 0:
        raise ValueError("XP amounts must be positive")
    if match_id is not None:
        existing = (
            await session.execute(
                select(XPLedgerEntry.id).where(
                    XPLedgerEntry.player_id == player_id,
                    XPLedgerEntry.match_id == match_id,
                    XPLedgerEntry.source == source.value,
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            return False

    session.add(
        XPLedgerEntry(
            id=uuid.uuid4().hex,
            player_id=player_id,
            match_id=match_id,
            amount=amount,
            source=source.value,
        )
    )
    total = await session.get(PlayerXP, player_id)
    if total is None:
        session.add(PlayerXP(player_id=player_id, total=amount))
    else:
        total.total = (total.total or 0) + amount
    await session.flush()
    return True


async def _apply_rewards(
    session: AsyncSession, record: MatchRecord
) -> tuple[dict[str, RewardDelta], dict[str, LevelChange]]:
    key = record.bucket_key
    snapshots = await load_snapshots(session, record.participants, key)
    rewards = calculate_rewards(record, snapshots)
    levels: dict[str, LevelChange] = {}
    for pid, reward in rewards.items():
        xp_before = await get_lifetime_xp(session, pid)
        applied = await apply_match(session, record.id, pid, key, reward)
        if applied:
            await append_xp(session, pid, reward.xp_delta, match_id=record.id)
        levels[pid] = level_change(xp_before, await get_lifetime_xp(session, pid))
    return rewards, levels


def _build_record(
    data: MatchInput, match_id: str, status: ValidationStatus
) -> tuple[MatchRecord, int]:
    fmt, mtype, tier, division, skill_tier = validate_classification(
        data.format, data.match_type, data.event_tier, data.division, data.skill_tier
    )
    side_a = list(data.side_a or [])
    side_b = list(data.side_b or [])
    validate_participants(fmt, {"A": side_a, "B": side_b})
    points_to = data.points_to or DEFAULT_POINTS_TO[mtype]
    games, best_of = validate_game_scores(
        list(data.games or []), points_to=points_to, best_of=data.best_of
    )
    try:
        recorded_at = require_utc(data.recorded_at, field_name="recordedAt")
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    record = MatchRecord(
        id=match_id,
        side_a=tuple(side_a),
        side_b=tuple(side_b),
        games=tuple(games),
        format=fmt,
        match_type=mtype,
        event_tier=tier,
        division=division,
        skill_tier=skill_tier,
        points_to=points_to,
        recorded_at=recorded_at or utcnow(),
        created_at=utcnow(),
        validation_status=status,
        location=data.location,
    )
    return record, best_of


async def record_match(
    session: AsyncSession,
    data: MatchInput,
    *,
    auto_validate: Optional[bool] = None,
) -> RecordedMatch:
    """Validate, persist and (when admitted as validated) reward a match.

    Raises :class:`ValidationError` for malformed submissions and
    :class:`MatchConflictError` when an identical match already exists.
    """

    if auto_validate is None:
        auto_validate = config.AUTO_VALIDATE_MATCHES
    status = ValidationStatus.VALIDATED if auto_validate else ValidationStatus.PENDING
    record, best_of = _build_record(data, uuid.uuid4().hex, status)
    await _ensure_players(session, record.participants)

    async with player_locks.hold(record.participants):
        try:
            existing_id = await find_exact_duplicate(session, record)
            if existing_id is not None:
                logger.warning(
                    "rejected duplicate submission of match %s at %s",
                    existing_id,
                    record.recorded_at.isoformat(),
                )
                raise MatchConflictError(existing_id)

            session.add(
                Match(
                    id=record.id,
                    format=record.format.value,
                    match_type=record.match_type.value,
                    event_tier=record.event_tier.value,
                    division=record.division,
                    skill_tier=record.skill_tier,
                    points_to=record.points_to,
                    best_of=best_of,
                    games=[{"A": g.A, "B": g.B} for g in record.games],
                    location=record.location,
                    recorded_at=record.recorded_at,
                    created_at=record.created_at,
                    validation_status=status.value,
                    validated_at=record.created_at if auto_validate else None,
                )
            )
            for side in ("A", "B"):
                session.add(
                    MatchParticipant(
                        id=uuid.uuid4().hex,
                        match_id=record.id,
                        side=side,
                        player_ids=list(record.players(side)),
                    )
                )
            await session.flush()

            rewards: dict[str, RewardDelta] = {}
            levels: dict[str, LevelChange] = {}
            if status == ValidationStatus.VALIDATED:
                rewards, levels = await _apply_rewards(session, record)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(
        "recorded %s match %s (%s) for %s",
        record.format.value,
        record.id,
        status.value,
        ", ".join(record.participants),
    )
    for pid, change in levels.items():
        if change.level_up:
            logger.info("player %s reached level %d", pid, change.new_level)
    return RecordedMatch(
        match_id=record.id, status=status.value, rewards=rewards, levels=levels
    )


async def _load_live_match(session: AsyncSession, match_id: str) -> Match:
    match = await session.get(Match, match_id)
    if match is None or match.deleted_at is not None:
        raise MatchNotFound(match_id)
    return match


async def confirm_match(session: AsyncSession, match_id: str) -> RecordedMatch:
    """Move a pending match to validated and apply its rewards."""

    match = await _load_live_match(session, match_id)
    parts = (
        await session.execute(
            select(MatchParticipant).where(MatchParticipant.match_id == match_id)
        )
    ).scalars().all()
    player_ids = [pid for part in parts for pid in (part.player_ids or [])]

    async with player_locks.hold(player_ids):
        try:
            await session.refresh(match)
            if match.validation_status != ValidationStatus.PENDING.value:
                raise MatchStateError(match_id, match.validation_status, "confirm")
            match.validation_status = ValidationStatus.VALIDATED.value
            match.validated_at = utcnow()
            await session.flush()
            rewards, levels = await _apply_rewards(session, to_record(match, parts))
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info("confirmed match %s", match_id)
    return RecordedMatch(
        match_id=match_id,
        status=ValidationStatus.VALIDATED.value,
        rewards=rewards,
        levels=levels,
    )


async def _close_pending(
    session: AsyncSession, match_id: str, status: ValidationStatus, action: str
) -> RecordedMatch:
    match = await _load_live_match(session, match_id)
    if match.validation_status != ValidationStatus.PENDING.value:
        raise MatchStateError(match_id, match.validation_status, action)
    match.validation_status = status.value
    await session.commit()
    logger.info("%s match %s", status.value, match_id)
    return RecordedMatch(match_id=match_id, status=status.value)


async def dispute_match(session: AsyncSession, match_id: str) -> RecordedMatch:
    return await _close_pending(session, match_id, ValidationStatus.DISPUTED, "dispute")


async def reject_match(session: AsyncSession, match_id: str) -> RecordedMatch:
    return await _close_pending(session, match_id, ValidationStatus.REJECTED, "reject")


async def get_lifetime_xp(session: AsyncSession, player_id: str) -> int:
    total = await session.get(PlayerXP, player_id)
    return int(total.total) if total is not None else 0


async def get_level(session: AsyncSession, player_id: str) -> LevelProgress:
    return level_progress(await get_lifetime_xp(session, player_id))


async def xp_history(
    session: AsyncSession, player_id: str, *, include_voided: bool = False
) -> list[XPLedgerEntry]:
    stmt = select(XPLedgerEntry).where(XPLedgerEntry.player_id == player_id)
    if not include_voided:
        stmt = stmt.where(XPLedgerEntry.voided_at.is_(None))
    stmt = stmt.order_by(XPLedgerEntry.created_at, XPLedgerEntry.id)
    return list((await session.execute(stmt)).scalars().all())


async def sum_xp(session: AsyncSession, player_id: str) -> int:
    total = (
        await session.execute(
            select(func.coalesce(func.sum(XPLedgerEntry.amount), 0)).where(
                XPLedgerEntry.player_id == player_id,
                XPLedgerEntry.voided_at.is_(None),
            )
        )
    ).scalar_one()
    return int(total or 0)


async def recompute_player_xp(session: AsyncSession, player_id: str) -> int:
    """Rebuild the cached lifetime total from non-voided entries."""

    total = await sum_xp(session, player_id)
    row = await session.get(PlayerXP, player_id)
    if row is None:
        session.add(PlayerXP(player_id=player_id, total=total))
    else:
        row.total = total
    await session.flush()
    return total


async def load_ledger(
    session: AsyncSession, *, include_deleted: bool = False
) -> list[MatchRecord]:
    """Snapshot of every match in the ledger, any validation status."""

    return await load_match_records(
        session, validated_only=False, include_deleted=include_deleted
    )


async def get_match_record(session: AsyncSession, match_id: str) -> MatchRecord:
    record = await load_match_record(session, match_id)
    if record is None or record.deleted:
        raise MatchNotFound(match_id)
    return record
