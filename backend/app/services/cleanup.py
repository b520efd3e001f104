"""Cleanup executor: apply a reconciliation plan to the ledger.

Players that share a removal record form one atomic unit. Each unit runs in
its own SAVEPOINT while the unit's player locks are held: the duplicate
records are soft-deleted, their XP entries voided and every affected bucket
recomputed from the corrected ledger. The recomputed buckets are then
checked against the state taken before the unit started; any disagreement
rolls the unit back and is recorded for manual review.

Dry runs touch nothing and report the projected outcome of a replay that
leaves the removals out.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..exceptions import LedgerIntegrityError, RecomputationMismatch
from ..locks import player_locks
from ..models import BucketMatch, Match, RankingBucket, ReconciliationAuditLog, XPLedgerEntry
from ..time_utils import utcnow
from ..utils.sentry import capture_integrity_failure
from .integrity import DuplicateFinding, ReconciliationPlan, UnionFind
from .ledger import get_lifetime_xp, recompute_player_xp
from .ranking import BucketState, recompute_bucket, replay_ledger
from .records import BucketKey, MatchRecord
from .snapshots import load_match_records

logger = logging.getLogger(__name__)

APPLIED = "applied"
PLANNED = "planned"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class PlayerCleanupReport:
    player_id: str
    matches_before: int = 0
    matches_after: int = 0
    points_before: float = 0.0
    points_after: float = 0.0
    xp_before: int = 0
    xp_after: int = 0
    removed_match_ids: list[str] = field(default_factory=list)
    status: str = PLANNED
    error: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "playerId": self.player_id,
            "matchesBefore": self.matches_before,
            "matchesAfter": self.matches_after,
            "pointsBefore": self.points_before,
            "pointsAfter": self.points_after,
            "xpBefore": self.xp_before,
            "xpAfter": self.xp_after,
            "removedMatchIds": list(self.removed_match_ids),
            "status": self.status,
            "error": self.error,
        }


@dataclass
class CleanupReport:
    plan_id: str
    dry_run: bool
    strict: bool
    players: list[PlayerCleanupReport] = field(default_factory=list)
    skipped_match_ids: list[str] = field(default_factory=list)
    halted: bool = False

    def player(self, player_id: str) -> Optional[PlayerCleanupReport]:
        for report in self.players:
            if report.player_id == player_id:
                return report
        return None

    def count(self, status: str) -> int:
        return sum(1 for report in self.players if report.status == status)

    @property
    def removed_match_ids(self) -> list[str]:
        removed = {
            mid
            for report in self.players
            if report.status in (APPLIED, PLANNED)
            for mid in report.removed_match_ids
        }
        return sorted(removed)

    def as_dict(self) -> dict[str, object]:
        return {
            "planId": self.plan_id,
            "dryRun": self.dry_run,
            "strict": self.strict,
            "halted": self.halted,
            "removedCount": len(self.removed_match_ids),
            "skippedMatchIds": list(self.skipped_match_ids),
            "totals": {
                status: self.count(status) for status in (APPLIED, PLANNED, FAILED, SKIPPED)
            },
            "players": [report.as_dict() for report in self.players],
        }


@dataclass
class _BucketBefore:
    ranking_points: float = 0.0
    match_count: int = 0
    win_count: int = 0
    applied: dict[str, bool] = field(default_factory=dict)


@dataclass
class _Unit:
    player_ids: list[str]
    removals: list[MatchRecord]
    findings: list[DuplicateFinding]

    @property
    def removal_ids(self) -> set[str]:
        return {record.id for record in self.removals}

    def keys_for(self, player_id: str) -> set[BucketKey]:
        return {
            record.bucket_key for record in self.removals if player_id in record.participants
        }

    def removed_for(self, player_id: str) -> list[str]:
        return sorted(r.id for r in self.removals if player_id in r.participants)


async def _bucket_before(
    session: AsyncSession, player_id: str, key: BucketKey
) -> _BucketBefore:
    bucket = (
        await session.execute(
            select(RankingBucket).where(
                RankingBucket.player_id == player_id,
                RankingBucket.format == key.format,
                RankingBucket.age_division == key.age_division,
                RankingBucket.skill_tier == key.skill_tier,
            )
        )
    ).scalar_one_or_none()
    if bucket is None:
        return _BucketBefore()
    rows = (
        await session.execute(
            select(BucketMatch.match_id, BucketMatch.won).where(
                BucketMatch.bucket_id == bucket.id
            )
        )
    ).all()
    return _BucketBefore(
        ranking_points=bucket.ranking_points,
        match_count=bucket.match_count,
        win_count=bucket.win_count,
        applied={row.match_id: bool(row.won) for row in rows},
    )


async def _write_audit(
    session: AsyncSession,
    plan_id: str,
    action: str,
    *,
    player_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    session.add(
        ReconciliationAuditLog(
            id=uuid.uuid4().hex,
            plan_id=plan_id,
            player_id=player_id,
            action=action,
            payload=payload,
        )
    )
    await session.flush()


def _build_units(
    findings: Iterable[DuplicateFinding], records: dict[str, MatchRecord]
) -> list[_Unit]:
    uf = UnionFind()
    removals_by_root: dict[str, list[MatchRecord]] = defaultdict(list)
    findings_by_root: dict[str, list[DuplicateFinding]] = defaultdict(list)
    pending: list[tuple[DuplicateFinding, list[MatchRecord]]] = []

    for finding in findings:
        live = [
            records[rid]
            for rid in finding.remove_ids
            if rid in records and not records[rid].deleted
        ]
        if not live:
            continue
        for record in live:
            players = record.participants
            uf.find(players[0])
            for pid in players[1:]:
                uf.union(players[0], pid)
        pending.append((finding, live))

    players_by_root: dict[str, set[str]] = defaultdict(set)
    for finding, live in pending:
        root = uf.find(live[0].participants[0])
        removals_by_root[root].extend(live)
        findings_by_root[root].append(finding)
        for record in live:
            players_by_root[root].update(record.participants)

    units = [
        _Unit(
            player_ids=sorted(players_by_root[root]),
            removals=sorted(removals_by_root[root], key=lambda r: r.id),
            findings=findings_by_root[root],
        )
        for root in players_by_root
    ]
    units.sort(key=lambda unit: unit.player_ids[0])
    return units


def _keeper_problems(
    plan: ReconciliationPlan, records: dict[str, MatchRecord]
) -> dict[str, str]:
    """Map player id to a reason when a finding's keeper cannot be trusted."""

    removed = plan.remove_ids
    problems: dict[str, str] = {}
    for finding in plan.findings:
        keeper = records.get(finding.keeper_id)
        if keeper is None or keeper.deleted:
            reason = f"keeper {finding.keeper_id} is no longer in the ledger"
        elif finding.keeper_id in removed:
            reason = f"keeper {finding.keeper_id} is also scheduled for removal"
        else:
            continue
        for pid in finding.player_ids:
            problems.setdefault(pid, reason)
    return problems


async def _snapshot_before(
    session: AsyncSession, unit: _Unit
) -> dict[tuple[str, BucketKey], _BucketBefore]:
    before = {}
    for pid in unit.player_ids:
        for key in unit.keys_for(pid):
            before[(pid, key)] = await _bucket_before(session, pid, key)
    return before


def _verify(
    unit: _Unit,
    before: dict[tuple[str, BucketKey], _BucketBefore],
    after: dict[tuple[str, BucketKey], _BucketBefore],
    valid_ids: set[str],
) -> None:
    removal_ids = unit.removal_ids
    for (pid, key), prior in before.items():
        post = after[(pid, key)]
        dropped = [mid for mid in prior.applied if mid in removal_ids]
        dropped_wins = sum(1 for mid in dropped if prior.applied[mid])
        state = {
            "before": {
                "matchCount": prior.match_count,
                "winCount": prior.win_count,
                "rankingPoints": prior.ranking_points,
            },
            "after": {
                "matchCount": post.match_count,
                "winCount": post.win_count,
                "rankingPoints": post.ranking_points,
            },
        }
        problems = []
        if post.match_count != prior.match_count - len(dropped):
            problems.append(
                f"match count {post.match_count} != {prior.match_count} - {len(dropped)}"
            )
        if post.win_count != prior.win_count - dropped_wins:
            problems.append(
                f"win count {post.win_count} != {prior.win_count} - {dropped_wins}"
            )
        if post.ranking_points < 0:
            problems.append(f"negative ranking points {post.ranking_points}")
        if post.match_count != len(post.applied):
            problems.append(
                f"match count {post.match_count} != {len(post.applied)} applied matches"
            )
        if set(post.applied) & removal_ids:
            problems.append("removed matches still applied")
        for finding in unit.findings:
            if finding.keeper_id not in valid_ids or finding.bucket_key != key:
                continue
            if pid in finding.player_ids and finding.keeper_id not in post.applied:
                problems.append(f"keeper {finding.keeper_id} is not applied")
        if problems:
            raise RecomputationMismatch(
                pid,
                f"bucket {key.format}/{key.age_division}/{key.skill_tier}: "
                + "; ".join(problems),
                before=state["before"],
                after=state["after"],
            )


async def _apply_unit(
    session: AsyncSession,
    plan: ReconciliationPlan,
    unit: _Unit,
    before: dict[tuple[str, BucketKey], _BucketBefore],
) -> dict[tuple[str, BucketKey], _BucketBefore]:
    now = utcnow()
    keeper_of = {
        rid: finding.keeper_id for finding in unit.findings for rid in finding.remove_ids
    }
    removal_ids = sorted(unit.removal_ids)

    for record in unit.removals:
        await session.execute(
            update(Match)
            .where(Match.id == record.id, Match.deleted_at.is_(None))
            .values(
                deleted_at=now,
                deleted_reason=f"duplicate of {keeper_of[record.id]} (plan {plan.plan_id})",
            )
        )
    await session.execute(delete(BucketMatch).where(BucketMatch.match_id.in_(removal_ids)))
    await session.execute(
        update(XPLedgerEntry)
        .where(
            XPLedgerEntry.match_id.in_(removal_ids),
            XPLedgerEntry.voided_at.is_(None),
        )
        .values(voided_at=now)
    )
    await session.flush()

    after = {}
    for pid, key in before:
        await recompute_bucket(session, pid, key)
        after[(pid, key)] = await _bucket_before(session, pid, key)
    for pid in unit.player_ids:
        await recompute_player_xp(session, pid)
    return after


def _project_unit(
    unit: _Unit,
    before: dict[tuple[str, BucketKey], _BucketBefore],
    records: dict[str, MatchRecord],
) -> dict[tuple[str, BucketKey], BucketState]:
    keys = {key for _, key in before}
    removal_ids = unit.removal_ids
    remaining = [
        record
        for record in records.values()
        if record.bucket_key in keys and record.id not in removal_ids
    ]
    states = replay_ledger(remaining)
    return {ident: states.get(ident, BucketState()) for ident in before}


async def _voided_xp(session: AsyncSession, player_id: str, match_ids: list[str]) -> int:
    amounts = (
        await session.execute(
            select(XPLedgerEntry.amount).where(
                XPLedgerEntry.player_id == player_id,
                XPLedgerEntry.match_id.in_(match_ids),
                XPLedgerEntry.voided_at.is_(None),
            )
        )
    ).scalars().all()
    return int(sum(amounts))


def _totals(states: dict, player_id: str) -> tuple[int, float]:
    matches = 0
    points = 0.0
    for (pid, _), state in states.items():
        if pid == player_id:
            matches += state.match_count
            points += state.ranking_points
    return matches, round(points, 2)


async def _base_reports(
    session: AsyncSession,
    unit: _Unit,
    before: dict[tuple[str, BucketKey], _BucketBefore],
) -> dict[str, PlayerCleanupReport]:
    reports = {}
    for pid in unit.player_ids:
        matches, points = _totals(before, pid)
        xp = await get_lifetime_xp(session, pid)
        reports[pid] = PlayerCleanupReport(
            player_id=pid,
            matches_before=matches,
            matches_after=matches,
            points_before=points,
            points_after=points,
            xp_before=xp,
            xp_after=xp,
            removed_match_ids=unit.removed_for(pid),
        )
    return reports


def _fail(reports: dict[str, PlayerCleanupReport], exc: Exception) -> None:
    for report in reports.values():
        report.status = FAILED
        report.error = str(exc)
        report.matches_after = report.matches_before
        report.points_after = report.points_before
        report.xp_after = report.xp_before


async def _record_failure(
    session: AsyncSession,
    plan: ReconciliationPlan,
    unit: _Unit,
    exc: Exception,
    *,
    dry_run: bool,
) -> None:
    logger.error(
        "cleanup of plan %s failed for players %s: %s (before=%s after=%s)",
        plan.plan_id,
        ", ".join(unit.player_ids),
        exc,
        getattr(exc, "before", None),
        getattr(exc, "after", None),
    )
    if dry_run:
        return
    capture_integrity_failure(exc, plan_id=plan.plan_id, player_ids=unit.player_ids)
    for pid in unit.player_ids:
        await _write_audit(
            session,
            plan.plan_id,
            "cleanup_failed",
            player_id=pid,
            payload={
                "error": str(exc),
                "code": getattr(exc, "code", None),
                "removedMatchIds": unit.removed_for(pid),
                "before": getattr(exc, "before", None),
                "after": getattr(exc, "after", None),
            },
        )
    await session.commit()


async def _plan_unit(
    session: AsyncSession, unit: _Unit, valid_records: dict[str, MatchRecord]
) -> dict[str, PlayerCleanupReport]:
    before = await _snapshot_before(session, unit)
    reports = await _base_reports(session, unit, before)
    projected = _project_unit(unit, before, valid_records)
    for pid, player_report in reports.items():
        matches, points = _totals(projected, pid)
        player_report.matches_after = matches
        player_report.points_after = points
        player_report.xp_after = player_report.xp_before - await _voided_xp(
            session, pid, unit.removed_for(pid)
        )
        player_report.status = PLANNED
    return reports


async def _run_unit(
    session: AsyncSession, plan: ReconciliationPlan, unit: _Unit, valid_ids: set[str]
) -> dict[str, PlayerCleanupReport]:
    async with player_locks.hold(unit.player_ids):
        before = await _snapshot_before(session, unit)
        reports = await _base_reports(session, unit, before)
        try:
            async with session.begin_nested():
                after = await _apply_unit(session, plan, unit, before)
                _verify(unit, before, after, valid_ids)
                for pid, player_report in reports.items():
                    matches, points = _totals(after, pid)
                    player_report.matches_after = matches
                    player_report.points_after = points
                    player_report.xp_after = await get_lifetime_xp(session, pid)
                    player_report.status = APPLIED
                    await _write_audit(
                        session,
                        plan.plan_id,
                        "cleanup_applied",
                        player_id=pid,
                        payload=player_report.as_dict(),
                    )
            await session.commit()
        except (RecomputationMismatch, LedgerIntegrityError) as exc:
            _fail(reports, exc)
            await _record_failure(session, plan, unit, exc, dry_run=False)
    return reports


async def execute_plan(
    session: AsyncSession,
    plan: ReconciliationPlan,
    *,
    dry_run: bool = True,
    strict: Optional[bool] = None,
) -> CleanupReport:
    """Execute (or, by default, simulate) ``plan`` and report per player.

    Re-running a plan whose removals are already gone is a no-op: those
    records are listed in ``skipped_match_ids`` and nothing is recomputed.
    """

    if strict is None:
        strict = config.CLEANUP_STRICT
    report = CleanupReport(plan_id=plan.plan_id, dry_run=dry_run, strict=strict)

    ledger = await load_match_records(
        session, validated_only=False, include_deleted=True
    )
    records = {record.id: record for record in ledger}
    valid_records = {rid: record for rid, record in records.items() if record.is_valid}

    for rid in sorted(plan.remove_ids):
        record = records.get(rid)
        if record is None or record.deleted:
            report.skipped_match_ids.append(rid)

    problems = _keeper_problems(plan, records)
    units = _build_units(plan.findings, records)

    in_units = {pid for unit in units for pid in unit.player_ids}
    for finding in plan.findings:
        for pid in finding.player_ids:
            if pid in in_units or report.player(pid) is not None:
                continue
            xp = await get_lifetime_xp(session, pid)
            status, error = SKIPPED, None
            if pid in problems:
                status, error = FAILED, problems[pid]
            report.players.append(
                PlayerCleanupReport(
                    player_id=pid, xp_before=xp, xp_after=xp, status=status, error=error
                )
            )

    for index, unit in enumerate(units):
        if report.halted:
            for pid in unit.player_ids:
                report.players.append(
                    PlayerCleanupReport(
                        player_id=pid,
                        removed_match_ids=unit.removed_for(pid),
                        status=SKIPPED,
                        error="batch halted after an earlier failure",
                    )
                )
            continue

        failed = False
        blocked = sorted(pid for pid in unit.player_ids if pid in problems)
        if blocked:
            before = await _snapshot_before(session, unit)
            reports = await _base_reports(session, unit, before)
            exc = LedgerIntegrityError(
                "; ".join(sorted({problems[pid] for pid in blocked})),
                player_ids=unit.player_ids,
            )
            _fail(reports, exc)
            await _record_failure(session, plan, unit, exc, dry_run=dry_run)
        elif dry_run:
            reports = await _plan_unit(session, unit, valid_records)
        else:
            reports = await _run_unit(session, plan, unit, set(valid_records))
            failed = any(r.status == FAILED for r in reports.values())
        report.players.extend(reports.values())

        if strict and failed:
            report.halted = True
            logger.error(
                "strict cleanup of plan %s halted after unit %d of %d",
                plan.plan_id,
                index + 1,
                len(units),
            )

    report.players.sort(key=lambda r: r.player_id)
    logger.info(
        "cleanup of plan %s (%s): %d applied, %d planned, %d failed, %d skipped",
        plan.plan_id,
        "dry run" if dry_run else "live",
        report.count(APPLIED),
        report.count(PLANNED),
        report.count(FAILED),
        report.count(SKIPPED),
    )
    return report
