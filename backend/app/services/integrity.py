"""Integrity auditor: find duplicate match records in the ledger.

The auditor never mutates anything. It scans a snapshot of the ledger and
returns a :class:`ReconciliationPlan` naming, for every set of records that
describe the same physical match, one record to keep and the copies to
remove. Executing a plan is the cleanup executor's job.

Records are grouped by the millisecond of their ``recorded_at``. A group is
worth inspecting when several of its records have the same participants, or
when it is large enough to look like a bulk insert. Inside an inspected
group, records with the same signature (format, teams and per-game points)
are duplicates of each other. Records of a bulk group are first matched
against records recorded at other times, since a bulk re-insert copies
earlier matches under a new timestamp.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..cache import reconciliation_plans
from ..time_utils import utcnow
from .records import SIDES, BucketKey, MatchRecord, ValidationStatus
from .snapshots import load_match_records

logger = logging.getLogger(__name__)

SAME_MILLISECOND_DUPLICATE = "same_millisecond_duplicate"
BULK_CLUSTER_REINSERT = "bulk_cluster_reinsert"

_STATUS_RANK = {
    ValidationStatus.VALIDATED: 0,
    ValidationStatus.PENDING: 1,
    ValidationStatus.DISPUTED: 2,
    ValidationStatus.REJECTED: 3,
}


@dataclass(frozen=True)
class ClusterEvidence:
    recorded_at_ms: int
    cluster_size: int
    shared_millisecond_count: int
    distinct_players: int
    signature: str
    reason: str

    def as_dict(self) -> dict[str, object]:
        return {
            "recordedAtMs": self.recorded_at_ms,
            "clusterSize": self.cluster_size,
            "sharedMillisecondCount": self.shared_millisecond_count,
            "distinctPlayers": self.distinct_players,
            "signature": self.signature,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class DuplicateFinding:
    keeper_id: str
    remove_ids: tuple[str, ...]
    evidence: ClusterEvidence
    player_ids: tuple[str, ...] = ()
    bucket_key: Optional[BucketKey] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "keeperId": self.keeper_id,
            "removeIds": list(self.remove_ids),
            "playerIds": list(self.player_ids),
            "bucket": self.bucket_key.as_dict() if self.bucket_key else None,
            "evidence": self.evidence.as_dict(),
        }


@dataclass(frozen=True)
class ReconciliationPlan:
    plan_id: str
    generated_at: datetime
    findings: tuple[DuplicateFinding, ...]
    records_scanned: int
    candidate_clusters: int
    settings: dict[str, int] = field(default_factory=dict)

    @property
    def remove_ids(self) -> set[str]:
        return {rid for finding in self.findings for rid in finding.remove_ids}

    @property
    def keeper_ids(self) -> set[str]:
        return {finding.keeper_id for finding in self.findings}

    @property
    def affected_player_ids(self) -> set[str]:
        return {pid for finding in self.findings for pid in finding.player_ids}

    def as_dict(self) -> dict[str, object]:
        return {
            "planId": self.plan_id,
            "generatedAt": self.generated_at.isoformat(),
            "recordsScanned": self.records_scanned,
            "candidateClusters": self.candidate_clusters,
            "removeCount": len(self.remove_ids),
            "affectedPlayerIds": sorted(self.affected_player_ids),
            "settings": dict(self.settings),
            "findings": [finding.as_dict() for finding in self.findings],
        }


class UnionFind:
    def __init__(self) -> None:
        self._parent: dict[str, str] = {}

    def find(self, item: str) -> str:
        parent = self._parent.setdefault(item, item)
        if parent != item:
            parent = self._parent[item] = self.find(parent)
        return parent

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            # smaller id wins so results are stable across runs
            if root_b < root_a:
                root_a, root_b = root_b, root_a
            self._parent[root_b] = root_a

    def groups(self) -> list[list[str]]:
        members: dict[str, list[str]] = defaultdict(list)
        for item in self._parent:
            members[self.find(item)].append(item)
        return [sorted(group) for group in members.values() if len(group) > 1]


def describe_signature(record: MatchRecord) -> str:
    teams = sorted(
        (
            "+".join(sorted(record.players(side))),
            "/".join(str(game.points(side)) for game in record.games),
        )
        for side in SIDES
    )
    return f"{record.format.value}: " + " vs ".join(f"{t} [{s}]" for t, s in teams)


def keeper_rank(record: MatchRecord, bulk_ids: set[str]) -> tuple:
    """Sort key for choosing which copy of a duplicate set survives.

    Copies within the same millisecond are simultaneous, so validation
    status and completeness decide between them before the exact timestamp.
    """

    return (
        record.id in bulk_ids,
        record.recorded_ms,
        _STATUS_RANK.get(record.validation_status, len(_STATUS_RANK)),
        -record.completeness,
        record.recorded_at,
        record.created_at or record.recorded_at,
        record.id,
    )


def audit_ledger(
    records: Iterable[MatchRecord],
    *,
    bulk_cluster_size: Optional[int] = None,
    same_pair_cluster_size: Optional[int] = None,
) -> ReconciliationPlan:
    """Scan ``records`` and propose a reconciliation plan.

    Deleted records are ignored. Every record appears in at most one
    finding, either as its keeper or as one of its removals.
    """

    if bulk_cluster_size is None:
        bulk_cluster_size = config.AUDIT_BULK_CLUSTER_SIZE
    if same_pair_cluster_size is None:
        same_pair_cluster_size = config.AUDIT_SAME_PAIR_CLUSTER_SIZE

    live = [r for r in records if not r.deleted]
    by_id = {r.id: r for r in live}
    by_ms: dict[int, list[MatchRecord]] = defaultdict(list)
    for record in live:
        by_ms[record.recorded_ms].append(record)

    uf = UnionFind()
    bulk_ids: set[str] = set()
    cluster_of: dict[str, int] = {}
    candidate_clusters = 0

    for ms, group in sorted(by_ms.items()):
        same_pair = Counter(r.participant_set for r in group)
        is_bulk = len(group) >= bulk_cluster_size
        if not is_bulk and max(same_pair.values()) < same_pair_cluster_size:
            continue
        candidate_clusters += 1
        for record in group:
            cluster_of[record.id] = ms
        if is_bulk:
            bulk_ids.update(r.id for r in group)
            logger.warning(
                "bulk cluster of %d records at %d ms (%d distinct players)",
                len(group),
                ms,
                len({pid for r in group for pid in r.participants}),
            )
            # bulk records are linked to their originals below
            continue

        by_signature: dict[tuple, list[MatchRecord]] = defaultdict(list)
        for record in group:
            by_signature[record.signature].append(record)
        for copies in by_signature.values():
            for other in copies[1:]:
                uf.union(copies[0].id, other.id)

    if bulk_ids:
        _link_bulk_records(uf, live, by_id, bulk_ids)

    findings = []
    for group in uf.groups():
        members = sorted((by_id[rid] for rid in group), key=lambda r: keeper_rank(r, bulk_ids))
        keeper, removals = members[0], members[1:]
        findings.append(_finding(keeper, removals, by_ms, cluster_of, bulk_ids))
    findings.sort(key=lambda f: (by_id[f.keeper_id].recorded_at, f.keeper_id))

    return ReconciliationPlan(
        plan_id=uuid.uuid4().hex,
        generated_at=utcnow(),
        findings=tuple(findings),
        records_scanned=len(live),
        candidate_clusters=candidate_clusters,
        settings={
            "bulkClusterSize": bulk_cluster_size,
            "samePairClusterSize": same_pair_cluster_size,
        },
    )


def _link_bulk_records(
    uf: UnionFind,
    live: Sequence[MatchRecord],
    by_id: dict[str, MatchRecord],
    bulk_ids: set[str],
) -> None:
    """Join every bulk record to the earliest same-signature original that no
    other bulk record has claimed yet.

    Each original absorbs at most one re-insert, so two genuine matches with
    identical scores keep one copy each. A bulk record left without an
    original is folded into the first same-signature record of its own
    millisecond.
    """

    outside: dict[tuple, list[MatchRecord]] = defaultdict(list)
    for record in sorted(live, key=lambda r: keeper_rank(r, bulk_ids)):
        if record.id not in bulk_ids:
            outside[record.signature].append(record)

    claimed: set[str] = set()
    first_in_ms: dict[tuple, MatchRecord] = {}
    leftovers: list[MatchRecord] = []
    for record_id in sorted(bulk_ids, key=lambda rid: keeper_rank(by_id[rid], bulk_ids)):
        record = by_id[record_id]
        first_in_ms.setdefault((record.recorded_ms, record.signature), record)
        for original in outside.get(record.signature, []):
            if uf.find(original.id) in claimed:
                continue
            uf.union(original.id, record.id)
            claimed.add(uf.find(record.id))
            break
        else:
            leftovers.append(record)

    for record in leftovers:
        first = first_in_ms[(record.recorded_ms, record.signature)]
        if first.id != record.id:
            uf.union(first.id, record.id)


def _finding(
    keeper: MatchRecord,
    removals: Sequence[MatchRecord],
    by_ms: dict[int, list[MatchRecord]],
    cluster_of: dict[str, int],
    bulk_ids: set[str],
) -> DuplicateFinding:
    members = [keeper, *removals]
    clusters = {cluster_of[r.id] for r in members if r.id in cluster_of}
    largest = max(clusters, key=lambda ms: (len(by_ms[ms]), ms))
    cluster = by_ms[largest]
    ms_counts = Counter(r.recorded_ms for r in members)

    crosses_bulk = any(r.id in bulk_ids for r in members) and any(
        r.id not in bulk_ids for r in members
    )
    evidence = ClusterEvidence(
        recorded_at_ms=largest,
        cluster_size=len(cluster),
        shared_millisecond_count=max(ms_counts.values()),
        distinct_players=len({pid for r in cluster for pid in r.participants}),
        signature=describe_signature(keeper),
        reason=BULK_CLUSTER_REINSERT if crosses_bulk else SAME_MILLISECOND_DUPLICATE,
    )
    return DuplicateFinding(
        keeper_id=keeper.id,
        remove_ids=tuple(r.id for r in removals),
        evidence=evidence,
        player_ids=tuple(sorted({pid for r in members for pid in r.participants})),
        bucket_key=keeper.bucket_key,
    )


async def run_integrity_audit(
    session: AsyncSession,
    *,
    bulk_cluster_size: Optional[int] = None,
    same_pair_cluster_size: Optional[int] = None,
) -> ReconciliationPlan:
    """Audit the live ledger and keep the resulting plan for cleanup."""

    records = await load_match_records(session, validated_only=False)
    plan = audit_ledger(
        records,
        bulk_cluster_size=bulk_cluster_size,
        same_pair_cluster_size=same_pair_cluster_size,
    )
    await reconciliation_plans.set(plan.plan_id, plan)
    logger.info(
        "integrity audit %s scanned %d records: %d finding(s), %d removal(s)",
        plan.plan_id,
        plan.records_scanned,
        len(plan.findings),
        len(plan.remove_ids),
    )
    return plan


async def get_plan(plan_id: str) -> Optional[ReconciliationPlan]:
    return await reconciliation_plans.get(plan_id)
