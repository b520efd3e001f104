from datetime import timedelta

from app.services.integrity import (
    BULK_CLUSTER_REINSERT,
    SAME_MILLISECOND_DUPLICATE,
    audit_ledger,
    describe_signature,
)
from app.services.records import ValidationStatus
from ledger_fixtures import BASE_TIME, INCIDENT_AT, incident_records, make_record


def test_clean_ledger_has_no_findings():
    records = [
        make_record(f"m{i}", ["p1"], ["p2"], recorded_at=BASE_TIME + timedelta(minutes=i))
        for i in range(5)
    ]
    plan = audit_ledger(records)
    assert plan.findings == ()
    assert plan.records_scanned == 5
    assert plan.candidate_clusters == 0


def test_same_millisecond_copies_are_flagged():
    at = BASE_TIME.replace(microsecond=742100)
    records = [
        make_record("a", ["p1"], ["p2"], recorded_at=at, created_at=at),
        make_record("b", ["p1"], ["p2"], recorded_at=at.replace(microsecond=742900), created_at=at + timedelta(seconds=1)),
        make_record("c", ["p1"], ["p2"], recorded_at=at, created_at=at + timedelta(seconds=2)),
    ]
    plan = audit_ledger(records)

    assert len(plan.findings) == 1
    finding = plan.findings[0]
    assert finding.keeper_id == "a"
    assert set(finding.remove_ids) == {"b", "c"}
    assert finding.player_ids == ("p1", "p2")
    assert finding.evidence.reason == SAME_MILLISECOND_DUPLICATE
    assert finding.evidence.shared_millisecond_count == 3
    assert plan.remove_ids == {"b", "c"}


def test_swapped_sides_are_the_same_match():
    records = [
        make_record("a", ["p1"], ["p2"], games=((11, 4), (11, 9))),
        make_record("b", ["p2"], ["p1"], games=((4, 11), (9, 11))),
    ]
    plan = audit_ledger(records)
    assert plan.remove_ids == {"b"}


def test_same_millisecond_different_matches_are_kept():
    records = [
        make_record("a", ["p1"], ["p2"], games=((11, 4), (11, 9))),
        make_record("b", ["p1"], ["p2"], games=((11, 5), (11, 9))),
        make_record("c", ["p3"], ["p4"]),
    ]
    plan = audit_ledger(records)
    assert plan.candidate_clusters == 1
    assert plan.findings == ()


def test_distinct_players_in_one_millisecond_are_not_a_cluster():
    records = [make_record(f"m{i}", [f"a{i}"], [f"b{i}"]) for i in range(5)]
    plan = audit_ledger(records)
    assert plan.candidate_clusters == 0
    assert plan.findings == ()


def test_keeper_prefers_validated_and_complete_records():
    records = [
        make_record("a", ["p1"], ["p2"], status=ValidationStatus.PENDING),
        make_record("b", ["p1"], ["p2"]),
        make_record("c", ["p1"], ["p2"], location="Court 1"),
    ]
    plan = audit_ledger(records)
    assert plan.findings[0].keeper_id == "c"
    assert set(plan.findings[0].remove_ids) == {"a", "b"}


def test_deleted_records_are_ignored():
    records = [
        make_record("a", ["p1"], ["p2"]),
        make_record("b", ["p1"], ["p2"], deleted=True),
    ]
    plan = audit_ledger(records)
    assert plan.findings == ()
    assert plan.records_scanned == 1


def test_bulk_reinsert_is_traced_to_originals():
    plan = audit_ledger(incident_records())

    assert plan.records_scanned == 28
    assert len(plan.remove_ids) == 17
    assert plan.keeper_ids == {f"g{i:02d}" for i in range(1, 11)} | {"bulk-new-1"}

    by_keeper = {f.keeper_id: f for f in plan.findings}
    assert set(by_keeper["g01"].remove_ids) == {"g01-dup1", "g01-dup2", "bulk-g01"}
    assert by_keeper["g01"].evidence.reason == BULK_CLUSTER_REINSERT
    assert by_keeper["g07"].remove_ids == ("bulk-g07",)
    assert by_keeper["g07"].evidence.cluster_size == 12
    assert by_keeper["g07"].evidence.distinct_players == 11
    assert by_keeper["bulk-new-1"].remove_ids == ("bulk-new-2",)
    assert by_keeper["bulk-new-1"].evidence.reason == SAME_MILLISECOND_DUPLICATE
    assert plan.affected_player_ids == {"hero"} | {f"opp{i:02d}" for i in range(1, 11)}


def test_genuine_rematches_are_not_folded_together():
    # Two real matches with identical scores a week apart, both re-inserted
    # once by a bulk write.
    first = make_record("r1", ["p1"], ["p2"], recorded_at=BASE_TIME)
    second = make_record("r2", ["p1"], ["p2"], recorded_at=BASE_TIME + timedelta(days=7))
    bulk = [
        make_record("x1", ["p1"], ["p2"], recorded_at=INCIDENT_AT, created_at=INCIDENT_AT),
        make_record("x2", ["p1"], ["p2"], recorded_at=INCIDENT_AT, created_at=INCIDENT_AT + timedelta(seconds=1)),
    ]
    filler = [
        make_record(f"f{i}", [f"a{i}"], [f"b{i}"], recorded_at=INCIDENT_AT)
        for i in range(8)
    ]
    plan = audit_ledger([first, second, *bulk, *filler])

    keepers = {f.keeper_id: set(f.remove_ids) for f in plan.findings}
    assert keepers == {"r1": {"x1"}, "r2": {"x2"}}


def test_thresholds_are_configurable():
    records = [make_record(f"m{i}", [f"a{i}"], [f"b{i}"]) for i in range(4)]
    plan = audit_ledger(records, bulk_cluster_size=4)
    assert plan.candidate_clusters == 1
    assert plan.findings == ()
    assert plan.settings == {"bulkClusterSize": 4, "samePairClusterSize": 2}


def test_plan_serialises_evidence():
    records = [make_record("a", ["p1"], ["p2"]), make_record("b", ["p1"], ["p2"])]
    plan = audit_ledger(records)
    payload = plan.as_dict()
    assert payload["removeCount"] == 1
    assert payload["findings"][0]["bucket"] == {"format": "singles", "division": "open", "tier": "open"}
    assert payload["findings"][0]["evidence"]["signature"] == describe_signature(records[0])
    assert describe_signature(records[0]) == "singles: p1 [11/11] vs p2 [7/8]"


def test_validated_copy_survives_an_earlier_pending_copy_in_the_same_millisecond():
    at = BASE_TIME.replace(microsecond=742100)
    records = [
        make_record("a-pending", ["p1"], ["p2"], recorded_at=at, status=ValidationStatus.PENDING),
        make_record("b-validated", ["p1"], ["p2"], recorded_at=at + timedelta(microseconds=400)),
    ]
    plan = audit_ledger(records)
    assert plan.findings[0].keeper_id == "b-validated"
    assert plan.findings[0].remove_ids == ("a-pending",)
