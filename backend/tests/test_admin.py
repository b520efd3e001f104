import asyncio

from fastapi.testclient import TestClient
from sqlalchemy import update

from app import db
from app.models import RankingBucket
from app.routers import admin, rankings
from app.services.records import BucketKey
from app.services.ranking import get_position
from api_helpers import bearer, build_app
from ledger_fixtures import INCIDENT_PLAYERS, add_players, add_user, incident_records, seed_ledger

app = build_app(admin.router, rankings.router)

SINGLES = BucketKey("singles", "open", "open")


def _seed():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await add_user(session, "root", is_admin=True)
            await add_user(session, "alice")
            await add_players(session, *INCIDENT_PLAYERS)
            await seed_ledger(session, incident_records())

    asyncio.run(inner())


def _hero_position():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            return await get_position(session, "hero", SINGLES)

    return asyncio.run(inner())


def test_admin_routes_require_admin():
    _seed()
    with TestClient(app) as client:
        resp = client.post("/admin/integrity/audit", headers=bearer("alice"))
        assert resp.status_code == 403
        assert resp.json()["code"] == "admin_forbidden"
        assert client.post("/admin/rankings/recompute").status_code == 401


def test_audit_is_a_dry_run_by_default():
    _seed()
    with TestClient(app) as client:
        resp = client.post("/admin/integrity/audit", headers=bearer("root"))
        assert resp.status_code == 200, resp.text
        data = resp.json()
        plan = data["plan"]
        assert plan["recordsScanned"] == 28
        assert plan["removeCount"] == 17
        reasons = {f["evidence"]["reason"] for f in plan["findings"]}
        assert reasons == {"bulk_cluster_reinsert", "same_millisecond_duplicate"}

        report = data["report"]
        assert report["dryRun"] is True
        assert report["totals"]["planned"] == len(INCIDENT_PLAYERS)
        hero = next(p for p in report["players"] if p["playerId"] == "hero")
        assert (hero["matchesBefore"], hero["matchesAfter"]) == (28, 11)

    assert _hero_position().match_count == 28


def test_cleanup_applies_a_stored_plan():
    _seed()
    with TestClient(app) as client:
        plan_id = client.post("/admin/integrity/audit", headers=bearer("root")).json()["plan"]["planId"]

        resp = client.post(
            f"/admin/integrity/cleanup/{plan_id}",
            json={"dryRun": False},
            headers=bearer("root"),
        )
        assert resp.status_code == 200, resp.text
        report = resp.json()
        assert report["removedCount"] == 17
        assert report["totals"]["applied"] == len(INCIDENT_PLAYERS)

        ranking = client.get("/rankings/hero", params={"format": "singles"}).json()
        assert ranking["matchCount"] == 11

        log = client.get(
            "/admin/integrity/log",
            params={"planId": plan_id, "playerId": "hero"},
            headers=bearer("root"),
        ).json()
        assert log["total"] == 1
        assert log["entries"][0]["action"] == "cleanup_applied"
        assert log["entries"][0]["payload"]["matchesAfter"] == 11

        again = client.post("/admin/integrity/audit", headers=bearer("root")).json()
        assert again["plan"]["findings"] == []

        rerun = client.post(
            f"/admin/integrity/cleanup/{plan_id}",
            json={"dryRun": False},
            headers=bearer("root"),
        ).json()
        assert len(rerun["skippedMatchIds"]) == 17
        assert rerun["removedCount"] == 0


def test_cleanup_of_unknown_plan_is_404():
    _seed()
    with TestClient(app) as client:
        resp = client.post("/admin/integrity/cleanup/nope", headers=bearer("root"))
        assert resp.status_code == 404
        assert resp.json()["code"] == "plan_not_found"


def test_audit_thresholds_are_validated():
    _seed()
    with TestClient(app) as client:
        resp = client.post(
            "/admin/integrity/audit",
            json={"bulkClusterSize": 1},
            headers=bearer("root"),
        )
        assert resp.status_code == 422


def test_audit_never_applies_its_plan():
    _seed()
    with TestClient(app) as client:
        resp = client.post(
            "/admin/integrity/audit",
            json={"dryRun": False},
            headers=bearer("root"),
        )
        assert resp.status_code == 422

        resp = client.post("/admin/integrity/audit", json={}, headers=bearer("root"))
        assert resp.status_code == 200
        assert resp.json()["report"]["dryRun"] is True

        log = client.get("/admin/integrity/log", headers=bearer("root")).json()
        assert log["total"] == 0

    assert _hero_position().match_count == 28


def test_recompute_repairs_drifted_buckets():
    _seed()

    async def drift():
        async with db.AsyncSessionLocal() as session:
            await session.execute(
                update(RankingBucket)
                .where(RankingBucket.player_id == "hero")
                .values(ranking_points=0.0, match_count=0, version=RankingBucket.version + 1)
            )
            await session.commit()

    asyncio.run(drift())
    assert _hero_position().match_count == 0

    with TestClient(app) as client:
        resp = client.post("/admin/rankings/recompute", headers=bearer("root"))
        assert resp.status_code == 200
        assert resp.json()["buckets"] == len(INCIDENT_PLAYERS)

    assert _hero_position().match_count == 28
