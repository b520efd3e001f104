import asyncio

from fastapi.testclient import TestClient

from app import db
from app.routers import players
from app.services.ledger import MatchInput, record_match
from api_helpers import bearer, build_app
from ledger_fixtures import BASE_TIME, add_players, add_user

app = build_app(players.router)


def _seed_users():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await add_user(session, "root", is_admin=True)
            await add_user(session, "alice")
            await session.commit()

    asyncio.run(inner())


def test_admin_creates_player():
    _seed_users()
    with TestClient(app) as client:
        resp = client.post("/players", json={"name": "  Dana Smith "}, headers=bearer("root"))
        assert resp.status_code == 200, resp.text
        pid = resp.json()["id"]
        assert resp.json()["name"] == "dana smith"

        resp = client.get(f"/players/{pid}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "dana smith"

        dup = client.post("/players", json={"name": "DANA SMITH"}, headers=bearer("root"))
        assert dup.status_code == 409
        assert dup.json()["code"] == "player_exists"


def test_player_creation_requires_admin():
    _seed_users()
    with TestClient(app) as client:
        resp = client.post("/players", json={"name": "Eve"}, headers=bearer("alice"))
        assert resp.status_code == 403
        assert resp.json()["code"] == "admin_forbidden"

        resp = client.post("/players", json={"name": "bad<name>"}, headers=bearer("root"))
        assert resp.status_code == 422


def test_player_xp_history():
    async def inner():
        async with db.AsyncSessionLocal() as session:
            await add_players(session, "p1", "p2")
            await session.commit()
            await record_match(
                session,
                MatchInput(
                    side_a=["p1"],
                    side_b=["p2"],
                    games=[{"A": 11, "B": 4}],
                    format="singles",
                    match_type="tournament",
                    event_tier="regional",
                    division="open",
                    recorded_at=BASE_TIME,
                ),
            )

    asyncio.run(inner())
    with TestClient(app) as client:
        resp = client.get("/players/p1/xp")
        assert resp.status_code == 200
        data = resp.json()
        assert data["lifetimeXp"] == 30 + 40 + 10 + 50
        assert (data["level"], data["levelName"]) == (2, "Court Rookie")
        assert (data["levelXp"], data["nextLevelXp"], data["progress"]) == (100, 250, 20)
        assert len(data["entries"]) == 1
        assert data["entries"][0]["source"] == "match_participation"
        assert data["entries"][0]["voided"] is False

        assert client.get("/players/ghost/xp").status_code == 404
