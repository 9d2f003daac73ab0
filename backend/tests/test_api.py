from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from coinleague.db import get_db, utcnow
from coinleague.main import app, get_assets
from coinleague.prices import record_price


@pytest.fixture
def client(session_factory, registry):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_assets] = lambda: registry
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def publish_price(session_factory):
    def _publish(symbol, price):
        session = session_factory()
        try:
            record_price(session, symbol, price, utcnow() - timedelta(minutes=1))
            session.commit()
        finally:
            session.close()

    return _publish


def register(client, username):
    res = client.post("/auth/register", json={"username": username, "password": "correct-horse"})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_protected_routes_require_a_bearer_token(client):
    res = client.get("/portfolio")
    assert res.status_code == 401
    assert res.json()["error"] == "AuthError"
    assert client.get("/portfolio", headers={"Authorization": "Token abc"}).status_code == 401
    assert client.get("/portfolio", headers={"Authorization": "Bearer clg_unknown"}).status_code == 401


def test_login_me_and_logout(client):
    register(client, "alice")
    res = client.post("/auth/login", json={"username": "alice", "password": "correct-horse"})
    assert res.status_code == 200
    headers = {"Authorization": f"Bearer {res.json()['access_token']}"}

    assert client.get("/auth/me", headers=headers).json()["username"] == "alice"
    assert client.post("/auth/logout", headers=headers).json() == {"ok": True}
    assert client.get("/auth/me", headers=headers).status_code == 401

    bad = client.post("/auth/login", json={"username": "alice", "password": "wrong-password"})
    assert bad.status_code == 401


def test_new_user_lands_in_a_solo_league(client):
    headers = register(client, "alice")

    league = client.get("/leagues/active", headers=headers).json()
    assert league["name"] == "Solo League"
    assert league["member_count"] == 1
    assert league["settings"] == {"matchup_frequency": "WEEKLY", "matchup_count": None}

    portfolio = client.get("/portfolio", headers=headers).json()
    assert portfolio["cash_usd"] == 100000.0
    assert portfolio["holdings"] == []


def test_trading_flow(client, publish_price):
    headers = register(client, "alice")
    publish_price("bitcoin", "100")

    res = client.post("/trade", headers=headers, json={"symbol": "BITCOIN", "side": "buy", "quantity": 2})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["success"] is True
    assert body["cash_usd"] == 99800.0
    assert body["price_used_usd"] == 100.0
    assert body["holdings"][0]["symbol"] == "bitcoin"
    assert body["holdings"][0]["qty"] == 2.0

    publish_price("bitcoin", "120")
    res = client.post("/trade", headers=headers, json={"symbol": "bitcoin", "side": "SELL", "quantity": "1"})
    assert res.json()["cash_usd"] == 99920.0

    recent = client.get("/trades/recent", headers=headers).json()
    assert [(t["side"], t["qty"]) for t in recent] == [("SELL", 1.0), ("BUY", 2.0)]

    history = client.get("/portfolio/history", headers=headers).json()
    assert len(history) == 4
    assert history[-1]["value"] == 100040.0


def test_trade_errors_map_to_distinct_statuses(client, publish_price):
    headers = register(client, "alice")
    publish_price("bitcoin", "60000")

    res = client.post("/trade", headers=headers, json={"symbol": "bitcoin", "side": "BUY", "quantity": 2})
    assert res.status_code == 409
    assert res.json()["error"] == "InsufficientFunds"
    assert res.json()["retryable"] is False

    res = client.post("/trade", headers=headers, json={"symbol": "ethereum", "side": "BUY", "quantity": 1})
    assert res.status_code == 503
    assert res.json()["retryable"] is True

    res = client.post("/trade", headers=headers, json={"symbol": "dogecoin", "side": "BUY", "quantity": 1})
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"

    res = client.post("/trade", headers=headers, json={"symbol": "bitcoin", "side": "BUY", "quantity": -1})
    assert res.status_code == 400


def test_coins_and_prices(client, publish_price):
    headers = register(client, "alice")
    publish_price("bitcoin", "50000")

    coins = client.get("/coins", headers=headers).json()
    assert [c["symbol"] for c in coins] == ["bitcoin", "ethereum", "solana"]
    assert coins[0]["price_usd"] == 50000.0
    assert coins[1]["price_usd"] is None

    assert client.get("/prices/Bitcoin").json() == {"symbol": "bitcoin", "price_usd": 50000.0}
    assert len(client.get("/prices/bitcoin/history").json()) == 1


def test_league_lifecycle(client, publish_price):
    alice = register(client, "alice")
    bob = register(client, "bob")

    res = client.post(
        "/leagues",
        headers=alice,
        json={"name": "Friends", "member_count": 4, "matchup_count": 2, "matchup_frequency": "DAILY"},
    )
    assert res.status_code == 200, res.text
    league = res.json()
    assert league["settings"] == {"matchup_frequency": "DAILY", "matchup_count": 2}

    joined = client.post("/leagues/join", headers=bob, json={"code": league["join_code"].lower()})
    assert joined.status_code == 200
    assert joined.json()["member_count"] == 2
    assert client.get("/leagues/active", headers=bob).json()["id"] == league["id"]

    mine = client.get("/leagues/mine", headers=bob).json()
    assert league["id"] in [row["id"] for row in mine]

    schedule = client.get("/leagues/schedule", headers=bob).json()
    assert [r["label"] for r in schedule["schedule"]] == ["Day 1", "Day 2"]
    matchup = schedule["schedule"][0]["matchups"][0]
    assert matchup["type"] == "HEAD_TO_HEAD"
    assert {matchup["home_username"], matchup["away_username"]} == {"alice", "bob"}

    publish_price("bitcoin", "100")
    client.post("/trade", headers=alice, json={"symbol": "bitcoin", "side": "BUY", "quantity": 10})

    leaderboard = client.get("/leagues/leaderboard", headers=bob).json()
    # Bought at the current price, so both portfolios are still worth the starting cash.
    assert [row["username"] for row in leaderboard] == ["alice", "bob"]
    assert [row["total_value"] for row in leaderboard] == [100000.0, 100000.0]
    assert leaderboard[0]["cash"] == 99000.0

    round_one = client.get("/leagues/rounds/1", headers=alice).json()
    assert round_one["label"] == "Day 1"
    assert round_one["matchups"][0]["result"] in {"HOME_WIN", "AWAY_WIN", "TIE"}
    assert client.get("/leagues/rounds/3", headers=alice).status_code == 400

    standings = client.get("/leagues/standings", headers=alice).json()
    assert sorted(row["username"] for row in standings["standings"]) == ["alice", "bob"]
    assert all(row["games"] == 0 for row in standings["standings"])
    assert standings["champion"] is None

    res = client.post("/leagues/complete", headers=bob, json={})
    assert res.status_code == 403
    res = client.post("/leagues/complete", headers=alice, json={})
    assert res.status_code == 400
    assert "not finished" in res.json()["detail"]


@pytest.mark.parametrize("as_of", ["2024-03-01T00:00:00Z", "2024-03-01T02:00:00+02:00", "2024-03-01T00:00:00"])
def test_standings_accept_as_of_with_or_without_an_offset(client, as_of):
    headers = register(client, "alice")

    res = client.get("/leagues/standings", headers=headers, params={"as_of": as_of})
    assert res.status_code == 200, res.text
    assert res.json()["as_of"].startswith("2024-03-01T00:00:00")


def test_join_errors(client):
    alice = register(client, "alice")
    assert client.post("/leagues/join", headers=alice, json={"code": "ZZZZZZ"}).status_code == 404

    res = client.post("/leagues/active", headers=alice, json={"league_id": 9999})
    assert res.status_code == 404

    res = client.post("/leagues", headers=alice, json={"name": "Too big", "member_count": 64})
    assert res.status_code == 400
