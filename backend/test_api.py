"""
HTTP API tests against an in-memory context with the simulator disabled.

Covers:
- Error mapping: 400 validation, 403 owner mismatch, 404 unknown, 409 bad transition
- /candles synthetic path
- Session create / pause / resume / stop and listing
- Session event stream (SSE) with fromSeq and Last-Event-ID
"""

import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from config import SimSettings
from database import init_db, make_engine
from main import app
from market_context import MarketContext
from sse_broadcaster import SSEBroadcaster

MINUTE = 60_000
HOUR = 3_600_000
OWNER = {"X-User-Id": "alice"}


@pytest.fixture
def client():
    engine = make_engine("sqlite://")
    init_db(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    app.state.context = MarketContext(SimSettings(sim_enabled=False), factory, broadcaster=SSEBroadcaster())
    with TestClient(app) as test_client:
        yield test_client
    app.state.context = None


def _create(client, **overrides):
    body = {
        "symbols": ["btc/usdt"],
        "timeframe": "1m",
        "startMs": 0,
        "endMs": 3 * MINUTE,
        "exchange": "sim",
        "replayMsPerCandle": 5,
    }
    body.update(overrides)
    return client.post("/sim/sessions", json=body, headers=OWNER)


def _read_stream(client, path, headers=None):
    with client.stream("GET", path, headers={**OWNER, **(headers or {})}) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        text = "".join(response.iter_text())
    events = []
    for block in text.split("\n\n"):
        fields = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        if "data" in fields:
            events.append((fields.get("id"), json.loads(fields["data"])))
    return text, events


def _wait_for_status(client, session_id, status, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        data = client.get(f"/sim/sessions/{session_id}", headers=OWNER).json()
        if data["status"] == status:
            return data
        time.sleep(0.02)
    raise AssertionError(f"session never reached {status}")


# ============================================================================
# Market data
# ============================================================================

class TestMarketEndpoints:

    def test_root_and_clock(self, client):
        assert client.get("/").status_code == 200
        clock = client.get("/clock").json()
        assert clock["enabled"] is False
        assert clock["simNow"] == clock["decisionNow"]

    def test_synthetic_candles(self, client):
        response = client.get("/candles", params={
            "symbol": "BTCUSDT", "timeframe": "1h", "fromTs": 0, "toTs": 24 * HOUR,
            "exchange": "synthetic", "userId": "alice", "strategyId": "s1",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "cache+synthetic"
        assert len(data["candles"]) == 24
        assert data["gaps"] == []
        assert data["timeframe"] == "1h"

    def test_large_range_served_on_coarser_timeframe(self, client):
        response = client.get("/candles", params={
            "symbol": "BTCUSDT", "timeframe": "15m", "fromTs": 0, "toTs": 10 * 24 * HOUR,
            "exchange": "synthetic", "userId": "alice", "strategyId": "s1", "maxCandles": 300,
        })
        assert response.status_code == 200
        data = response.json()
        assert data["timeframe"] == "1h"
        assert len(data["candles"]) == 240

    def test_synthetic_without_ids_is_400(self, client):
        response = client.get("/candles", params={
            "symbol": "BTCUSDT", "fromTs": 0, "toTs": HOUR, "exchange": "synthetic",
        })
        assert response.status_code == 400
        assert "error" in response.json()

    def test_inverted_range_is_400(self, client):
        response = client.get("/candles", params={"symbol": "BTCUSDT", "fromTs": HOUR, "toTs": 0})
        assert response.status_code == 400

    def test_quotes_and_status(self, client):
        quotes = client.get("/market/quotes").json()
        assert quotes["sessionKey"] == "global"
        assert quotes["quotes"] == []
        status = client.get("/market/status").json()
        assert status["sim"]["running"] is False
        assert status["activeSessions"] == []


# ============================================================================
# Sessions
# ============================================================================

class TestSessionEndpoints:

    def test_create_runs_to_finished(self, client):
        response = _create(client)
        assert response.status_code == 200
        created = response.json()
        assert created["status"] == "running"
        assert created["symbols"] == ["BTCUSDT"]
        assert created["ownerId"] == "alice"

        finished = _wait_for_status(client, created["id"], "finished")
        assert finished["running"] is False
        assert finished["cursorMs"] == 3 * MINUTE

        listed = client.get("/sim/sessions", headers=OWNER).json()["sessions"]
        assert [s["id"] for s in listed] == [created["id"]]
        assert client.get("/sim/sessions", headers={"X-User-Id": "bob"}).json()["sessions"] == []

    def test_invalid_create(self, client):
        assert _create(client, symbols=[]).status_code == 422
        assert _create(client, endMs=0).status_code == 400
        assert _create(client, timeframe="7m").status_code == 400
        assert _create(client, speed=0).status_code == 400

    def test_owner_and_missing(self, client):
        session_id = _create(client).json()["id"]
        assert client.get(f"/sim/sessions/{session_id}", headers={"X-User-Id": "bob"}).status_code == 403
        assert client.post(f"/sim/sessions/{session_id}/stop", headers={"X-User-Id": "bob"}).status_code == 403
        assert client.get("/sim/sessions/does-not-exist", headers=OWNER).status_code == 404

    def test_pause_resume_stop(self, client):
        session_id = _create(client, endMs=1000 * MINUTE, replayMsPerCandle=60_000).json()["id"]

        paused = client.post(f"/sim/sessions/{session_id}/pause", headers=OWNER)
        assert paused.status_code == 200
        assert paused.json()["status"] == "paused"
        assert client.post(f"/sim/sessions/{session_id}/pause", headers=OWNER).status_code == 409

        resumed = client.post(f"/sim/sessions/{session_id}/resume", headers=OWNER)
        assert resumed.json()["status"] == "running"

        stopped = client.post(f"/sim/sessions/{session_id}/stop", headers=OWNER)
        assert stopped.json()["status"] == "stopped"
        again = client.post(f"/sim/sessions/{session_id}/stop", headers=OWNER)
        assert again.status_code == 200
        assert again.json()["status"] == "stopped"

        # Terminal sessions cannot be resumed
        assert client.post(f"/sim/sessions/{session_id}/resume", headers=OWNER).status_code == 409


# ============================================================================
# Event stream
# ============================================================================

class TestSessionEventStream:

    def test_stream_until_terminal(self, client):
        session_id = _create(client).json()["id"]
        text, events = _read_stream(client, f"/sim/sessions/{session_id}/events")

        assert text.startswith("retry: 1000")
        events = [(i, e) for i, e in events if e["type"] != "heartbeat"]
        assert [int(i) for i, _ in events] == list(range(1, len(events) + 1))
        assert [e["type"] for _, e in events] == ["status", "candle", "candle", "candle", "status"]
        assert events[-1][1]["payload"]["status"] == "finished"
        assert events[1][1]["payload"]["symbol"] == "BTCUSDT"

    def test_resume_from_seq(self, client):
        session_id = _create(client).json()["id"]
        _wait_for_status(client, session_id, "finished")

        _, events = _read_stream(client, f"/sim/sessions/{session_id}/events?fromSeq=3")
        assert [int(i) for i, _ in events] == [4, 5]

        _, events = _read_stream(client, f"/sim/sessions/{session_id}/events", headers={"Last-Event-ID": "4"})
        assert [int(i) for i, _ in events] == [5]

    def test_stream_requires_owner(self, client):
        session_id = _create(client).json()["id"]
        response = client.get(f"/sim/sessions/{session_id}/events", headers={"X-User-Id": "bob"})
        assert response.status_code == 403
