"""Integration tests for the mpevents server."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from mpevents_server.main import create_app
from mpevents_server.settings import Settings
from mpevents_server.sse import Broadcaster

from conftest import drain_messages

SECRET = "test_secret_12345678"
AUTH = {"X-MP-Webhook-Secret": SECRET}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        webhook_secret=SECRET,
        db_path=str(tmp_path / "receipts.sqlite3"),
        enable_rate_limit=False,
        defer_dispatch=False,
    )


@pytest.fixture
def client(settings, broadcaster, fake_mp):
    """Create test client with the lifespan running."""
    app = create_app(settings, broadcaster=broadcaster, mp_client=fake_mp)
    with TestClient(app) as c:
        yield c


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert "version" in data
    assert "uptime_seconds" in data
    assert data["clients"] == 0


def test_webhook_health(client):
    response = client.get("/api/webhooks/mp")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert sorted(data["registeredTables"]) == ["Event_Metrics", "Feedback_Entries"]
    assert data["handlerCounts"]["Event_Metrics"] == 1


def test_webhook_wrong_secret(client):
    response = client.post(
        "/api/webhooks/mp",
        json={"table": "Event_Metrics", "recordId": 17},
        headers={"X-MP-Webhook-Secret": "nope"},
    )
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}

    response = client.post("/api/webhooks/mp", json={"table": "Event_Metrics", "recordId": 17})
    assert response.status_code == 401


def test_webhook_secret_not_configured(tmp_path, broadcaster):
    settings = Settings(webhook_secret="", db_path=str(tmp_path / "r.sqlite3"), enable_rate_limit=False)
    with TestClient(create_app(settings, broadcaster=broadcaster)) as c:
        response = c.post("/api/webhooks/mp", json={"table": "Event_Metrics", "recordId": 1}, headers=AUTH)
    assert response.status_code == 500
    assert response.json() == {"error": "Webhook secret not configured"}


@pytest.mark.parametrize(
    "body",
    [
        {"recordId": 17},
        {"table": "Event_Metrics"},
        {"table": "Event_Metrics", "recordId": 0},
        ["Event_Metrics", 17],
    ],
)
def test_webhook_invalid_payload(client, body):
    response = client.post("/api/webhooks/mp", json=body, headers=AUTH)
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid payload: missing table or recordId"}


def test_webhook_invalid_json(client):
    response = client.post(
        "/api/webhooks/mp",
        content=b"{not json",
        headers={**AUTH, "Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_webhook_unknown_table(client, broadcaster):
    reg = broadcaster.add_client("c1", [])
    drain_messages(reg)

    response = client.post("/api/webhooks/mp", json={"table": "Households", "recordId": 4}, headers=AUTH)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["handlersExecuted"] == 0
    assert data["handlersFailed"] == 0
    assert drain_messages(reg) == []


def test_webhook_fans_out_to_subscribers(client, broadcaster):
    counter = broadcaster.add_client("counter-app", ["counter"])
    prayers = broadcaster.add_client("prayer-wall", ["prayers"])
    everything = broadcaster.add_client("dashboard", [])
    for reg in (counter, prayers, everything):
        drain_messages(reg)

    response = client.post(
        "/api/webhooks/mp",
        json={"table": "Event_Metrics", "recordId": 17, "action": "create"},
        headers=AUTH,
    )

    assert response.status_code == 200
    data = response.json()
    assert data == {
        "success": True,
        "table": "Event_Metrics",
        "recordId": 17,
        "handlersExecuted": 1,
        "handlersFailed": 0,
    }
    [message] = drain_messages(counter)
    assert message["type"] == "event-metric-created"
    assert message["data"]["metricName"] == "Adults"
    assert drain_messages(everything) == [message]
    assert drain_messages(prayers) == []


def test_deferred_dispatch_acknowledges_first(tmp_path, broadcaster, fake_mp):
    settings = Settings(webhook_secret=SECRET, db_path=str(tmp_path / "r.sqlite3"), enable_rate_limit=False)
    reg = broadcaster.add_client("c1", ["prayers"])
    drain_messages(reg)

    with TestClient(create_app(settings, broadcaster=broadcaster, mp_client=fake_mp)) as c:
        response = c.post("/api/webhooks/mp", json={"table": "Feedback_Entries", "recordId": 88}, headers=AUTH)
        assert response.status_code == 200
        assert response.json()["handlersScheduled"] == 1
        # Background task has finished by the time TestClient returns
        [message] = drain_messages(reg)
        assert message["type"] == "prayer-updated"


def test_receipt_log(client):
    client.post("/api/webhooks/mp", json={"table": "Event_Metrics", "recordId": 17}, headers=AUTH)
    client.post("/api/webhooks/mp", json={"table": "Feedback_Entries", "recordId": 88, "action": "create"}, headers=AUTH)

    response = client.get("/api/webhooks/mp/log", headers=AUTH)
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert [r["table"] for r in data["receipts"]] == ["Event_Metrics", "Feedback_Entries"]
    assert data["receipts"][1]["action"] == "create"
    assert data["receipts"][0]["handlers_executed"] == 1

    response = client.get("/api/webhooks/mp/log?table=Feedback_Entries", headers=AUTH)
    assert [r["record_id"] for r in response.json()["receipts"]] == [88]

    response = client.get(f"/api/webhooks/mp/log?after_id={data['next_after_id']}", headers=AUTH)
    assert response.json()["count"] == 0


def test_receipt_log_requires_secret(client):
    assert client.get("/api/webhooks/mp/log").status_code == 401
    assert client.get("/api/webhooks/mp/stats").status_code == 401
    assert client.delete("/api/webhooks/mp/log").status_code == 401


def test_receipt_statistics(client):
    client.post("/api/webhooks/mp", json={"table": "Event_Metrics", "recordId": 17}, headers=AUTH)
    client.post("/api/webhooks/mp", json={"table": "Event_Metrics", "recordId": 18}, headers=AUTH)

    response = client.get("/api/webhooks/mp/stats", headers=AUTH)
    assert response.status_code == 200
    data = response.json()
    assert data["total_receipts"] == 2
    assert data["receipts_last_24h"] == 2
    assert data["by_table"] == {"Event_Metrics": 2}


def test_receipt_cleanup(client):
    client.post("/api/webhooks/mp", json={"table": "Event_Metrics", "recordId": 17}, headers=AUTH)

    response = client.delete("/api/webhooks/mp/log?days=365", headers=AUTH)
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["deleted_count"] == 0


def test_event_stats(client, broadcaster):
    broadcaster.add_client("a", ["counter"])
    broadcaster.add_client("b", [])

    response = client.get("/api/events/stats")
    assert response.status_code == 200
    assert response.json() == {"totalClients": 2, "channelCounts": {"counter": 1, "*": 1}}


def test_event_stream_rejects_when_full(settings):
    with TestClient(create_app(settings, broadcaster=Broadcaster(max_clients=0))) as c:
        response = c.get("/api/events?channels=counter")
    assert response.status_code == 503
    assert response.json() == {"error": "Too many connected clients"}


def test_rate_limit_on_webhooks(tmp_path, broadcaster):
    settings = Settings(
        webhook_secret=SECRET,
        db_path=str(tmp_path / "r.sqlite3"),
        enable_rate_limit=True,
        rate_limit_per_minute=2,
        defer_dispatch=False,
    )
    with TestClient(create_app(settings, broadcaster=broadcaster)) as c:
        for _ in range(2):
            ok = c.post("/api/webhooks/mp", json={"table": "Contacts", "recordId": 1}, headers=AUTH)
            assert ok.status_code == 200
        limited = c.post("/api/webhooks/mp", json={"table": "Contacts", "recordId": 1}, headers=AUTH)
        assert limited.status_code == 429
        # Health and stats are never throttled
        assert c.get("/healthz").status_code == 200
        assert c.get("/api/events/stats").status_code == 200


def test_shutdown_clears_clients(settings, broadcaster):
    with TestClient(create_app(settings, broadcaster=broadcaster)) as c:
        broadcaster.add_client("c1", [])
        assert c.get("/healthz").json()["clients"] == 1
    assert broadcaster.client_count == 0
