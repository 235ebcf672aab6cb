from fastapi.testclient import TestClient

from src.main import app


def test_dead_letter_endpoints_require_super_admin_token():
    client = TestClient(app)
    assert client.get("/api/webhooks/dead-letters").status_code == 401
    assert client.get("/api/webhooks/dead-letters/dl-1").status_code == 401
    assert client.post("/api/webhooks/dead-letters/dl-1/replay").status_code == 401
    assert client.post("/api/webhooks/dead-letters/replay", json={"ids": ["dl-1"]}).status_code == 401


def test_orphan_queue_endpoints_require_super_admin_token():
    client = TestClient(app)
    assert client.get("/api/webhooks/orphans/stats").status_code == 401
    assert client.post("/api/webhooks/orphans/run-cycle").status_code == 401


def test_invalid_bearer_token_is_rejected():
    client = TestClient(app)
    response = client.get("/api/webhooks/dead-letters", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_orphan_stats_and_manual_cycle_for_operator(fake_db, operator):
    client = TestClient(app)

    stats = client.get("/api/webhooks/orphans/stats")
    cycle = client.post("/api/webhooks/orphans/run-cycle")

    assert stats.status_code == 200
    assert stats.json()["depth"] == 0
    assert stats.json()["fallback_engaged"] is False
    assert cycle.status_code == 200
    assert cycle.json()["claimed"] == 0
    assert cycle.json()["skipped"] is False


def test_operator_token_is_checked_against_super_admins(fake_db):
    from src.auth import create_super_admin_token

    fake_db.tables["super_admins"].append({"id": "sa-1", "email": "ops@example.com"})
    client = TestClient(app)

    known = client.get(
        "/api/webhooks/dead-letters",
        headers={"Authorization": f"Bearer {create_super_admin_token('sa-1')}"},
    )
    unknown = client.get(
        "/api/webhooks/dead-letters",
        headers={"Authorization": f"Bearer {create_super_admin_token('sa-gone')}"},
    )

    assert known.status_code == 200
    assert known.json() == []
    assert unknown.status_code == 401


def test_orphan_stats_returns_503_when_store_is_unreachable(fake_db, operator):
    fake_db.unavailable.add("webhook_orphan_events")
    client = TestClient(app)

    response = client.get("/api/webhooks/orphans/stats")

    assert response.status_code == 503
    assert response.json()["detail"]["type"] == "store_unavailable"
