"""Tests for the /api/health endpoint."""

from datetime import datetime


def test_health_returns_ok(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200

    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == "0.1.0"
    assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None


def test_unknown_route_is_404(client):
    assert client.get("/api/nope").status_code == 404
