"""Tests for the cache statistics and health endpoints."""

from fastapi.testclient import TestClient

from freelance_throttle.core.app_factory import create_app
from freelance_throttle.core.config import Settings


def test_cache_stats_reports_counters_and_backend(fake_factory, clock) -> None:
    app = create_app(Settings(), connection_factory=fake_factory, clock=clock)

    with TestClient(app) as client:
        service = app.state.cache_service
        client.portal.call(service.set, "k", {"v": 1})
        client.portal.call(service.get, "k")
        client.portal.call(service.get, "missing")

        body = client.get("/v1/cache/stats").json()

    assert body["success"] is True
    assert body["connected"] is True
    assert body["stats"] == {
        "hits": 1,
        "misses": 1,
        "errors": 0,
        "sets": 1,
        "deletes": 0,
        "hit_rate": "50.00%",
        "miss_rate": "50.00%",
    }
    assert body["backend"]["info"]["keyspace_hits"] == "10"


def test_cache_stats_when_backend_down(down_factory, clock) -> None:
    app = create_app(Settings(), connection_factory=down_factory, clock=clock)

    with TestClient(app) as client:
        response = client.get("/v1/cache/stats")

    assert response.status_code == 200
    body = response.json()
    assert body["connected"] is False
    assert body["backend"] == {"connected": False, "message": "Cache backend not available"}
    assert body["stats"]["hit_rate"] == "0%"


def test_stats_reset_zeroes_counters(fake_factory, clock) -> None:
    app = create_app(Settings(), connection_factory=fake_factory, clock=clock)

    with TestClient(app) as client:
        client.portal.call(app.state.cache_service.get, "missing")
        reset = client.post("/v1/cache/stats/reset").json()

    assert reset["success"] is True
    assert reset["stats"]["misses"] == 0


def test_stats_routes_are_under_general_policy(fake_factory, clock) -> None:
    app = create_app(Settings(), connection_factory=fake_factory, clock=clock)

    with TestClient(app) as client:
        response = client.get("/v1/cache/stats")

    assert response.headers["X-RateLimit-Limit"] == "100"


def test_health_reports_backends(fake_factory, clock) -> None:
    app = create_app(Settings(), connection_factory=fake_factory, clock=clock)

    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["cache"] == {"connected": True, "state": "connected"}
    assert body["rate_limit"] == {"enabled": True, "store": "backend"}
    assert "X-RateLimit-Limit" not in response.headers


def test_health_without_lifespan() -> None:
    client = TestClient(create_app(Settings()))

    body = client.get("/health").json()

    assert body["cache"] == {"connected": False, "state": "not_initialized"}
    assert body["rate_limit"] == {"enabled": False, "store": "not_initialized"}
