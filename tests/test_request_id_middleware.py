"""Tests for request correlation across normal, throttled and failed requests."""

from __future__ import annotations

import uuid

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from freelance_throttle.core.app_factory import create_app
from freelance_throttle.core.config import RateLimitSettings, Settings
from freelance_throttle.core.errors import AppError
from freelance_throttle.core.rate_limit import rate_limit


@pytest.fixture
def app(fake_factory, clock) -> FastAPI:
    cfg = Settings(rate_limit=RateLimitSettings(trust_proxy=True))
    app = create_app(cfg, connection_factory=fake_factory, clock=clock)

    @app.post("/auth/password-reset", dependencies=[Depends(rate_limit("password_reset"))])
    async def password_reset():
        return {"success": True}

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str):
        raise AppError(code="task_not_found", message=f"Task {task_id} not found")

    return app


def test_incoming_request_id_is_echoed(app: FastAPI):
    with TestClient(app) as client:
        resp = client.get("/v1/cache/stats", headers={"X-Request-ID": "req-stats-1"})

    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-stats-1"
    assert resp.headers["X-RateLimit-Limit"] == "100"


def test_request_id_generated_with_duration(app: FastAPI):
    with TestClient(app) as client:
        resp = client.get("/health")

    generated = resp.headers["X-Request-ID"]
    assert str(uuid.UUID(generated)) == generated
    assert float(resp.headers["X-Request-Duration-ms"]) >= 0


def test_throttled_response_keeps_request_id(app: FastAPI):
    headers = {"X-Forwarded-For": "1.2.3.4", "X-Request-ID": "req-reset-4"}

    with TestClient(app) as client:
        statuses = [client.post("/auth/password-reset", headers=headers).status_code for _ in range(4)]
        rejected = client.post("/auth/password-reset", headers=headers)

    assert statuses == [200, 200, 200, 429]
    assert rejected.headers["X-Request-ID"] == "req-reset-4"
    assert rejected.json()["message"] == "Too many password reset requests, please try again later."


def test_error_envelope_carries_request_id(app: FastAPI):
    with TestClient(app) as client:
        resp = client.get("/tasks/42", headers={"X-Request-ID": "req-task-42"})

    assert resp.status_code == 400
    assert resp.headers["X-Request-ID"] == "req-task-42"
    assert resp.json()["error"]["request_id"] == "req-task-42"
