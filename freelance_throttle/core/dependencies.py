"""FastAPI dependencies exposing the components built by the app lifespan."""

from __future__ import annotations

from fastapi import Request

from freelance_throttle.adapters.cache.client import CacheClient
from freelance_throttle.core.errors import ConfigurationAppError


def _from_state(request: Request, attr: str):
    component = getattr(request.app.state, attr, None)
    if component is None:
        raise ConfigurationAppError(
            code="component_not_initialized",
            message=f"{attr} is not initialized",
            details={"hint": "Run the app with its lifespan (e.g. `with TestClient(app)`)"},
        )
    return component


def get_cache_client(request: Request) -> CacheClient:
    return _from_state(request, "cache_client")
