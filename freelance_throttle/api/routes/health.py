from __future__ import annotations

from fastapi import APIRouter, Request

from freelance_throttle.core.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    Always answers 200: a cache outage degrades the service but does not make
    it unhealthy. The payload tells operators which backends are in use.

    Returns:
        dict: ``status`` plus cache connectivity and the rate limit store mode.
    """

    state = request.app.state
    cache_client = getattr(state, "cache_client", None)
    gate = getattr(state, "request_gate", None)

    return {
        "status": "ok",
        "service": settings.app.name,
        "cache": {
            "connected": bool(cache_client and cache_client.is_available()),
            "state": cache_client.state.value if cache_client else "not_initialized",
        },
        "rate_limit": {
            "enabled": bool(gate and gate.enabled),
            "store": gate.adapter.mode.value if gate else "not_initialized",
        },
    }
