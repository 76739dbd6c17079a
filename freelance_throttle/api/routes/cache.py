from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends

from freelance_throttle.adapters.cache.client import CacheClient
from freelance_throttle.core.dependencies import get_cache_client

router = APIRouter(prefix="/cache", tags=["Cache"])


@router.get("/stats")
async def cache_stats(client: Annotated[CacheClient, Depends(get_cache_client)]) -> dict[str, Any]:
    """Cache statistics for operational tooling.

    Returns:
        dict: ``connected`` flag, hit/miss/error/set/delete counters with
            hit rate, and the backend's own INFO stats and keyspace when
            reachable.
    """

    backend = await client.get_stats()
    return {
        "success": True,
        "connected": backend["connected"],
        "stats": client.stats.snapshot(),
        "backend": backend,
    }


@router.post("/stats/reset")
async def reset_cache_stats(client: Annotated[CacheClient, Depends(get_cache_client)]) -> dict[str, Any]:
    """Zero the process-wide cache counters."""

    client.stats.reset()
    return {"success": True, "stats": client.stats.snapshot()}
