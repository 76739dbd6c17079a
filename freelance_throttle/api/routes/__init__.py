from __future__ import annotations

from freelance_throttle.api.routes.cache import router as cache_router
from freelance_throttle.api.routes.health import router as health_router

__all__ = ["cache_router", "health_router"]
