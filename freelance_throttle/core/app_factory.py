from __future__ import annotations

"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers, and
the cache/rate limit lifecycle) so tests can build isolated apps with fake
backend connections.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import APIRouter, Depends, FastAPI

from freelance_throttle.adapters.cache.client import CacheClient, ConnectionFactory
from freelance_throttle.adapters.rate_limit.store_adapter import RateLimitStoreAdapter
from freelance_throttle.api.routes import cache_router, health_router
from freelance_throttle.core.config import Settings, settings as default_settings
from freelance_throttle.core.exception_handlers import setup_exception_handlers
from freelance_throttle.core.logging import configure_logging
from freelance_throttle.core.middleware import rate_limit_outcome_middleware, request_id_middleware
from freelance_throttle.core.policies import build_policy_registry
from freelance_throttle.core.rate_limit import RequestGate, rate_limit
from freelance_throttle.services.cache_service import CacheService

logger = logging.getLogger(__name__)


def build_lifespan(
    cfg: Settings,
    *,
    connection_factory: ConnectionFactory | None = None,
    rate_limit_connection_factory: ConnectionFactory | None = None,
    clock: Callable[[], float] = time.time,
):
    """Return a lifespan that owns the cache and rate limit connections.

    The general cache and the rate limiter use two separate connections so a
    failure in one never changes the other's behavior.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cache_client = CacheClient(
            cfg.redis,
            max_retries=cfg.cache.max_retries,
            connection_factory=connection_factory,
            name="cache",
        )
        if cfg.cache.enabled:
            await cache_client.initialize()

        limiter_client = None
        if cfg.rate_limit.use_redis:
            limiter_client = CacheClient(
                cfg.redis,
                max_retries=cfg.cache.max_retries,
                connection_factory=rate_limit_connection_factory or connection_factory,
                name="rate_limit",
            )
        adapter = RateLimitStoreAdapter(
            limiter_client,
            clock=clock,
        )
        await adapter.start()

        app.state.cache_client = cache_client
        app.state.cache_service = CacheService(cache_client, cache_settings=cfg.cache)
        app.state.request_gate = RequestGate(
            adapter,
            build_policy_registry(cfg.rate_limit),
            enabled=cfg.rate_limit.enabled,
            trust_proxy=cfg.rate_limit.trust_proxy,
            clock=clock,
        )
        logger.info(
            "app.started",
            extra={
                "cache_connected": cache_client.is_available(),
                "rate_limit_store": adapter.mode.value,
            },
        )
        try:
            yield
        finally:
            await adapter.close()
            await cache_client.close()
            app.state.request_gate = None
            app.state.cache_service = None
            app.state.cache_client = None
            logger.info("app.stopped")

    return lifespan


def create_app(
    cfg: Settings | None = None,
    *,
    connection_factory: ConnectionFactory | None = None,
    rate_limit_connection_factory: ConnectionFactory | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        cfg: Settings to use; the process-wide settings by default.
        connection_factory: Builds backend connections (tests inject fakes).
        rate_limit_connection_factory: Separate factory for the limiter's
            connection; falls back to ``connection_factory``.
        clock: Time source for rate limit windows.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    cfg = cfg or default_settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    app = FastAPI(
        title="Freelance Throttle",
        description=(
            "Rate limiting and cache layer for the freelance marketplace API: "
            "per-route throttling policies backed by Redis with an in-memory "
            "fallback, plus cache statistics."
        ),
        version="0.1.0",
        lifespan=build_lifespan(
            cfg,
            connection_factory=connection_factory,
            rate_limit_connection_factory=rate_limit_connection_factory,
            clock=clock,
        ),
    )

    # Middleware (last registered runs first)
    app.middleware("http")(rate_limit_outcome_middleware)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    api_router = APIRouter(prefix="/v1", dependencies=[Depends(rate_limit("general"))])
    api_router.include_router(cache_router)
    app.include_router(api_router)
    app.include_router(health_router)

    return app
