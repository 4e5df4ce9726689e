from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.asyncio import from_url

from ratekeeper.api.routes import router
from ratekeeper.config import Settings, get_settings
from ratekeeper.core.errors import ConfigurationError, StoreUnavailable
from ratekeeper.core.logging import setup_logging
from ratekeeper.core.service import RateLimiterService
from ratekeeper.core.storage.redis import RedisBackend
from ratekeeper.core.strategies.registry import build_strategies

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifecycle manager.
    Handles Redis connection startup and graceful shutdown.
    """
    settings: Settings = app.state.settings

    # A service injected up front (tests) needs no infrastructure
    if getattr(app.state, "service", None) is not None:
        yield
        return

    redis_client = from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.store_timeout_seconds,
        socket_connect_timeout=settings.store_timeout_seconds,
    )

    backend = RedisBackend(redis_client)
    app.state.service = RateLimiterService(
        build_strategies(backend, key_prefix=settings.key_prefix)
    )

    logger.info("ratekeeper_started", default_algorithm=settings.default_algorithm.value)
    try:
        yield
    finally:
        await redis_client.aclose()
        logger.info("ratekeeper_stopped")


async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "configuration_error", "message": str(exc)},
    )


async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.error("store_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"error": "store_unavailable", "message": "Rate limit store is unreachable"},
    )


def create_app(
    settings: Settings | None = None,
    service: RateLimiterService | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service

    app.add_exception_handler(ConfigurationError, configuration_error_handler)
    app.add_exception_handler(StoreUnavailable, store_unavailable_handler)
    app.include_router(router)
    return app
