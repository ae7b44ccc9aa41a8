"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown: logging, the optional Redis
relay, and closing every open stream on the way down so clients see a
clean end-of-stream and reconnect elsewhere.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from channelcast import __version__
from channelcast.api import api_router
from channelcast.config import settings
from channelcast.log import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: FastAPI lifespan replaces on_event("startup") / on_event("shutdown").
    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    configure_logging()
    logger.info(
        "channelcast.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from channelcast.realtime.registry import registry
    from channelcast.realtime.relay import (
        RelayListener,
        close_redis,
        init_redis,
        stop_listener,
    )

    relay_task = None
    if settings.redis_url:
        try:
            await init_redis()
            logger.info("channelcast.redis_connected", url=settings.redis_url)
            relay_task = asyncio.create_task(RelayListener(registry).run_loop())
        except Exception as e:
            logger.warning("channelcast.redis_unavailable", error=str(e))
            # Publishes fall back to local broadcast
            await close_redis()

    yield

    # Shutdown
    logger.info("channelcast.shutdown")

    if relay_task is not None:
        await stop_listener(relay_task)
    await close_redis()

    closed = registry.close_all()
    logger.info("channelcast.streams_closed", count=closed)


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="channelcast",
        description="Channel-scoped Server-Sent Events fan-out",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    from channelcast.middleware.rate_limit import RateLimitMiddleware
    from channelcast.middleware.request_id import RequestIdMiddleware
    from channelcast.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        stream_rpm=settings.rate_limit_stream_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: channelcast.main:app)
app = create_app()
