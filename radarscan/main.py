"""RadarScan HTTP application.

Serve with::

    uvicorn radarscan.main:app --host 0.0.0.0 --port 8000

Middleware runs outermost first: request logging, then rate limiting, then
the scan routes.  The rate limiter reads its Redis client from
``app.state.redis``, which the lifespan hook opens on startup; without it
requests are not limited.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from radarscan.api.middleware.logging import RequestLoggingMiddleware
from radarscan.api.middleware.rate_limit import RateLimitMiddleware
from radarscan.api.routes.scans import router as scans_router
from radarscan.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.redis = aioredis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    logger.info("RadarScan API started: environment=%s", settings.ENVIRONMENT)
    try:
        yield
    finally:
        await app.state.redis.aclose()
        app.state.redis = None
        logger.info("RadarScan API stopped")


app = FastAPI(
    title="RadarScan API",
    description="URL security scans with downloadable PDF reports",
    version="1.0.0",
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)
app.state.redis = None

app.add_middleware(
    RateLimitMiddleware,
    rpm=settings.RATE_LIMIT_RPM,
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(scans_router)
app.mount("/metrics", make_asgi_app())


@app.get("/healthz", tags=["health"])
async def health_check() -> JSONResponse:
    return JSONResponse({"status": "ok"})
