"""
Preview Environment Controller — Status API

Main entrypoint. Sets up FastAPI with:
  - CORS for dashboard access
  - Rate limiting (slowapi)
  - Prometheus metrics (/metrics)
  - Health check (/health) with Redis status
  - Environment routes (/api/environments, /api/gc/plan)
"""

import logging
from contextlib import asynccontextmanager

import redis
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import settings
from .events import now
from .exceptions import PreviewError
from .routers.environments import get_controller, limiter, router as environments_router

VERSION = "1.0.0"

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("preview-api")


# --- Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Preview Controller API starting...")
    yield
    logger.info("Preview Controller API shutting down...")


# --- FastAPI app ---
app = FastAPI(
    title="Preview Environment Controller API",
    description="Status and cleanup API for branch preview environments",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Include environments router ---
app.include_router(environments_router, prefix="/api")


# --- Health check ---
@app.get("/health")
async def health():
    """Health check with Redis connectivity status."""
    redis_status = "disabled"
    if settings.REDIS_URL:
        r = get_controller().events.client()
        redis_status = "disconnected"
        if r is not None:
            try:
                r.ping()
                redis_status = "connected"
            except redis.RedisError:
                pass

    return {
        "status": "healthy",
        "timestamp": now(),
        "redis": redis_status,
        "version": VERSION,
    }


# --- Prometheus metrics endpoint ---
@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Expose Prometheus metrics."""
    return PlainTextResponse(
        content=generate_latest().decode("utf-8"),
        media_type=CONTENT_TYPE_LATEST,
    )


# --- Controller errors ---
@app.exception_handler(PreviewError)
async def preview_error_handler(request: Request, exc: PreviewError):
    logger.error(f"{type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=502,
        content={"detail": str(exc), "code": type(exc).__name__},
    )


# --- Global exception handler ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


def run():
    uvicorn.run(
        "preview_controller.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info",
        reload=False,
    )


# --- Entry point ---
if __name__ == "__main__":
    run()
