"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.database import close_db, get_session_factory, init_db
from backend.app.core.errors import register_error_handlers
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.logging_config import setup_logging
from backend.app.core.middleware import RequestLoggingMiddleware

# ── Notification pipeline ──
from backend.app.notifications.pipeline import NotificationPipeline, build_default_channels
from backend.app.notifications.scheduler import NotificationScheduler

# ── API routers ──
from backend.app.api.v1.notifications import router as notifications_router

# ── Initialise logging ──
setup_logging()
logger = logging.getLogger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, start the pipeline and its scheduler; drain on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    if settings.is_development:
        await init_db()

    pipeline = NotificationPipeline(get_session_factory(), settings=settings)
    for channel in build_default_channels(settings):
        pipeline.register_channel(channel)
    await pipeline.start()
    app.state.notification_pipeline = pipeline

    scheduler = None
    if settings.NOTIFY_SCHEDULER_ENABLED:
        scheduler = NotificationScheduler(pipeline, settings)
        scheduler.start()
    app.state.notification_scheduler = scheduler

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    if scheduler is not None:
        scheduler.shutdown()
    await pipeline.shutdown()
    await close_db()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Asynchronous notification delivery for weather alerts. "
        "Durable priority queue with atomic claims, pluggable channels "
        "(email, webhook, Slack, Discord, Telegram, SMS, push), "
        "per-channel health tracking, retry with linear or exponential "
        "backoff, dead-letter recovery and an append-only delivery history."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(notifications_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "channel-registry",
            "delivery-queue",
            "delivery-worker",
            "retry-backoff",
            "delivery-history",
        ],
        "docs": "/docs",
    }


def _components(request: Request):
    state = request.app.state
    return (
        getattr(state, "notification_pipeline", None),
        getattr(state, "notification_scheduler", None),
    )


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(*_components(request))
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(*_components(request))
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
