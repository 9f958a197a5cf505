"""Call-flow engine: FastAPI server entry point.

Serves:
- /health: health check
- /voice/*: Twilio webhooks that run tenant call flows
- /api/tenants/{tenant_id}/*: call flow management and call chains
- /media/*: synthesized prompts and stored recordings
"""

from __future__ import annotations

import sys
import warnings
from pathlib import Path

from loguru import logger

from config import settings

logger.remove()
logger.add(sys.stderr, level=settings.log_level)


def _log_warning(message, category, filename, lineno, file=None, line=None):
    level = "DEBUG" if issubclass(category, DeprecationWarning) else "WARNING"
    logger.log(level, "{cat} at {file}:{line}: {msg}", cat=category.__name__, file=filename, line=lineno, msg=str(message))


warnings.showwarning = _log_warning

# Sentry error monitoring (before FastAPI import for auto-instrumentation)
import sentry_sdk

if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=0,
        send_default_pii=False,
        environment=settings.environment,
    )
    logger.info("Sentry initialized")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from api.middleware.error_handler import register_error_handlers
from api.middleware.rate_limit import limiter
from api.routes.call_flows import router as call_flows_router
from api.routes.calls import router as calls_router
from api.routes.voice import router as voice_router

app = FastAPI(title="Call Flow Engine", version="0.1.0")

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

ALLOWED_ORIGINS = [settings.admin_url]
if not settings.is_production:
    ALLOWED_ORIGINS.extend(["http://localhost:5173", "http://localhost:3000"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in ALLOWED_ORIGINS if o],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Error handlers
register_error_handlers(app)

# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
app.include_router(voice_router)
app.include_router(call_flows_router)
app.include_router(calls_router)

Path(settings.media_dir).mkdir(parents=True, exist_ok=True)
app.mount("/media", StaticFiles(directory=settings.media_dir), name="media")


@app.get("/health")
async def health():
    """Database reachability and provider circuit breaker states."""
    from db import check_health as db_health
    from lib.circuit_breaker import get_breaker_states

    db_ok = await db_health()
    return {
        "status": "ok" if db_ok else "degraded",
        "service": "call-flow-engine",
        "database": "ok" if db_ok else "error",
        "circuit_breakers": get_breaker_states(),
    }


# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def startup():
    from db import get_pool
    from services.engine import get_engine

    logger.info("Call flow engine starting on port {port} ({env})", port=settings.port, env=settings.environment)
    if not settings.base_url:
        logger.warning("BASE_URL not set, webhook URLs will be relative")
    get_engine()

    try:
        await get_pool()
    except Exception as e:
        logger.error("Database unavailable at startup: {err}", err=str(e))


@app.on_event("shutdown")
async def shutdown():
    from db import close_pool

    try:
        await close_pool()
    except Exception as e:
        logger.error("Closing the database pool failed: {err}", err=str(e))
