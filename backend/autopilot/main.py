"""
Ads Autopilot: FastAPI Backend
Collects ad-platform metrics, evaluates optimization rules into
recommendations, and executes approved recommendations on the platforms.
All state persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from autopilot.config import get_settings
from autopilot.database import init_db, check_db_connection
from autopilot.errors import AutopilotError
from autopilot.routers import cron, pipeline, recommendations

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Ads Autopilot...")
    try:
        await init_db()
        logger.info("Database initialized: all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Ads Autopilot",
    description="Rule-based optimization pipeline for TikTok, Meta, Google Ads and Shopee campaigns",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AutopilotError)
async def autopilot_error_handler(request: Request, exc: AutopilotError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Register Routers (auth via require_context inside each endpoint) ──
app.include_router(pipeline.router, prefix="/api", tags=["Pipeline"])
app.include_router(recommendations.router, prefix="/api/recommendations", tags=["Recommendations"])
app.include_router(cron.router, prefix="/api")  # No auth: uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Ads Autopilot",
        "database": "connected" if db_ok else "disconnected",
    }
