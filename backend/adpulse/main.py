"""
AdPulse: FastAPI Backend
Syncs Meta ad accounts into PostgreSQL and classifies creatives
(scale / vary / kill) from their synced metrics.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from adpulse.config import get_settings
from adpulse.database import init_db, check_db_connection
from adpulse.auth import require_auth
from adpulse.routers import creatives, cron

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting AdPulse...")
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="AdPulse",
    description="Meta ads sync and creative decision engine",
    version="1.0.0",
    lifespan=lifespan,
)

_auth = [Depends(require_auth)]
app.include_router(creatives.router, prefix="/api/accounts", tags=["Creatives"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No API key; uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "AdPulse",
        "database": "connected" if db_ok else "disconnected",
    }
