from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from dealfinder.api import health, deals, signals, alerts
from dealfinder.config import get_settings
from dealfinder.database import create_tables
from dealfinder.runtime import build_runtime
from dealfinder.scheduler import start_scheduler, stop_scheduler
import dealfinder.models  # noqa: F401  registers tables on Base.metadata

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting dealfinder")

    if settings.database_url.startswith("sqlite"):
        logger.info("SQLite detected - creating tables if needed")
        create_tables()

    runtime = build_runtime(settings)
    app.state.runtime = runtime

    if settings.scheduler_enabled:
        try:
            start_scheduler(runtime)
            logger.info("APScheduler started")
        except Exception as e:
            logger.error(f"Scheduler failed to start: {e}")

    yield

    logger.info("Shutting down dealfinder")
    try:
        stop_scheduler()
        await runtime.aclose()
    except Exception as e:
        logger.error(f"Shutdown error: {e}")


app = FastAPI(
    title="dealfinder",
    description="Flight-deal detection and caching service",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(deals.router, prefix="/deals", tags=["deals"])
app.include_router(signals.router, prefix="/signals", tags=["signals"])
app.include_router(alerts.router, prefix="/alerts", tags=["alerts"])


@app.get("/ping")
async def ping():
    """Simple ping endpoint for health checks."""
    return {"status": "ok"}
