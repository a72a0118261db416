"""Cadence — background sync and reminder service entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import get_settings
from src.routers import health, wearables
from src.runtime import build_runtime, shutdown_runtime

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("cadence")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    Configuration errors raise here and abort startup.
    """
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info("Starting Cadence v%s [%s]", settings.app_version, settings.environment)

    runtime = await build_runtime(settings)
    app.state.runtime = runtime
    await runtime.scheduler.start()
    yield
    await shutdown_runtime(runtime)
    logger.info("Cadence shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Cadence",
        description=(
            "Wearable sync, OAuth token lifecycle, per-day biometric merging, "
            "and habit reminder dispatch."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside the v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(wearables.router, prefix="/api/v1")

    return app


app = create_app()
