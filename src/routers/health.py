"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter

from src.dependencies import AppRuntime
from src.models.wearables import JobStatusRead

router = APIRouter(tags=["system"])
logger = logging.getLogger("cadence.health")


@router.get("/health")
async def health_check(runtime: AppRuntime) -> dict:
    """Liveness probe. Returns 200 if the process is up, with per-job status.

    Reports ``degraded`` while any job's most recent run raised.
    """
    settings = runtime.settings
    jobs = [JobStatusRead(**asdict(s)) for s in runtime.scheduler.status().values()]
    failing = [j.name for j in jobs if j.last_failed]
    if failing:
        logger.warning("Health check: failing jobs %s", failing)

    return {
        "status": "degraded" if failing else "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "providers": [p.value for p in runtime.registry.providers],
        "jobs": [j.model_dump(mode="json") for j in jobs],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
