"""Health check endpoint, public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from fitsync.config import get_settings
from fitsync.services.store import StorageError, get_store

router = APIRouter(tags=["system"])
logger = logging.getLogger("fitsync.health")


@router.get("/health")
async def health_check() -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight document-store read.
    """
    settings = get_settings()
    store_ok = False
    try:
        await get_store().get("health/probe")
        store_ok = True
    except (StorageError, RuntimeError) as exc:
        logger.warning("Health check store probe failed: %s", exc)

    return {
        "status": "healthy" if store_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "store": "connected" if store_ok else "unreachable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
