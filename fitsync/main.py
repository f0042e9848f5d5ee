"""FitSync API, FastAPI application entry point.

Run locally:
    uvicorn fitsync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fitsync.config import get_settings
from fitsync.middleware.auth import AuthContextMiddleware
from fitsync.routers import health, sync
from fitsync.services.store import close_store, init_store
from fitsync.sync.adapters import build_adapters
from fitsync.sync.config_loader import get_rate_limit_config
from fitsync.sync.orchestrator import SyncOrchestrator

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("fitsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting FitSync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    # Fail fast on a broken limit table
    get_rate_limit_config()
    store = await init_store(settings)
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.provider_timeout_seconds)
    )
    app.state.orchestrator = SyncOrchestrator(
        store, build_adapters(settings, http_client), settings=settings
    )
    yield
    await http_client.aclose()
    await close_store()
    logger.info("FitSync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="FitSync API",
        description=(
            "Fitness data synchronization: pulls activity, sleep and heart-rate "
            "data from Fitbit, Strava and Google Fit into one canonical model."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Middleware (last added runs outermost) ----------

    # Gateway-forwarded identity
    app.add_middleware(AuthContextMiddleware)

    # CORS wraps everything so preflight never reaches the auth check
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (always at /health) ----------
    app.include_router(health.router)

    # ---------- Sync ----------
    app.include_router(sync.router)

    return app


app = create_app()
