"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from fitsync.config import Settings, get_settings
from fitsync.sync.orchestrator import SyncOrchestrator


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context forwarded by the gateway."""

    user_id: str


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="User not authenticated.")
    return auth


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Return the orchestrator built in the app lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return orchestrator


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
