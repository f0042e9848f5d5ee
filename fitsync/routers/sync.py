"""Sync endpoints: run the engine for the authenticated user."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from fitsync.dependencies import CurrentUser, Orchestrator
from fitsync.models.sync import ProviderSyncResultRead, SyncResponse
from fitsync.sync.base import Provider
from fitsync.sync.errors import ProfileNotFound, StorageUnavailable
from fitsync.sync.orchestrator import ProviderSyncResult

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("fitsync.routers.sync")


def _response(results: list[ProviderSyncResult]) -> SyncResponse:
    return SyncResponse(
        success=not any(r.is_failure for r in results),
        results=[ProviderSyncResultRead.model_validate(r) for r in results],
    )


@router.post("", response_model=SyncResponse)
async def sync_all(user: CurrentUser, orchestrator: Orchestrator) -> SyncResponse:
    """Sync every connected provider for the current user."""
    try:
        results = await orchestrator.sync_all(user.user_id)
    except ProfileNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _response(results)


@router.post("/{provider}", response_model=SyncResponse)
async def sync_provider(
    provider: Provider, user: CurrentUser, orchestrator: Orchestrator
) -> SyncResponse:
    """Sync one provider for the current user."""
    try:
        results = await orchestrator.sync_provider(user.user_id, provider)
    except ProfileNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _response(results)
