"""Pydantic response models for the sync endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from fitsync.models.base import FitSyncBase
from fitsync.sync.base import CallType, Provider
from fitsync.sync.errors import SyncErrorKind


class ProviderSyncResultRead(FitSyncBase):
    provider: Provider
    call_type: CallType | None = None
    success: bool
    message: str
    records_processed: int = 0
    error_kind: SyncErrorKind | None = None
    dates: list[str] = Field(default_factory=list)
    retry_at: datetime | None = None


class SyncResponse(FitSyncBase):
    """Body of ``POST /sync``.

    ``success`` is False only when a result failed; rate-limit denials and
    empty results do not count as failures.
    """

    success: bool
    results: list[ProviderSyncResultRead]
