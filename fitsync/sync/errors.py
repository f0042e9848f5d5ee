"""Error taxonomy for the synchronization engine.

Every failure a sync pipeline can report maps onto exactly one
``SyncErrorKind``.  Stages raise the matching ``SyncError`` subclass; the
per-(provider, call-type) pipeline in the orchestrator catches it and turns
it into a ``ProviderSyncResult``, so no exception crosses a provider
boundary.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum


class SyncErrorKind(str, Enum):
    """Closed set of outcomes a failed (or skipped) sync step can carry."""

    AUTH_REQUIRED = "AUTH_REQUIRED"
    PROVIDER_NOT_CONNECTED = "PROVIDER_NOT_CONNECTED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    PROVIDER_AUTH_EXPIRED = "PROVIDER_AUTH_EXPIRED"
    PROVIDER_API_ERROR = "PROVIDER_API_ERROR"
    NO_DATA_FOUND = "NO_DATA_FOUND"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

    @property
    def is_failure(self) -> bool:
        """Rate-limit denials and empty results are not failures."""
        return self not in (SyncErrorKind.RATE_LIMIT_EXCEEDED, SyncErrorKind.NO_DATA_FOUND)


class SyncError(Exception):
    """Base class for all engine errors."""

    kind: SyncErrorKind = SyncErrorKind.UNEXPECTED_ERROR
    user_message: str = "An unexpected error occurred. Please try again later."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)


class AuthRequired(SyncError):
    """No authenticated user for the call."""

    kind = SyncErrorKind.AUTH_REQUIRED
    user_message = "User not authenticated."


class ProfileNotFound(SyncError):
    """The user has no sync profile document, so no provider is connected."""

    kind = SyncErrorKind.PROVIDER_NOT_CONNECTED
    user_message = "User profile not found."


class ProviderNotConnected(SyncError):
    kind = SyncErrorKind.PROVIDER_NOT_CONNECTED
    user_message = "Provider not connected. Please connect it in your profile."


class RateLimitExceeded(SyncError):
    """Today's budget for a call type is used up.  Informational, never retried."""

    kind = SyncErrorKind.RATE_LIMIT_EXCEEDED
    user_message = "Sync skipped: daily limit reached."

    def __init__(self, message: str | None = None, retry_at: datetime | None = None) -> None:
        super().__init__(message)
        self.retry_at = retry_at


class ProviderAuthExpired(SyncError):
    """The provider rejected our credentials (HTTP 401/403)."""

    kind = SyncErrorKind.PROVIDER_AUTH_EXPIRED
    user_message = (
        "Your provider session has expired. Please reconnect the provider "
        "in your profile settings."
    )


class ReauthRequired(ProviderAuthExpired):
    """No usable token set: missing, or the refresh token was rejected."""


class ProviderApiError(SyncError):
    """Transient or unexpected provider failure (network, 4xx, 5xx, bad payload).

    Attributes:
        status_code:  HTTP status if a response was received.
        request_sent: False when the failure happened before the request
                      reached the provider (connection refused, DNS, ...).
    """

    kind = SyncErrorKind.PROVIDER_API_ERROR
    user_message = "The provider API request failed."

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        request_sent: bool = True,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.request_sent = request_sent


class StorageUnavailable(SyncError):
    kind = SyncErrorKind.STORAGE_UNAVAILABLE
    user_message = "Storage is temporarily unavailable. Please try again later."
