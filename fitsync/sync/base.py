"""Base classes and canonical data models for the FitSync engine.

Every provider adapter subclasses ``ProviderAdapter``; the normalizer turns
the adapters' validated payloads into the canonical ``ActivityRecord`` /
``SleepRecord`` / ``HeartRateRecord`` / ``DailySummary`` records defined
here.  These types are the single source of truth consumed by the persister
and by anything reading the normalized store.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from fitsync.config import Settings, get_settings
from fitsync.sync.errors import ProviderApiError, ProviderAuthExpired, ReauthRequired
from fitsync.sync.payloads import TokenResponse

logger = logging.getLogger("fitsync.sync")

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    FITBIT = "fitbit"
    STRAVA = "strava"
    GOOGLE_FIT = "google-fit"


class CallType(str, Enum):
    """Rate-limited call categories.  Values match the persisted stats keys."""

    DAILY_ACTIVITY_SUMMARY = "dailyActivitySummary"
    HEART_RATE_TIME_SERIES = "heartRateTimeSeries"
    SLEEP_DATA = "sleepData"
    SWIMMING_DATA = "swimmingData"
    LOGGED_ACTIVITIES = "loggedActivities"
    ACTIVITIES = "activities"
    SESSIONS = "sessions"
    AGGREGATE_DATA = "aggregateData"


class SubscriptionTier(str, Enum):
    FREE = "free"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class ActivityType(str, Enum):
    WALKING = "walking"
    RUNNING = "running"
    HIKING = "hiking"
    SWIMMING = "swimming"
    CYCLING = "cycling"
    WORKOUT = "workout"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return "Other Activity" if self is ActivityType.OTHER else self.value.capitalize()


# ---------------------------------------------------------------------------
# OAuth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokenSet:
    """OAuth token set for one (user, provider).

    Attributes:
        provider:      Provider the tokens belong to.
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
    """

    provider: Provider
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        """Return True if the access token expires in less than ``seconds``."""
        current = now or utc_now()
        return (self.expires_at - current).total_seconds() <= seconds

    def to_document(self) -> dict:
        return {
            "provider": self.provider.value,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at.isoformat(),
            "tokenType": self.token_type,
            "scope": list(self.scope),
        }

    @classmethod
    def from_document(cls, doc: dict) -> "OAuthTokenSet":
        expires_at = datetime.fromisoformat(doc["expiresAt"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            provider=Provider(doc["provider"]),
            access_token=doc["accessToken"],
            refresh_token=doc["refreshToken"],
            expires_at=expires_at,
            token_type=doc.get("tokenType", "Bearer"),
            scope=list(doc.get("scope") or []),
        )

    def __repr__(self) -> str:
        return f"OAuthTokenSet(provider={self.provider.value!r}, expires_at={self.expires_at!r})"


# ---------------------------------------------------------------------------
# Canonical / normalized records
# ---------------------------------------------------------------------------


@dataclass
class ActivityRecord:
    """Canonical activity record shared by all providers.

    ``id`` is ``{provider}-{original_id}`` and is the idempotency key.
    ``distance_meters`` is always meters; it is None when the source unit
    could not be determined.

    Attributes:
        id:                    ``{provider}-{original_id}``.
        user_id:               Internal user id.
        provider:              Source provider.
        original_id:           Provider's own id for the activity.
        activity_type:         Canonical activity type.
        name:                  Human-readable name.
        start_time_utc:        UTC start instant.
        date:                  ``YYYY-MM-DD`` bucket derived from the local start.
        start_time_local:      Naive local ISO timestamp, best-effort.
        timezone:              IANA zone of the local start, when known.
        duration_moving_sec:   Active duration in seconds.
        duration_elapsed_sec:  Total duration in seconds (including pauses).
        distance_meters:       Distance in meters.
        calories:              Calories burned.
        steps:                 Step count.
        average_heart_rate_bpm / max_heart_rate_bpm: Heart rate.
        elevation_gain_meters: Elevation gain in meters.
        map_polyline:          Summary polyline, when the provider has one.
        last_fetched:          When this record was fetched.
    """

    id: str
    user_id: str
    provider: Provider
    original_id: str
    activity_type: ActivityType
    name: str
    start_time_utc: datetime
    date: str
    start_time_local: str | None = None
    timezone: str | None = None
    duration_moving_sec: float | None = None
    duration_elapsed_sec: float | None = None
    distance_meters: float | None = None
    calories: float | None = None
    steps: int | None = None
    average_heart_rate_bpm: float | None = None
    max_heart_rate_bpm: float | None = None
    elevation_gain_meters: float | None = None
    map_polyline: str | None = None
    last_fetched: datetime = field(default_factory=utc_now)

    @staticmethod
    def make_id(provider: Provider, original_id: str | int) -> str:
        return f"{provider.value}-{original_id}"


@dataclass
class SleepRecord:
    """One sleep log.  Keyed by ``log_id``: a date can hold a main sleep and naps."""

    log_id: str
    user_id: str
    provider: Provider
    date_of_sleep: str
    start_time: str | None = None
    end_time: str | None = None
    duration_ms: int | None = None
    minutes_to_fall_asleep: int | None = None
    minutes_asleep: int | None = None
    minutes_awake: int | None = None
    time_in_bed: int | None = None
    efficiency: int | None = None
    log_type: str | None = None
    is_main_sleep: bool | None = None
    stages_summary: dict[str, dict[str, Any]] = field(default_factory=dict)
    last_fetched: datetime = field(default_factory=utc_now)


@dataclass
class HeartRateRecord:
    """Daily heart-rate record, one per user per provider per date."""

    date: str
    user_id: str
    provider: Provider
    resting_heart_rate: int | None = None
    heart_rate_zones: list[dict[str, Any]] = field(default_factory=list)
    intraday_series: dict[str, Any] | None = None
    last_fetched: datetime = field(default_factory=utc_now)


@dataclass
class DailySummary:
    """Daily activity summary, one per user per provider per date."""

    date: str
    user_id: str
    provider: Provider
    steps: int | None = None
    distance_meters: float | None = None
    calories_out: int | None = None
    active_minutes: int | None = None
    last_fetched: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Abstract base class for provider API adapters.

    Adapters only talk HTTP: they fetch raw payloads, validate them into the
    provider's pydantic models (``fitsync.sync.payloads``) and refresh OAuth
    tokens.  Mapping to canonical records is the normalizer's job.

    All calls share ``_send``: bounded timeout, one retry on transient
    failure, HTTP 401/403 surfaced as ``ProviderAuthExpired``.
    """

    #: Provider handled by the adapter.
    PROVIDER: Provider

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    #: OAuth2 token endpoint used for refresh.
    TOKEN_URL: str = ""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            settings:    Application settings (credentials, timeouts).
            http_client: Optional shared httpx client (also used in tests).
        """
        self._settings = settings or get_settings()
        self._http_client = http_client
        self._timeout = httpx.Timeout(self._settings.provider_timeout_seconds)

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> OAuthTokenSet:
        """Exchange a refresh token for a new token set.

        Raises:
            ReauthRequired:   The token endpoint rejected the refresh token.
            ProviderApiError: Transient failure; the old tokens stay valid.
        """

    # ------------------------------------------------------------------
    # Shared HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one request, retrying once on transient failure.

        Raises:
            ProviderAuthExpired: On HTTP 401/403 (never retried).
            ProviderApiError:    On other 4xx, or when the retry also failed.
        """
        request_sent = False
        last_error = ""
        status_code: int | None = None

        for attempt in (1, 2):
            try:
                if self._http_client is not None:
                    response = await self._http_client.request(
                        method, url, timeout=self._timeout, **kwargs
                    )
                else:
                    async with httpx.AsyncClient(timeout=self._timeout) as client:
                        response = await client.request(method, url, **kwargs)
            except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                last_error = f"connection failed: {exc!r}"
            except httpx.TransportError as exc:
                request_sent = True
                last_error = f"transport error: {exc!r}"
            else:
                request_sent = True
                status_code = response.status_code
                if status_code in (401, 403):
                    logger.warning(
                        "%s: %s %s rejected with HTTP %d",
                        self.DISPLAY_NAME, method, url, status_code,
                    )
                    raise ProviderAuthExpired()
                if status_code < 400:
                    return response
                last_error = f"HTTP {status_code}: {response.text[:200]}"
                if status_code != 429 and status_code < 500:
                    raise ProviderApiError(
                        f"{self.DISPLAY_NAME} request failed ({last_error})",
                        status_code=status_code,
                    )

            if attempt == 1:
                logger.warning(
                    "%s: %s %s failed (%s); retrying once",
                    self.DISPLAY_NAME, method, url, last_error,
                )
                await asyncio.sleep(self._settings.retry_backoff_seconds)

        raise ProviderApiError(
            f"{self.DISPLAY_NAME} request failed after retry ({last_error})",
            status_code=status_code,
            request_sent=request_sent,
        )

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        model: type[PayloadT],
        params: dict | None = None,
        json_body: dict | None = None,
        headers: dict[str, str] | None = None,
    ) -> PayloadT:
        """Make an authenticated request and validate the JSON body into ``model``."""
        all_headers = self._build_headers(access_token)
        if headers:
            all_headers.update(headers)

        response = await self._send(
            method, url, params=params, json=json_body, headers=all_headers
        )
        if response.status_code == 204 or not response.content:
            body: Any = {}
        else:
            try:
                body = response.json()
            except ValueError as exc:
                raise ProviderApiError(
                    f"{self.DISPLAY_NAME} returned non-JSON body", response.status_code
                ) from exc
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise ProviderApiError(
                f"{self.DISPLAY_NAME} returned an unexpected payload: "
                f"{exc.error_count()} validation error(s)",
                response.status_code,
            ) from exc

    async def _refresh(
        self,
        data: dict[str, str],
        refresh_token: str,
        auth: tuple[str, str] | None = None,
    ) -> OAuthTokenSet:
        """POST to the token endpoint and build the new token set.

        A provider that does not rotate refresh tokens keeps ``refresh_token``.

        Raises:
            ReauthRequired:   HTTP 400/401/403 from the token endpoint.
            ProviderApiError: Transient failure or malformed response.
        """
        try:
            response = await self._send(
                "POST",
                self.TOKEN_URL,
                data=data,
                auth=auth,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except ProviderAuthExpired as exc:
            raise ReauthRequired() from exc
        except ProviderApiError as exc:
            if exc.status_code == 400:
                raise ReauthRequired() from exc
            raise

        try:
            payload = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ProviderApiError(
                f"{self.DISPLAY_NAME} token endpoint returned an unexpected body",
                response.status_code,
            ) from exc

        if payload.expires_at is not None:
            expires_at = datetime.fromtimestamp(payload.expires_at, tz=timezone.utc)
        else:
            expires_at = utc_now() + timedelta(seconds=payload.expires_in or 3600)

        return OAuthTokenSet(
            provider=self.PROVIDER,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token or refresh_token,
            expires_at=expires_at,
            token_type=payload.token_type,
            scope=payload.scope.split() if payload.scope else [],
        )
