"""Google Fit REST API adapter.

Uses Google OAuth2.

Environment variables:
    GOOGLE_CLIENT_ID     — OAuth2 client ID
    GOOGLE_CLIENT_SECRET — OAuth2 client secret

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    /sessions          — Activity sessions in a time window
    /dataset:aggregate — Per-session metric totals (distance, calories, steps, heart rate)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fitsync.sync.base import OAuthTokenSet, Provider, ProviderAdapter
from fitsync.sync.payloads import (
    GoogleFitAggregateResponse,
    GoogleFitSession,
    GoogleFitSessionsResponse,
)

logger = logging.getLogger("fitsync.sync.google_fit")

_GOOGLE_FIT_API_BASE = "https://www.googleapis.com/fitness/v1/users/me"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

DISTANCE_DELTA = "com.google.distance.delta"
CALORIES_EXPENDED = "com.google.calories.expended"
STEP_COUNT_DELTA = "com.google.step_count.delta"
HEART_RATE_BPM = "com.google.heart_rate.bpm"

_MAX_SESSION_PAGES = 10


def _rfc3339(instant: datetime) -> str:
    return instant.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class GoogleFitAdapter(ProviderAdapter):
    """Google Fit adapter.

    Sessions carry only timing and activity type; every metric is a
    separate ``dataset:aggregate`` call over the session's time span.
    """

    PROVIDER = Provider.GOOGLE_FIT
    DISPLAY_NAME = "Google Fit"
    TOKEN_URL = _GOOGLE_TOKEN_URL

    async def refresh_token(self, refresh_token: str) -> OAuthTokenSet:
        """Refresh a Google access token.  Google does not rotate refresh tokens."""
        logger.info("Google Fit: refreshing access token")
        return await self._refresh(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._settings.google_client_id,
                "client_secret": self._settings.google_client_secret,
            },
            refresh_token,
        )

    async def fetch_sessions(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[GoogleFitSession]:
        """Fetch all sessions overlapping ``[start, end]``, following ``nextPageToken``."""
        params: dict = {"startTime": _rfc3339(start), "endTime": _rfc3339(end)}
        sessions: list[GoogleFitSession] = []

        for _ in range(_MAX_SESSION_PAGES):
            page = await self._request(
                "GET",
                f"{_GOOGLE_FIT_API_BASE}/sessions",
                access_token,
                GoogleFitSessionsResponse,
                params=params,
            )
            sessions.extend(page.session)
            if not page.next_page_token or not page.session:
                break
            params = {**params, "pageToken": page.next_page_token}
        else:
            logger.warning("Google Fit: session paging stopped after %d pages", _MAX_SESSION_PAGES)

        logger.info("Google Fit: fetched %d sessions", len(sessions))
        return sessions

    async def fetch_aggregate(
        self, access_token: str, data_type_name: str, start_ms: int, end_ms: int
    ) -> GoogleFitAggregateResponse:
        """Aggregate one data type over ``[start_ms, end_ms]`` into a single bucket.

        Args:
            access_token:   Valid Google access token.
            data_type_name: e.g. ``com.google.distance.delta``.
            start_ms:       Bucket start, epoch milliseconds.
            end_ms:         Bucket end, epoch milliseconds.
        """
        duration = max(end_ms - start_ms, 1)
        return await self._request(
            "POST",
            f"{_GOOGLE_FIT_API_BASE}/dataset:aggregate",
            access_token,
            GoogleFitAggregateResponse,
            json_body={
                "aggregateBy": [{"dataTypeName": data_type_name}],
                "bucketByTime": {"durationMillis": duration},
                "startTimeMillis": start_ms,
                "endTimeMillis": end_ms,
            },
        )
