"""Strava API v3 adapter.

Uses OAuth2; the client ID and secret go in the token request body and the
token response carries an absolute ``expires_at`` (epoch seconds).

Environment variables:
    STRAVA_CLIENT_ID     — OAuth2 client ID
    STRAVA_CLIENT_SECRET — OAuth2 client secret
    STRAVA_PER_PAGE      — Activities per page (default 50)
    STRAVA_MAX_PAGES     — Upper bound on pages fetched per call (default 3)

API base: https://www.strava.com/api/v3

Endpoints used:
    /athlete/activities — Activity summaries in a time window
"""

from __future__ import annotations

import logging
from datetime import datetime

from fitsync.sync.base import OAuthTokenSet, Provider, ProviderAdapter
from fitsync.sync.payloads import StravaActivity, StravaActivityPage

logger = logging.getLogger("fitsync.sync.strava")

_STRAVA_API_BASE = "https://www.strava.com/api/v3"
_STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"


class StravaAdapter(ProviderAdapter):
    """Strava API v3 adapter.

    Activity summaries are already in meters and seconds, with both a UTC
    and a local start time.
    """

    PROVIDER = Provider.STRAVA
    DISPLAY_NAME = "Strava"
    TOKEN_URL = _STRAVA_TOKEN_URL

    async def refresh_token(self, refresh_token: str) -> OAuthTokenSet:
        """Refresh a Strava access token."""
        logger.info("Strava: refreshing access token")
        return await self._refresh(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._settings.strava_client_id,
                "client_secret": self._settings.strava_client_secret,
            },
            refresh_token,
        )

    async def fetch_activities(
        self, access_token: str, after: datetime, before: datetime
    ) -> list[StravaActivity]:
        """Fetch activity summaries started in ``[after, before)``.

        Pages until a short page or ``strava_max_pages`` pages.

        Args:
            access_token: Valid Strava access token.
            after:        Window start (aware datetime).
            before:       Window end (aware datetime).

        Returns:
            Activities across all fetched pages, in API order.
        """
        per_page = self._settings.strava_per_page
        max_pages = self._settings.strava_max_pages
        activities: list[StravaActivity] = []

        for page in range(1, max_pages + 1):
            batch = await self._request(
                "GET",
                f"{_STRAVA_API_BASE}/athlete/activities",
                access_token,
                StravaActivityPage,
                params={
                    "after": int(after.timestamp()),
                    "before": int(before.timestamp()),
                    "page": page,
                    "per_page": per_page,
                },
            )
            activities.extend(batch.root)
            if len(batch.root) < per_page:
                break
        else:
            logger.warning(
                "Strava: stopped after %d pages; older activities in the window were not fetched",
                max_pages,
            )

        logger.info("Strava: fetched %d activities", len(activities))
        return activities
