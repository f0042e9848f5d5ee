"""Fitbit Web API adapter.

Uses OAuth2 with HTTP Basic client authentication on the token endpoint.

Environment variables:
    FITBIT_CLIENT_ID     — OAuth2 client ID
    FITBIT_CLIENT_SECRET — OAuth2 client secret
    FITBIT_LOCALE        — Accept-Language sent with data requests; decides
                           the distance unit of date-scoped endpoints
                           (en_US: miles, everything else: kilometers)

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/activities/date/{date}.json                  — Daily summary and the day's activities
    /1/user/-/activities/heart/date/{date}/1d/{detail}.json — Heart rate (zones + intraday)
    /1.2/user/-/sleep/date/{date}.json                     — Sleep logs
    /1/user/-/activities/list.json                         — Logged activities
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from fitsync.sync.base import OAuthTokenSet, Provider, ProviderAdapter
from fitsync.sync.payloads import (
    FitbitActivityListResponse,
    FitbitDailyActivityResponse,
    FitbitDayActivity,
    FitbitHeartRateResponse,
    FitbitSleepResponse,
)

logger = logging.getLogger("fitsync.sync.fitbit")

_FITBIT_API_BASE = "https://api.fitbit.com"
_FITBIT_TOKEN_URL = "https://api.fitbit.com/oauth2/token"

_LOGGED_ACTIVITY_PAGE_LIMIT = 100
_HEART_RATE_DETAIL_LEVELS = ("1sec", "1min", "5min", "15min")


def distance_unit_for_locale(locale: str) -> str:
    """Unit Fitbit uses for date-scoped distances under ``locale``."""
    return "mile" if locale == "en_US" else "km"


class FitbitAdapter(ProviderAdapter):
    """Fitbit Web API adapter.

    Every data call is scoped to a single calendar date in the user's
    Fitbit time zone.  The orchestrator spends one rate-limit slot per date.
    """

    PROVIDER = Provider.FITBIT
    DISPLAY_NAME = "Fitbit"
    TOKEN_URL = _FITBIT_TOKEN_URL

    @property
    def locale(self) -> str:
        return self._settings.fitbit_locale

    @property
    def distance_unit(self) -> str:
        return distance_unit_for_locale(self.locale)

    def _build_headers(self, access_token: str) -> dict[str, str]:
        headers = super()._build_headers(access_token)
        headers["Accept-Language"] = self.locale
        headers["Accept-Locale"] = self.locale
        return headers

    async def refresh_token(self, refresh_token: str) -> OAuthTokenSet:
        """Refresh a Fitbit access token (Basic auth with client credentials)."""
        logger.info("Fitbit: refreshing access token")
        return await self._refresh(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            refresh_token,
            auth=(self._settings.fitbit_client_id, self._settings.fitbit_client_secret),
        )

    # ------------------------------------------------------------------
    # Data endpoints
    # ------------------------------------------------------------------

    async def fetch_daily_summary(self, access_token: str, day: date) -> FitbitDailyActivityResponse:
        """Fetch the daily activity summary for ``day``."""
        return await self._request(
            "GET",
            f"{_FITBIT_API_BASE}/1/user/-/activities/date/{day.isoformat()}.json",
            access_token,
            FitbitDailyActivityResponse,
        )

    async def fetch_heart_rate(
        self, access_token: str, day: date, detail: str = "1min"
    ) -> FitbitHeartRateResponse:
        """Fetch resting heart rate, zones and the intraday series for ``day``.

        Args:
            access_token: Valid Fitbit access token.
            day:          Date to fetch.
            detail:       Intraday detail level (1sec, 1min, 5min or 15min).
        """
        if detail not in _HEART_RATE_DETAIL_LEVELS:
            raise ValueError(f"Unsupported heart-rate detail level: {detail!r}")
        return await self._request(
            "GET",
            f"{_FITBIT_API_BASE}/1/user/-/activities/heart/date/{day.isoformat()}/1d/{detail}.json",
            access_token,
            FitbitHeartRateResponse,
        )

    async def fetch_sleep(self, access_token: str, day: date) -> FitbitSleepResponse:
        """Fetch all sleep logs (main sleep and naps) for ``day``."""
        return await self._request(
            "GET",
            f"{_FITBIT_API_BASE}/1.2/user/-/sleep/date/{day.isoformat()}.json",
            access_token,
            FitbitSleepResponse,
        )

    async def fetch_swims(self, access_token: str, day: date) -> list[FitbitDayActivity]:
        """Fetch the day's activities whose name marks them as swims.

        Entries carry a local ``startDate``/``startTime`` and a distance in
        the locale's unit.
        """
        response = await self.fetch_daily_summary(access_token, day)
        swims = [
            a
            for a in response.activities
            if "swim" in (a.name or "").lower()
            or "swim" in (a.activity_parent_name or "").lower()
        ]
        logger.debug("Fitbit: %d swim(s) on %s", len(swims), day)
        return swims

    async def fetch_logged_activities(
        self, access_token: str, day: date
    ) -> FitbitActivityListResponse:
        """Fetch activity logs that started on ``day``.

        The list endpoint pages backwards from ``beforeDate``; one page of
        the newest entries before ``day + 1`` is filtered down to ``day``.
        """
        response = await self._request(
            "GET",
            f"{_FITBIT_API_BASE}/1/user/-/activities/list.json",
            access_token,
            FitbitActivityListResponse,
            params={
                "beforeDate": (day + timedelta(days=1)).isoformat(),
                "sort": "desc",
                "limit": _LOGGED_ACTIVITY_PAGE_LIMIT,
                "offset": 0,
            },
        )
        prefix = day.isoformat()
        response.activities = [a for a in response.activities if a.start_time.startswith(prefix)]
        return response
