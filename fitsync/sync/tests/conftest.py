"""Shared fixtures and canned provider responses for sync engine tests."""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import pytest

from fitsync.config import Settings
from fitsync.services.store import InMemoryDocumentStore
from fitsync.sync.adapters import build_adapters
from fitsync.sync.base import OAuthTokenSet, Provider
from fitsync.sync.config_loader import RateLimitConfig, load_rate_limit_config

# Canonical test user and instant
TEST_USER_ID = "user-123"
TEST_DATE = date(2026, 2, 23)
TEST_NOW = datetime(2026, 2, 23, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected wherever the engine reads the time."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeProviderApi:
    """Routes httpx requests to canned responses by URL path fragment.

    Routes are checked in insertion order; the first fragment contained in
    the request path wins.  A route body may be a callable taking the
    request, for responses that depend on the request, or an exception
    to raise from the transport.
    """

    def __init__(self) -> None:
        self.routes: list[tuple[str, int, Any]] = []
        self.requests: list[httpx.Request] = []

    def add(self, fragment: str, body: Any = None, status: int = 200) -> None:
        self.routes.append((fragment, status, body))

    def calls(self, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if fragment in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for fragment, status, body in self.routes:
            if fragment in request.url.path:
                if isinstance(body, Exception):
                    raise body
                if callable(body):
                    body = body(request)
                return httpx.Response(status, json=body if body is not None else {})
        return httpx.Response(404, json={"errors": [{"message": "not found"}]})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------


def profile_doc(
    providers: tuple[Provider, ...] = (Provider.FITBIT,),
    tier: str = "free",
    timezone_name: str | None = "UTC",
    last_sync: datetime | None = TEST_NOW - timedelta(hours=1),
) -> dict:
    """A ``users/{uid}`` document with the given providers connected."""
    return {
        "subscriptionTier": tier,
        "timezone": timezone_name,
        "connectedProviders": [
            {"id": p.value, "name": p.value.title(), "connectedAt": "2026-01-01T00:00:00+00:00"}
            for p in providers
        ],
        "lastSuccessfulSync": (
            {p.value: last_sync.isoformat() for p in providers} if last_sync else {}
        ),
    }


def token_set(
    provider: Provider,
    expires_at: datetime = TEST_NOW + timedelta(hours=6),
    access_token: str = "access-ok",
) -> OAuthTokenSet:
    return OAuthTokenSet(
        provider=provider,
        access_token=access_token,
        refresh_token="refresh-ok",
        expires_at=expires_at,
        scope=["activity"],
    )


def seed_user(
    store: InMemoryDocumentStore,
    providers: tuple[Provider, ...] = (Provider.FITBIT,),
    with_tokens: bool = True,
    **profile_kwargs: Any,
) -> None:
    """Write a profile (and optionally tokens) straight into the in-memory store."""
    store._docs[f"users/{TEST_USER_ID}"] = profile_doc(providers, **profile_kwargs)
    if with_tokens:
        for p in providers:
            store._docs[f"users/{TEST_USER_ID}/tokens/{p.value}"] = token_set(p).to_document()


# ---------------------------------------------------------------------------
# Canned provider payloads
# ---------------------------------------------------------------------------


def fitbit_daily_body(day: str = TEST_DATE.isoformat()) -> dict:
    return {
        "activities": [
            {
                "logId": 9001,
                "name": "Pool Swim",
                "activityParentName": "Swim",
                "startDate": day,
                "startTime": "07:30",
                "hasStartTime": True,
                "duration": 1800000,
                "distance": 1.0,
                "calories": 250,
            },
            {
                "logId": 9002,
                "name": "Walk",
                "startDate": day,
                "startTime": "12:00",
                "duration": 900000,
                "distance": 0.8,
                "steps": 1500,
            },
        ],
        "summary": {
            "steps": 10234,
            "caloriesOut": 2450,
            "fairlyActiveMinutes": 20,
            "veryActiveMinutes": 15,
            "distances": [
                {"activity": "total", "distance": 5.0},
                {"activity": "tracker", "distance": 4.8},
            ],
        },
    }


def fitbit_heart_body(day: str = TEST_DATE.isoformat()) -> dict:
    return {
        "activities-heart": [
            {
                "dateTime": day,
                "value": {
                    "restingHeartRate": 58,
                    "heartRateZones": [
                        {"name": "Out of Range", "min": 30, "max": 98, "minutes": 1200, "caloriesOut": 1500.5},
                        {"name": "Fat Burn", "min": 98, "max": 137, "minutes": 60},
                    ],
                },
            }
        ],
        "activities-heart-intraday": {
            "dataset": [{"time": "00:00:00", "value": 62}, {"time": "00:01:00", "value": 61}],
            "datasetInterval": 1,
            "datasetType": "minute",
        },
    }


def fitbit_sleep_body(day: str = TEST_DATE.isoformat()) -> dict:
    return {
        "sleep": [
            {
                "logId": 111,
                "dateOfSleep": day,
                "startTime": f"{day}T00:10:00.000",
                "endTime": f"{day}T07:05:00.000",
                "duration": 24900000,
                "minutesAsleep": 380,
                "minutesAwake": 35,
                "timeInBed": 415,
                "efficiency": 92,
                "type": "stages",
                "isMainSleep": True,
                "levels": {"summary": {"deep": {"count": 4, "minutes": 80}}},
            },
            {
                "logId": 112,
                "dateOfSleep": day,
                "startTime": f"{day}T14:00:00.000",
                "endTime": f"{day}T14:40:00.000",
                "duration": 2400000,
                "minutesAsleep": 35,
                "type": "classic",
                "isMainSleep": False,
            },
        ]
    }


def fitbit_logged_body(day: str = TEST_DATE.isoformat()) -> dict:
    return {
        "activities": [
            {
                "logId": 7001,
                "activityName": "Run",
                "startTime": f"{day}T06:15:00.000-08:00",
                "duration": 2400000,
                "activeDuration": 2300000,
                "distance": 5.0,
                "distanceUnit": "Kilometer",
                "calories": 420,
                "steps": 6000,
                "averageHeartRate": 151,
            },
            {
                "logId": 7002,
                "activityName": "Swim",
                "startTime": f"{day}T07:30:00.000-08:00",
                "duration": 1800000,
            },
        ]
    }


def strava_activity(activity_id: int, **overrides: Any) -> dict:
    body = {
        "id": activity_id,
        "name": "Morning Ride",
        "type": "Ride",
        "sport_type": "GravelRide",
        "distance": 32100.5,
        "moving_time": 4000,
        "elapsed_time": 4300,
        "total_elevation_gain": 310.0,
        "start_date": "2026-02-23T14:00:00Z",
        "start_date_local": "2026-02-23T06:00:00Z",
        "timezone": "(GMT-08:00) America/Los_Angeles",
        "average_heartrate": 140.2,
        "max_heartrate": 171.0,
        "map": {"summary_polyline": "abc123"},
    }
    body.update(overrides)
    return body


def google_session(session_id: str, activity_type: int = 8, start_ms: int = 1771855200000) -> dict:
    # 1771855200000 == 2026-02-23T14:00:00Z
    return {
        "id": session_id,
        "name": None,
        "startTimeMillis": str(start_ms),
        "endTimeMillis": str(start_ms + 1_800_000),
        "activityType": activity_type,
        "activeTimeMillis": "1700000",
    }


def google_aggregate_body(request: httpx.Request) -> dict:
    """Aggregate response echoing the requested data type."""
    name = json.loads(request.content)["aggregateBy"][0]["dataTypeName"]
    if name == "com.google.heart_rate.bpm":
        value = [{"fpVal": 142.5}, {"fpVal": 170.0}, {"fpVal": 95.0}]
    elif name == "com.google.step_count.delta":
        value = [{"intVal": 4200}]
    else:
        value = [{"fpVal": 5000.0 if "distance" in name else 320.0}]
    return {
        "bucket": [
            {
                "startTimeMillis": "1771855200000",
                "endTimeMillis": "1771857000000",
                "dataset": [{"dataSourceId": "derived", "point": [{"dataTypeName": name, "value": value}]}],
            }
        ]
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, with no retry backoff."""
    return Settings(
        _env_file=None,
        database_url=None,
        fitbit_client_id="fitbit-client",
        fitbit_client_secret="fitbit-secret",
        strava_client_id="strava-client",
        strava_client_secret="strava-secret",
        google_client_id="google-client",
        google_client_secret="google-secret",
        fitbit_locale="en_US",
        retry_backoff_seconds=0.0,
    )


@pytest.fixture
def rate_limit_config() -> RateLimitConfig:
    """Load the real rate-limit table for tests."""
    return load_rate_limit_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def api() -> FakeProviderApi:
    return FakeProviderApi()


@pytest.fixture
def adapters_factory(settings: Settings, api: FakeProviderApi) -> Callable[[], dict]:
    """Build all adapters around the fake API's transport."""

    def _build() -> dict:
        return build_adapters(settings, api.client())

    return _build
