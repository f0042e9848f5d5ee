"""End-to-end sync runs over the in-memory store and a fake provider API."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from fitsync.config import Settings
from fitsync.services.store import InMemoryDocumentStore
from fitsync.sync.adapters import build_adapters
from fitsync.sync.base import CallType, Provider
from fitsync.sync.config_loader import RateLimitConfig
from fitsync.sync.errors import ProfileNotFound, ProviderAuthExpired, SyncErrorKind
from fitsync.sync.orchestrator import ProviderSyncResult, SyncOrchestrator, _ProviderRun
from fitsync.sync.profile import load_profile
from fitsync.sync.rate_limiter import RateLimiter
from fitsync.sync.tests.conftest import (
    TEST_NOW,
    TEST_USER_ID,
    FakeClock,
    FakeProviderApi,
    fitbit_daily_body,
    fitbit_heart_body,
    fitbit_logged_body,
    fitbit_sleep_body,
    google_aggregate_body,
    google_session,
    seed_user,
    strava_activity,
)


@pytest.fixture
def orchestrator(
    store: InMemoryDocumentStore,
    settings: Settings,
    clock: FakeClock,
    rate_limit_config: RateLimitConfig,
    adapters_factory: Callable[[], dict],
) -> SyncOrchestrator:
    limiter = RateLimiter(store, config=rate_limit_config, settings=settings, clock=clock)
    return SyncOrchestrator(
        store, adapters_factory(), settings=settings, rate_limiter=limiter, clock=clock
    )


def _fitbit_routes(api: FakeProviderApi, status: int = 200) -> None:
    api.add("/activities/heart/date/", fitbit_heart_body(), status)
    api.add("/sleep/date/", fitbit_sleep_body(), status)
    api.add("/activities/list.json", fitbit_logged_body(), status)
    api.add("/activities/date/", fitbit_daily_body(), status)


def _by_call_type(results: list[ProviderSyncResult]) -> dict[CallType | None, ProviderSyncResult]:
    return {r.call_type: r for r in results}


async def _count(store: InMemoryDocumentStore, provider: Provider, call_type: CallType) -> int:
    profile = await load_profile(store, TEST_USER_ID)
    return profile.rate_limit_state(provider, call_type).call_count_today


# ---------------------------------------------------------------------------
# Fitbit
# ---------------------------------------------------------------------------


class TestFitbitSync:
    @pytest.mark.asyncio
    async def test_full_sync(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store)
        _fitbit_routes(api)

        results = _by_call_type(await orchestrator.sync_all(TEST_USER_ID))

        assert set(results) == {
            CallType.DAILY_ACTIVITY_SUMMARY,
            CallType.HEART_RATE_TIME_SERIES,
            CallType.SLEEP_DATA,
            CallType.SWIMMING_DATA,
            CallType.LOGGED_ACTIVITIES,
        }
        assert all(r.success and r.error_kind is None for r in results.values())
        assert results[CallType.SLEEP_DATA].records_processed == 2
        assert results[CallType.SWIMMING_DATA].records_processed == 1
        assert results[CallType.LOGGED_ACTIVITIES].records_processed == 1
        assert results[CallType.DAILY_ACTIVITY_SUMMARY].dates == ["2026-02-23"]

        activities = await store.list(f"users/{TEST_USER_ID}/activities")
        assert sorted(d["id"] for d in activities) == ["fitbit-7001", "fitbit-9001"]
        summary = await store.get(f"users/{TEST_USER_ID}/fitbit_activity_summaries/2026-02-23")
        assert summary["distanceMeters"] == pytest.approx(5 * 1609.34)

        profile = await load_profile(store, TEST_USER_ID)
        assert profile.last_successful_sync[Provider.FITBIT] == TEST_NOW

    @pytest.mark.asyncio
    async def test_free_tier_back_to_back_runs(
        self,
        orchestrator: SyncOrchestrator,
        store: InMemoryDocumentStore,
        api: FakeProviderApi,
        clock: FakeClock,
    ) -> None:
        """The second run on the same day is rate limited and calls nothing."""
        seed_user(store)
        _fitbit_routes(api)

        await orchestrator.sync_all(TEST_USER_ID)
        calls_after_first = len(api.requests)
        clock.advance(hours=1)
        second = await orchestrator.sync_all(TEST_USER_ID)

        assert len(api.requests) == calls_after_first
        assert len(second) == 5
        for result in second:
            assert not result.success
            assert result.error_kind is SyncErrorKind.RATE_LIMIT_EXCEEDED
            assert not result.is_failure
            assert result.retry_at == datetime(2026, 2, 24, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_next_day_is_allowed_again(
        self,
        orchestrator: SyncOrchestrator,
        store: InMemoryDocumentStore,
        api: FakeProviderApi,
        clock: FakeClock,
    ) -> None:
        seed_user(store)
        _fitbit_routes(api)

        await orchestrator.sync_all(TEST_USER_ID)
        clock.advance(days=1)
        results = await orchestrator.sync_all(TEST_USER_ID)
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_window_longer_than_budget_is_partial(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        """Newest date is synced; older dates wait for tomorrow's budget."""
        seed_user(store, last_sync=TEST_NOW - timedelta(days=2))
        _fitbit_routes(api)

        results = _by_call_type(await orchestrator.sync_all(TEST_USER_ID))

        daily = results[CallType.DAILY_ACTIVITY_SUMMARY]
        assert daily.success
        assert daily.dates == ["2026-02-23"]
        assert "2 older date(s) skipped" in daily.message
        assert len(api.calls("/activities/date/2026-02-22.json")) == 0

        profile = await load_profile(store, TEST_USER_ID)
        assert profile.last_successful_sync[Provider.FITBIT] == TEST_NOW - timedelta(days=2)

    @pytest.mark.asyncio
    async def test_401_clears_tokens_once(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store)
        _fitbit_routes(api, status=401)
        invalidate = AsyncMock(wraps=orchestrator._tokens.invalidate)

        with patch.object(orchestrator._tokens, "invalidate", invalidate):
            results = await orchestrator.sync_all(TEST_USER_ID)

        assert len(results) == 5
        assert all(r.error_kind is SyncErrorKind.PROVIDER_AUTH_EXPIRED for r in results)
        assert all("reconnect" in r.message for r in results)
        invalidate.assert_awaited_once_with(TEST_USER_ID, Provider.FITBIT)
        assert await store.get(f"users/{TEST_USER_ID}/tokens/fitbit") is None

        profile = await load_profile(store, TEST_USER_ID)
        assert profile.last_successful_sync[Provider.FITBIT] == TEST_NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_empty_day_is_no_data(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store)
        api.add("/activities/heart/date/", {"activities-heart": []})
        api.add("/sleep/date/", {"sleep": []})
        api.add("/activities/list.json", {"activities": []})
        api.add("/activities/date/", {"activities": []})

        results = await orchestrator.sync_provider(TEST_USER_ID, Provider.FITBIT)
        assert all(r.error_kind is SyncErrorKind.NO_DATA_FOUND for r in results)
        assert all(r.success and not r.is_failure for r in results)


# ---------------------------------------------------------------------------
# Strava
# ---------------------------------------------------------------------------


class TestStravaSync:
    @pytest.mark.asyncio
    async def test_activities_synced(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store, (Provider.STRAVA,))
        api.add("/athlete/activities", [strava_activity(1), strava_activity(2, type="Run", sport_type="Run")])

        [result] = await orchestrator.sync_provider(TEST_USER_ID, Provider.STRAVA)

        assert result.success
        assert result.call_type is CallType.ACTIVITIES
        assert result.records_processed == 2
        assert result.dates == ["2026-02-23"]
        params = api.calls("/athlete/activities")[0].url.params
        assert params["after"] == str(int((TEST_NOW - timedelta(hours=1)).timestamp()))
        assert params["before"] == str(int(TEST_NOW.timestamp()))
        stored = await store.get(f"users/{TEST_USER_ID}/activities/strava-2")
        assert stored["type"] == "running"

    @pytest.mark.asyncio
    async def test_provider_error_is_isolated(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        """A Strava outage does not affect the Fitbit and Google Fit results of the same run."""
        seed_user(store, (Provider.FITBIT, Provider.STRAVA, Provider.GOOGLE_FIT))
        _fitbit_routes(api)
        api.add("/athlete/activities", {"message": "down"}, status=500)
        api.add("/sessions", {"session": [google_session("run-1")]})
        api.add("dataset:aggregate", google_aggregate_body)

        results = await orchestrator.sync_all(TEST_USER_ID)

        strava = [r for r in results if r.provider is Provider.STRAVA]
        fitbit = [r for r in results if r.provider is Provider.FITBIT]
        google = [r for r in results if r.provider is Provider.GOOGLE_FIT]
        assert len(strava) == 1
        assert strava[0].error_kind is SyncErrorKind.PROVIDER_API_ERROR
        assert strava[0].is_failure
        assert len(api.calls("/athlete/activities")) == 2  # one retry
        assert fitbit and all(r.success for r in fitbit)
        assert google and all(r.success for r in google)
        assert await store.get(f"users/{TEST_USER_ID}/activities/google-fit-run-1") is not None
        assert await store.get(f"users/{TEST_USER_ID}/fitbit_sleep/111") is not None

        # The request reached Strava, so the slot stays spent
        assert await _count(store, Provider.STRAVA, CallType.ACTIVITIES) == 1
        profile = await load_profile(store, TEST_USER_ID)
        assert profile.last_successful_sync[Provider.FITBIT] == TEST_NOW
        assert profile.last_successful_sync[Provider.GOOGLE_FIT] == TEST_NOW
        assert profile.last_successful_sync[Provider.STRAVA] == TEST_NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_missing_tokens_release_the_slot(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store, (Provider.STRAVA,), with_tokens=False)

        [result] = await orchestrator.sync_provider(TEST_USER_ID, Provider.STRAVA)

        assert result.error_kind is SyncErrorKind.PROVIDER_AUTH_EXPIRED
        assert api.requests == []
        assert await _count(store, Provider.STRAVA, CallType.ACTIVITIES) == 0

    @pytest.mark.asyncio
    async def test_connect_failure_releases_the_slot(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store, (Provider.STRAVA,))
        api.add("/athlete/activities", httpx.ConnectError("connection refused"))

        [result] = await orchestrator.sync_provider(TEST_USER_ID, Provider.STRAVA)

        assert result.error_kind is SyncErrorKind.PROVIDER_API_ERROR
        assert await _count(store, Provider.STRAVA, CallType.ACTIVITIES) == 0

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_before_call(
        self,
        orchestrator: SyncOrchestrator,
        store: InMemoryDocumentStore,
        api: FakeProviderApi,
    ) -> None:
        seed_user(store, (Provider.STRAVA,))
        doc = await store.get(f"users/{TEST_USER_ID}/tokens/strava")
        doc["expiresAt"] = (TEST_NOW - timedelta(minutes=1)).isoformat()
        await store.set(f"users/{TEST_USER_ID}/tokens/strava", doc, merge=False)
        api.add(
            "/oauth/token",
            {"access_token": "fresh", "refresh_token": "r2", "expires_in": 21600, "token_type": "Bearer"},
        )
        api.add("/athlete/activities", [])

        [result] = await orchestrator.sync_provider(TEST_USER_ID, Provider.STRAVA)

        assert result.error_kind is SyncErrorKind.NO_DATA_FOUND
        assert api.calls("/athlete/activities")[0].headers["Authorization"] == "Bearer fresh"


# ---------------------------------------------------------------------------
# Google Fit
# ---------------------------------------------------------------------------


class TestGoogleFitSync:
    @pytest.mark.asyncio
    async def test_aggregate_budget_exhaustion(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        """Sessions are stored even when the aggregate budget runs out mid-run."""
        seed_user(store, (Provider.GOOGLE_FIT,))
        api.add(
            "/sessions",
            {
                "session": [
                    google_session("run-1", activity_type=8),
                    google_session("sleep-1", activity_type=72),
                    google_session("run-2", activity_type=8, start_ms=1771858800000),
                ]
            },
        )
        api.add("dataset:aggregate", google_aggregate_body)

        results = _by_call_type(await orchestrator.sync_provider(TEST_USER_ID, Provider.GOOGLE_FIT))

        sessions = results[CallType.SESSIONS]
        aggregate = results[CallType.AGGREGATE_DATA]
        assert sessions.success
        assert sessions.records_processed == 2
        assert aggregate.success
        assert aggregate.records_processed == 5  # free tier budget
        assert "limit reached" in aggregate.message
        assert len(api.calls("dataset:aggregate")) == 5

        first = await store.get(f"users/{TEST_USER_ID}/activities/google-fit-run-1")
        second = await store.get(f"users/{TEST_USER_ID}/activities/google-fit-run-2")
        assert first["steps"] == 4200
        assert first["averageHeartRateBpm"] == 142.5
        assert second["distanceMeters"] == 5000.0
        assert "calories" not in second
        assert await store.get(f"users/{TEST_USER_ID}/activities/google-fit-sleep-1") is None

        profile = await load_profile(store, TEST_USER_ID)
        assert profile.last_successful_sync[Provider.GOOGLE_FIT] == TEST_NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_aggregate_401_stops_further_calls(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store, (Provider.GOOGLE_FIT,))
        api.add("/sessions", {"session": [google_session("run-1"), google_session("run-2")]})
        api.add("dataset:aggregate", {"error": {"code": 401}}, status=401)

        results = _by_call_type(await orchestrator.sync_provider(TEST_USER_ID, Provider.GOOGLE_FIT))

        assert results[CallType.SESSIONS].error_kind is SyncErrorKind.PROVIDER_AUTH_EXPIRED
        assert results[CallType.AGGREGATE_DATA].error_kind is SyncErrorKind.PROVIDER_AUTH_EXPIRED
        assert len(api.calls("dataset:aggregate")) == 1
        assert await store.get(f"users/{TEST_USER_ID}/tokens/google-fit") is None

    @pytest.mark.asyncio
    async def test_no_sessions_skips_aggregates(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store, (Provider.GOOGLE_FIT,))
        api.add("/sessions", {"session": []})

        results = await orchestrator.sync_provider(TEST_USER_ID, Provider.GOOGLE_FIT)

        assert [r.call_type for r in results] == [CallType.SESSIONS]
        assert results[0].error_kind is SyncErrorKind.NO_DATA_FOUND
        assert api.calls("dataset:aggregate") == []


# ---------------------------------------------------------------------------
# Run-level behaviour
# ---------------------------------------------------------------------------


class TestRunLevel:
    @pytest.mark.asyncio
    async def test_missing_profile_raises(self, orchestrator: SyncOrchestrator) -> None:
        with pytest.raises(ProfileNotFound) as exc_info:
            await orchestrator.sync_all("nobody")
        assert exc_info.value.kind is SyncErrorKind.PROVIDER_NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_no_connected_providers(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore
    ) -> None:
        seed_user(store, ())
        assert await orchestrator.sync_all(TEST_USER_ID) == []

    @pytest.mark.asyncio
    async def test_unconnected_provider(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore
    ) -> None:
        seed_user(store)
        [result] = await orchestrator.sync_provider(TEST_USER_ID, Provider.STRAVA)
        assert result.error_kind is SyncErrorKind.PROVIDER_NOT_CONNECTED
        assert result.call_type is None
        assert result.is_failure
        assert result.message.startswith("strava is not connected")

    @pytest.mark.asyncio
    async def test_tripped_run_does_not_dispatch(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore
    ) -> None:
        seed_user(store, (Provider.STRAVA,))
        profile = await load_profile(store, TEST_USER_ID)
        run = _ProviderRun(
            profile=profile,
            provider=Provider.STRAVA,
            started_at=TEST_NOW,
            window_start=TEST_NOW - timedelta(hours=1),
            tz="UTC",
            auth_failed=True,
        )
        call = AsyncMock()

        with pytest.raises(ProviderAuthExpired):
            await orchestrator._dispatch(run, CallType.ACTIVITIES, call)
        call.assert_not_called()
        assert await _count(store, Provider.STRAVA, CallType.ACTIVITIES) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_result(
        self, orchestrator: SyncOrchestrator, store: InMemoryDocumentStore, api: FakeProviderApi
    ) -> None:
        seed_user(store, (Provider.STRAVA,))
        api.add("/athlete/activities", [])

        with patch(
            "fitsync.sync.normalizer.strava_activities",
            side_effect=RuntimeError("boom"),
        ):
            [result] = await orchestrator.sync_provider(TEST_USER_ID, Provider.STRAVA)

        assert result.error_kind is SyncErrorKind.UNEXPECTED_ERROR
        assert "boom" not in result.message


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def _orchestrator_over(
    handler: Callable,
    store: InMemoryDocumentStore,
    settings: Settings,
    clock: FakeClock,
    rate_limit_config: RateLimitConfig,
) -> SyncOrchestrator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    limiter = RateLimiter(store, config=rate_limit_config, settings=settings, clock=clock)
    return SyncOrchestrator(
        store, build_adapters(settings, client), settings=settings, rate_limiter=limiter, clock=clock
    )


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_dispatch_releases_the_slot(
        self,
        store: InMemoryDocumentStore,
        settings: Settings,
        clock: FakeClock,
        rate_limit_config: RateLimitConfig,
    ) -> None:
        """Cancelled while the token refresh hangs: Strava was never asked for data."""
        seed_user(store, (Provider.STRAVA,))
        doc = await store.get(f"users/{TEST_USER_ID}/tokens/strava")
        doc["expiresAt"] = (TEST_NOW - timedelta(minutes=1)).isoformat()
        await store.set(f"users/{TEST_USER_ID}/tokens/strava", doc, merge=False)

        paths: list[str] = []
        refreshing = asyncio.Event()
        unblock = asyncio.Event()

        async def _handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path.endswith("/oauth/token"):
                refreshing.set()
                await unblock.wait()
                return httpx.Response(
                    200,
                    json={"access_token": "fresh", "refresh_token": "r2", "expires_in": 21600, "token_type": "Bearer"},
                )
            return httpx.Response(200, json=[])

        orchestrator = _orchestrator_over(_handler, store, settings, clock, rate_limit_config)
        run = asyncio.create_task(orchestrator.sync_all(TEST_USER_ID))
        await asyncio.wait_for(refreshing.wait(), timeout=1)

        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run

        assert await _count(store, Provider.STRAVA, CallType.ACTIVITIES) == 0
        assert not any("/athlete/activities" in p for p in paths)

        # Let the shared refresh finish so no task outlives the test
        unblock.set()
        await asyncio.sleep(0.01)

    @pytest.mark.asyncio
    async def test_cancel_after_dispatch_keeps_the_slot(
        self,
        store: InMemoryDocumentStore,
        settings: Settings,
        clock: FakeClock,
        rate_limit_config: RateLimitConfig,
    ) -> None:
        seed_user(store, (Provider.STRAVA,))
        dispatched = asyncio.Event()

        async def _handler(request: httpx.Request) -> httpx.Response:
            dispatched.set()
            await asyncio.Event().wait()  # never answers
            return httpx.Response(200, json=[])

        orchestrator = _orchestrator_over(_handler, store, settings, clock, rate_limit_config)
        run = asyncio.create_task(orchestrator.sync_all(TEST_USER_ID))
        await asyncio.wait_for(dispatched.wait(), timeout=1)

        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run

        assert await _count(store, Provider.STRAVA, CallType.ACTIVITIES) == 1
        profile = await load_profile(store, TEST_USER_ID)
        assert profile.last_successful_sync[Provider.STRAVA] == TEST_NOW - timedelta(hours=1)
