"""Sync orchestration: fan out over connected providers, fan results back in.

Every (provider, call type) runs the same pipeline:

1. Reserve a rate-limit slot (denied -> RATE_LIMIT_EXCEEDED, no provider call)
2. Get a valid access token (refreshing if needed)
3. Fetch from the provider adapter
4. Normalize to canonical records
5. Upsert into the document store
6. Commit the reservation (or release it if nothing was sent)

Providers run concurrently and so do the call types of a provider, except
Google Fit, whose aggregate calls depend on the sessions result.  Each
pipeline turns its own exceptions into a ``ProviderSyncResult``; nothing
crosses a provider boundary.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Mapping, TypeVar

from fitsync.config import Settings, get_settings
from fitsync.services.store import DocumentStore
from fitsync.sync import normalizer
from fitsync.sync.adapters.fitbit import FitbitAdapter
from fitsync.sync.adapters.google_fit import (
    CALORIES_EXPENDED,
    DISTANCE_DELTA,
    GoogleFitAdapter,
    HEART_RATE_BPM,
    STEP_COUNT_DELTA,
)
from fitsync.sync.adapters.strava import StravaAdapter
from fitsync.sync.base import ActivityType, CallType, Provider, ProviderAdapter, utc_now
from fitsync.sync.errors import (
    ProviderApiError,
    ProviderAuthExpired,
    ProviderNotConnected,
    RateLimitExceeded,
    ReauthRequired,
    SyncError,
    SyncErrorKind,
)
from fitsync.sync.payloads import GoogleFitSession
from fitsync.sync.persister import Persister
from fitsync.sync.profile import UserSyncProfile, load_profile, record_successful_sync
from fitsync.sync.rate_limiter import RateLimiter
from fitsync.sync.tokens import TokenManager, TokenStore

logger = logging.getLogger("fitsync.sync.orchestrator")

T = TypeVar("T")

FITBIT_CALL_TYPES: tuple[CallType, ...] = (
    CallType.DAILY_ACTIVITY_SUMMARY,
    CallType.HEART_RATE_TIME_SERIES,
    CallType.SLEEP_DATA,
    CallType.SWIMMING_DATA,
    CallType.LOGGED_ACTIVITIES,
)


@dataclass
class ProviderSyncResult:
    """Outcome of one (provider, call type) pipeline.

    Attributes:
        provider:          Provider synced.
        call_type:         Call type, or None for provider-level outcomes
                           (e.g. not connected).
        success:           False for failures and rate-limit denials.
        message:           Human-readable summary.
        records_processed: Records written to the store.
        error_kind:        Classification when not a plain success.
        dates:             ``YYYY-MM-DD`` dates the records cover.
        retry_at:          Next budget reset when rate limited.
    """

    provider: Provider
    call_type: CallType | None
    success: bool
    message: str
    records_processed: int = 0
    error_kind: SyncErrorKind | None = None
    dates: list[str] = field(default_factory=list)
    retry_at: datetime | None = None

    @property
    def is_failure(self) -> bool:
        return not self.success and (self.error_kind is None or self.error_kind.is_failure)


@dataclass
class _Progress:
    """Mutable tally a pipeline body fills in as it goes."""

    records: int = 0
    dates: set[str] = field(default_factory=set)
    note: str | None = None
    complete: bool = True

    def add(self, count: int, dates: list[str] | str | None = None) -> None:
        self.records += count
        if isinstance(dates, str):
            self.dates.add(dates)
        elif dates:
            self.dates.update(dates)


@dataclass
class _ProviderRun:
    """State shared by the call types of one provider within one run."""

    profile: UserSyncProfile
    provider: Provider
    started_at: datetime
    window_start: datetime
    tz: str
    auth_failed: bool = False
    incomplete: bool = False
    auth_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def user_id(self) -> str:
        return self.profile.user_id


class SyncOrchestrator:
    """Runs sync pipelines for a user's connected providers.

    Usage::

        orchestrator = SyncOrchestrator(store, build_adapters(settings, client))
        results = await orchestrator.sync_all(user_id)
    """

    def __init__(
        self,
        store: DocumentStore,
        adapters: Mapping[Provider, ProviderAdapter],
        settings: Settings | None = None,
        rate_limiter: RateLimiter | None = None,
        token_manager: TokenManager | None = None,
        persister: Persister | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._adapters = adapters
        self._clock = clock
        self._limiter = rate_limiter or RateLimiter(store, settings=self._settings, clock=clock)
        self._tokens = token_manager or TokenManager(
            TokenStore(store), adapters, settings=self._settings, clock=clock
        )
        self._persister = persister or Persister(store)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def sync_all(self, user_id: str) -> list[ProviderSyncResult]:
        """Sync every connected provider concurrently.

        Raises:
            ProfileNotFound:    The user has no profile.
            StorageUnavailable: The profile could not be read.
        """
        profile = await load_profile(self._store, user_id)
        providers = [p for p in Provider if profile.is_connected(p)]
        if not providers:
            logger.info("User %s has no connected providers", user_id)
            return []

        started_at = self._clock()
        logger.info(
            "Sync run for user %s: %s", user_id, ", ".join(p.value for p in providers)
        )
        batches = await asyncio.gather(
            *(self._sync_connected(profile, p, started_at) for p in providers)
        )
        results = [r for batch in batches for r in batch]
        logger.info(
            "Sync run for user %s done: %d results, %d failed",
            user_id, len(results), sum(1 for r in results if r.is_failure),
        )
        return results

    async def sync_provider(self, user_id: str, provider: Provider) -> list[ProviderSyncResult]:
        """Sync a single provider.

        Raises:
            ProfileNotFound:    The user has no profile.
            StorageUnavailable: The profile could not be read.
        """
        profile = await load_profile(self._store, user_id)
        if not profile.is_connected(provider):
            error = ProviderNotConnected(
                f"{provider.value} is not connected. Please connect it in your profile."
            )
            return [
                ProviderSyncResult(
                    provider=provider,
                    call_type=None,
                    success=False,
                    message=str(error),
                    error_kind=error.kind,
                )
            ]
        return await self._sync_connected(profile, provider, self._clock())

    # ------------------------------------------------------------------
    # Per-provider plans
    # ------------------------------------------------------------------

    async def _sync_connected(
        self, profile: UserSyncProfile, provider: Provider, started_at: datetime
    ) -> list[ProviderSyncResult]:
        lookback_floor = started_at - timedelta(days=self._settings.max_sync_lookback_days)
        last = profile.last_successful_sync.get(provider)
        run = _ProviderRun(
            profile=profile,
            provider=provider,
            started_at=started_at,
            window_start=max(last, lookback_floor) if last else lookback_floor,
            tz=profile.timezone or self._settings.rate_limit_timezone,
        )

        if provider is Provider.FITBIT:
            results = await self._sync_fitbit(run)
        elif provider is Provider.STRAVA:
            results = [await self._sync_strava(run)]
        else:
            results = await self._sync_google_fit(run)

        if results and all(r.success for r in results) and not run.incomplete:
            try:
                await record_successful_sync(self._store, run.user_id, provider, started_at)
            except SyncError as exc:
                logger.warning(
                    "Could not record last sync for user %s %s: %s",
                    run.user_id, provider.value, exc,
                )
        return results

    def _fitbit_dates(self, run: _ProviderRun) -> list[date]:
        """Dates in the sync window, newest first, in the user's zone."""
        zone = normalizer.resolve_zone(run.tz, self._settings.rate_limit_timezone)
        today = run.started_at.astimezone(zone).date()
        first = run.window_start.astimezone(zone).date()
        count = min((today - first).days + 1, self._settings.max_sync_lookback_days)
        return [today - timedelta(days=i) for i in range(max(count, 1))]

    async def _sync_fitbit(self, run: _ProviderRun) -> list[ProviderSyncResult]:
        adapter: FitbitAdapter = self._adapters[Provider.FITBIT]  # type: ignore[assignment]
        uid = run.user_id
        unit = adapter.distance_unit

        async def daily_summary(token: str, day: date) -> int:
            payload = await adapter.fetch_daily_summary(token, day)
            return await self._persister.upsert_daily_summary(
                uid, normalizer.fitbit_daily_summary(uid, day, payload, unit)
            )

        async def heart_rate(token: str, day: date) -> int:
            payload = await adapter.fetch_heart_rate(token, day)
            return await self._persister.upsert_heart_rate(
                uid, normalizer.fitbit_heart_rate(uid, day, payload)
            )

        async def sleep(token: str, day: date) -> int:
            payload = await adapter.fetch_sleep(token, day)
            return await self._persister.upsert_sleep(uid, normalizer.fitbit_sleep_logs(uid, payload))

        async def swims(token: str, day: date) -> int:
            payload = await adapter.fetch_swims(token, day)
            return await self._persister.upsert_activities(
                uid, normalizer.fitbit_swims(uid, payload, unit, run.tz)
            )

        async def logged(token: str, day: date) -> int:
            payload = await adapter.fetch_logged_activities(token, day)
            return await self._persister.upsert_activities(
                uid, normalizer.fitbit_logged_activities(uid, payload, run.tz)
            )

        steps = {
            CallType.DAILY_ACTIVITY_SUMMARY: daily_summary,
            CallType.HEART_RATE_TIME_SERIES: heart_rate,
            CallType.SLEEP_DATA: sleep,
            CallType.SWIMMING_DATA: swims,
            CallType.LOGGED_ACTIVITIES: logged,
        }
        dates = self._fitbit_dates(run)
        return list(
            await asyncio.gather(
                *(
                    self._run_pipeline(run, ct, self._per_date(run, ct, dates, steps[ct]))
                    for ct in FITBIT_CALL_TYPES
                )
            )
        )

    def _per_date(
        self,
        run: _ProviderRun,
        call_type: CallType,
        dates: list[date],
        step: Callable[[str, date], Awaitable[int]],
    ) -> Callable[[_Progress], Awaitable[None]]:
        """Run ``step`` once per date, one budget slot each, until a denial."""

        async def body(progress: _Progress) -> None:
            for day in dates:
                try:
                    count = await self._dispatch(run, call_type, lambda token: step(token, day))
                except RateLimitExceeded:
                    if progress.dates:
                        remaining = len(dates) - len(progress.dates)
                        progress.note = f"daily limit reached; {remaining} older date(s) skipped"
                        progress.complete = False
                        return
                    raise
                progress.add(count, day.isoformat())

        return body

    async def _sync_strava(self, run: _ProviderRun) -> ProviderSyncResult:
        adapter: StravaAdapter = self._adapters[Provider.STRAVA]  # type: ignore[assignment]
        uid = run.user_id

        async def body(progress: _Progress) -> None:
            async def fetch_and_store(token: str) -> list[str]:
                activities = await adapter.fetch_activities(token, run.window_start, run.started_at)
                records = normalizer.strava_activities(uid, activities)
                await self._persister.upsert_activities(uid, records)
                return [r.date for r in records]

            dates = await self._dispatch(run, CallType.ACTIVITIES, fetch_and_store)
            progress.add(len(dates), dates)

        return await self._run_pipeline(run, CallType.ACTIVITIES, body)

    async def _sync_google_fit(self, run: _ProviderRun) -> list[ProviderSyncResult]:
        adapter: GoogleFitAdapter = self._adapters[Provider.GOOGLE_FIT]  # type: ignore[assignment]
        uid = run.user_id
        aggregate = _Progress()
        aggregate_stats = {"attempted": 0, "failed": 0, "denied": False}

        async def fetch_metrics(session: GoogleFitSession, activity_type: ActivityType) -> dict[str, float | None]:
            metrics: dict[str, float | None] = {}
            names = [DISTANCE_DELTA, CALORIES_EXPENDED]
            if normalizer.is_step_based(activity_type):
                names.append(STEP_COUNT_DELTA)
            names.append(HEART_RATE_BPM)

            for name in names:
                if aggregate_stats["denied"]:
                    break
                aggregate_stats["attempted"] += 1
                try:
                    response = await self._dispatch(
                        run,
                        CallType.AGGREGATE_DATA,
                        lambda token, n=name: adapter.fetch_aggregate(
                            token, n, session.start_time_millis, session.end_time_millis
                        ),
                    )
                except RateLimitExceeded as exc:
                    aggregate_stats["denied"] = True
                    aggregate.complete = False
                    run.incomplete = True
                    aggregate.note = str(exc)
                    logger.info(
                        "Google Fit aggregate budget exhausted for user %s; "
                        "storing session %s without remaining metrics",
                        uid, session.id,
                    )
                    break
                except ProviderApiError as exc:
                    aggregate_stats["failed"] += 1
                    logger.warning(
                        "Google Fit aggregate %s failed for session %s: %s", name, session.id, exc
                    )
                    continue
                metrics[name] = normalizer.google_fit_metric(response, name)
                aggregate.add(1)
            return metrics

        async def sessions_body(progress: _Progress) -> None:
            sessions = await self._dispatch(
                run,
                CallType.SESSIONS,
                lambda token: adapter.fetch_sessions(token, run.window_start, run.started_at),
            )
            for session in sessions:
                if session.activity_type in normalizer.GOOGLE_FIT_SLEEP_TYPES:
                    continue
                activity_type = normalizer.classify_google_fit(session.activity_type)
                metrics = await fetch_metrics(session, activity_type)
                record = normalizer.google_fit_session(uid, session, metrics, run.tz)
                await self._persister.upsert_activities(uid, [record])
                progress.add(1, record.date)
                aggregate.dates.add(record.date)

        results = [await self._run_pipeline(run, CallType.SESSIONS, sessions_body)]

        if aggregate_stats["attempted"]:
            results.append(self._aggregate_result(run, aggregate, aggregate_stats))
        return results

    def _aggregate_result(
        self, run: _ProviderRun, progress: _Progress, stats: dict
    ) -> ProviderSyncResult:
        base = dict(
            provider=Provider.GOOGLE_FIT,
            call_type=CallType.AGGREGATE_DATA,
            records_processed=progress.records,
            dates=sorted(progress.dates, reverse=True),
        )
        if run.auth_failed:
            return ProviderSyncResult(
                success=False,
                message=ProviderAuthExpired.user_message,
                error_kind=SyncErrorKind.PROVIDER_AUTH_EXPIRED,
                **base,
            )
        if stats["denied"] and progress.records == 0:
            return ProviderSyncResult(
                success=False,
                message=progress.note or RateLimitExceeded.user_message,
                error_kind=SyncErrorKind.RATE_LIMIT_EXCEEDED,
                **base,
            )
        if stats["failed"]:
            return ProviderSyncResult(
                success=False,
                message=f"{stats['failed']} of {stats['attempted']} aggregate call(s) failed.",
                error_kind=SyncErrorKind.PROVIDER_API_ERROR,
                **base,
            )
        message = f"Fetched {progress.records} session metric(s)."
        if stats["denied"]:
            message += " Daily aggregate limit reached; remaining metrics skipped."
        return ProviderSyncResult(success=True, message=message, **base)

    # ------------------------------------------------------------------
    # Pipeline plumbing
    # ------------------------------------------------------------------

    async def _dispatch(
        self, run: _ProviderRun, call_type: CallType, call: Callable[[str], Awaitable[T]]
    ) -> T:
        """Reserve a slot, get a token, and run ``call`` with it.

        The reservation is committed once ``call`` has been started and
        released when nothing reached the provider (token failure, connect
        failure, cancellation before dispatch).

        Raises:
            RateLimitExceeded:   Budget used up; nothing was called.
            ProviderAuthExpired: Credentials rejected now or earlier this run.
        """
        if run.auth_failed:
            raise ProviderAuthExpired()

        decision = await self._limiter.check_and_reserve(
            run.user_id, run.provider, call_type, run.profile.tier
        )
        reservation = decision.reservation
        if not decision.allowed or reservation is None:
            raise RateLimitExceeded(decision.message, retry_at=decision.retry_at)

        fired = False
        try:
            token = await self._tokens.get_valid_access_token(run.user_id, run.provider)
            if run.auth_failed:
                raise ProviderAuthExpired()
            fired = True
            result = await call(token)
        except BaseException as exc:
            not_sent = isinstance(exc, ProviderApiError) and not exc.request_sent
            if fired and not not_sent:
                reservation.commit()
            else:
                try:
                    await reservation.release()
                except SyncError as release_exc:
                    logger.warning("Could not release %r: %s", reservation, release_exc)
            if isinstance(exc, ProviderAuthExpired):
                await self._trip_auth(run, exc)
            raise
        reservation.commit()
        return result

    async def _trip_auth(self, run: _ProviderRun, exc: ProviderAuthExpired) -> None:
        """Mark the provider's credentials dead for this run; clear them once."""
        async with run.auth_lock:
            if run.auth_failed:
                return
            run.auth_failed = True
            if isinstance(exc, ReauthRequired):
                return  # nothing stored, or already cleared by the token manager
            await self._tokens.invalidate(run.user_id, run.provider)

    async def _run_pipeline(
        self,
        run: _ProviderRun,
        call_type: CallType,
        body: Callable[[_Progress], Awaitable[None]],
    ) -> ProviderSyncResult:
        """Run one call type's body and convert its outcome into a result."""
        progress = _Progress()
        provider = run.provider
        try:
            await body(progress)
        except RateLimitExceeded as exc:
            run.incomplete = True
            return ProviderSyncResult(
                provider=provider,
                call_type=call_type,
                success=False,
                message=str(exc),
                records_processed=progress.records,
                error_kind=SyncErrorKind.RATE_LIMIT_EXCEEDED,
                dates=sorted(progress.dates, reverse=True),
                retry_at=exc.retry_at,
            )
        except SyncError as exc:
            logger.warning(
                "%s/%s failed for user %s: %s", provider.value, call_type.value, run.user_id, exc
            )
            return ProviderSyncResult(
                provider=provider,
                call_type=call_type,
                success=False,
                message=exc.user_message if isinstance(exc, ProviderAuthExpired) else str(exc),
                records_processed=progress.records,
                error_kind=exc.kind,
                dates=sorted(progress.dates, reverse=True),
            )
        except Exception:
            logger.exception(
                "Unexpected error in %s/%s for user %s", provider.value, call_type.value, run.user_id
            )
            return ProviderSyncResult(
                provider=provider,
                call_type=call_type,
                success=False,
                message="An unexpected error occurred. Please try again later.",
                records_processed=progress.records,
                error_kind=SyncErrorKind.UNEXPECTED_ERROR,
                dates=sorted(progress.dates, reverse=True),
            )

        if not progress.complete:
            run.incomplete = True
        dates = sorted(progress.dates, reverse=True)
        if progress.records == 0:
            message = f"No {call_type.value} data found."
            if progress.note:
                message += f" ({progress.note})"
            return ProviderSyncResult(
                provider=provider,
                call_type=call_type,
                success=True,
                message=message,
                error_kind=SyncErrorKind.NO_DATA_FOUND,
                dates=dates,
            )
        message = f"Synced {progress.records} {call_type.value} record(s)."
        if progress.note:
            message += f" Note: {progress.note}."
        return ProviderSyncResult(
            provider=provider,
            call_type=call_type,
            success=True,
            message=message,
            records_processed=progress.records,
            dates=dates,
        )
