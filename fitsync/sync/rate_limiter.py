"""Per-user, per-tier call budgets for provider APIs.

Each (provider, call type) pair has a daily budget taken from
``rate_limits.yaml`` for the user's subscription tier.  Counters live in the
profile document under ``rateLimitStats`` and reset at the calendar-day
boundary of ``Settings.rate_limit_timezone``, not on a rolling window.

``check_and_reserve()`` is a single ``DocumentStore.update`` on the profile
document, so concurrent callers cannot both take the last slot.  An allowed
decision carries a ``Reservation``: commit it once the provider call has
been dispatched, release it if the call never left the process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from fitsync.config import Settings, get_settings
from fitsync.services.store import DocumentStore, StorageError
from fitsync.sync.base import CallType, Provider, SubscriptionTier, utc_now
from fitsync.sync.config_loader import RateLimitConfig, get_rate_limit_config
from fitsync.sync.errors import ProfileNotFound, StorageUnavailable
from fitsync.sync.profile import RateLimitState, profile_path

logger = logging.getLogger("fitsync.sync.rate_limiter")


class Reservation:
    """A held rate-limit slot.

    Starts pending; ``commit()`` keeps the slot, ``release()`` gives it
    back.  Only the first of the two has any effect.
    """

    def __init__(
        self,
        limiter: "RateLimiter",
        user_id: str,
        provider: Provider,
        call_type: CallType,
        day: date,
    ) -> None:
        self._limiter = limiter
        self.user_id = user_id
        self.provider = provider
        self.call_type = call_type
        self.day = day
        self.state = "pending"

    def commit(self) -> None:
        if self.state == "pending":
            self.state = "committed"

    async def release(self) -> None:
        if self.state != "pending":
            return
        self.state = "released"
        await self._limiter._release(self)

    def __repr__(self) -> str:
        return (
            f"Reservation({self.provider.value}/{self.call_type.value}, "
            f"day={self.day.isoformat()}, state={self.state})"
        )


@dataclass
class RateLimitDecision:
    """Outcome of ``RateLimiter.check_and_reserve``.

    Attributes:
        allowed:      Whether the call may proceed.
        provider / call_type: The call that was checked.
        limit:        Calls allowed per period for the tier.
        period_hours: Length of the budget period.
        count:        Calls used today, including this one when allowed.
        retry_at:     Next budget reset (UTC) when denied.
        reservation:  Held slot when allowed.
    """

    allowed: bool
    provider: Provider
    call_type: CallType
    limit: int
    period_hours: int = 24
    count: int = 0
    retry_at: datetime | None = None
    reservation: Reservation | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.allowed and self.reservation is None:
            raise ValueError("an allowed decision must carry a reservation")

    @property
    def message(self) -> str:
        if self.allowed:
            return f"Allowed ({self.count}/{self.limit} today)"
        return (
            f"Sync skipped: daily limit of {self.limit} reached for "
            f"{self.provider.value} {self.call_type.value}."
        )


class RateLimiter:
    """Atomic check-and-increment of per-day call counters."""

    def __init__(
        self,
        store: DocumentStore,
        config: RateLimitConfig | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        s = settings or get_settings()
        self._store = store
        self._config = config
        self._tz = ZoneInfo(s.rate_limit_timezone)
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config or get_rate_limit_config()

    def local_day(self, instant: datetime) -> date:
        """Calendar date of ``instant`` in the reference zone."""
        return instant.astimezone(self._tz).date()

    def next_reset(self, instant: datetime) -> datetime:
        """Start of the next calendar day in the reference zone, as UTC."""
        tomorrow = self.local_day(instant) + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=self._tz).astimezone(ZoneInfo("UTC"))

    def effective_count(self, state: RateLimitState, now: datetime) -> int:
        if state.last_called_at is None:
            return 0
        if self.local_day(state.last_called_at) != self.local_day(now):
            return 0
        return state.call_count_today

    async def check_and_reserve(
        self,
        user_id: str,
        provider: Provider,
        call_type: CallType,
        tier: SubscriptionTier,
    ) -> RateLimitDecision:
        """Take one slot of today's budget if any is left.

        Raises:
            ProfileNotFound:    The user has no profile document.
            StorageUnavailable: The store could not be read or written.
        """
        rule = self.config.rule(tier, provider, call_type)
        if rule is None:
            logger.error(
                "No rate limit configured for %s/%s/%s; denying",
                tier.value, provider.value, call_type.value,
            )
        limit = rule.limit if rule else 0
        period = rule.period_hours if rule else 24
        now = self._clock()
        outcome: dict = {}

        def _apply(current: dict | None) -> dict:
            if current is None:
                raise ProfileNotFound()
            stats = current.setdefault("rateLimitStats", {})
            per_provider = stats.setdefault(provider.value, {})
            state = RateLimitState.from_document(call_type, per_provider.get(call_type.value))
            count = self.effective_count(state, now)
            if count >= limit:
                outcome.update(allowed=False, count=count)
                return current
            state.call_count_today = count + 1
            state.last_called_at = now
            per_provider[call_type.value] = state.to_document()
            outcome.update(allowed=True, count=count + 1)
            return current

        try:
            await self._store.update(profile_path(user_id), _apply)
        except StorageError as exc:
            raise StorageUnavailable() from exc

        if not outcome["allowed"]:
            retry_at = self.next_reset(now)
            logger.info(
                "Rate limit reached for user %s %s/%s (%d/%d); next reset %s",
                user_id, provider.value, call_type.value,
                outcome["count"], limit, retry_at.isoformat(),
            )
            return RateLimitDecision(
                allowed=False,
                provider=provider,
                call_type=call_type,
                limit=limit,
                period_hours=period,
                count=outcome["count"],
                retry_at=retry_at,
            )

        logger.debug(
            "Reserved %s/%s for user %s (%d/%d)",
            provider.value, call_type.value, user_id, outcome["count"], limit,
        )
        return RateLimitDecision(
            allowed=True,
            provider=provider,
            call_type=call_type,
            limit=limit,
            period_hours=period,
            count=outcome["count"],
            reservation=Reservation(self, user_id, provider, call_type, self.local_day(now)),
        )

    async def _release(self, reservation: Reservation) -> None:
        """Decrement the counter, but only while it still belongs to the reserved day."""

        def _apply(current: dict | None) -> dict | None:
            if current is None:
                return None
            per_provider = current.get("rateLimitStats", {}).get(reservation.provider.value, {})
            state = RateLimitState.from_document(
                reservation.call_type, per_provider.get(reservation.call_type.value)
            )
            if (
                state.last_called_at is not None
                and self.local_day(state.last_called_at) == reservation.day
                and state.call_count_today > 0
            ):
                state.call_count_today -= 1
                per_provider[reservation.call_type.value] = state.to_document()
            return current

        try:
            await self._store.update(profile_path(reservation.user_id), _apply)
        except StorageError as exc:
            raise StorageUnavailable() from exc
        logger.debug("Released %r for user %s", reservation, reservation.user_id)
