"""Per-user sync profile stored at ``users/{uid}``.

The profile carries the subscription tier, time zone, connected providers,
per-(provider, call type) rate-limit counters and the per-provider
last-successful-sync instant.  The rate limiter mutates ``rateLimitStats``
directly through ``DocumentStore.update``; everything else goes through
this module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fitsync.services.store import DocumentStore, StorageError, document_path
from fitsync.sync.base import CallType, Provider, SubscriptionTier
from fitsync.sync.errors import ProfileNotFound, StorageUnavailable

logger = logging.getLogger("fitsync.sync.profile")


def profile_path(user_id: str) -> str:
    return document_path("users", user_id)


def _parse_instant(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Ignoring unparseable timestamp %r in profile", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class RateLimitState:
    """Counter for one (provider, call type).

    ``call_count_today`` is only meaningful for the calendar date of
    ``last_called_at``; on any other day the effective count is 0.
    """

    call_type: CallType
    last_called_at: datetime | None = None
    call_count_today: int = 0

    def to_document(self) -> dict:
        return {
            "lastCalledAt": self.last_called_at.isoformat() if self.last_called_at else None,
            "callCountToday": self.call_count_today,
        }

    @classmethod
    def from_document(cls, call_type: CallType, doc: dict | None) -> "RateLimitState":
        doc = doc or {}
        return cls(
            call_type=call_type,
            last_called_at=_parse_instant(doc.get("lastCalledAt")),
            call_count_today=max(int(doc.get("callCountToday") or 0), 0),
        )


@dataclass
class ConnectedProvider:
    provider: Provider
    name: str
    connected_at: datetime | None = None


@dataclass
class UserSyncProfile:
    """Sync-relevant view of the ``users/{uid}`` document.

    Attributes:
        user_id:              Internal user id.
        tier:                 Subscription tier (unknown values fall back to free).
        timezone:             IANA zone used to interpret provider local times.
        connected_providers:  Providers with a completed OAuth connection.
        rate_limit_stats:     provider -> call type -> counter.
        last_successful_sync: provider -> start instant of the last fully
                              successful run.
    """

    user_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    timezone: str | None = None
    connected_providers: list[ConnectedProvider] = field(default_factory=list)
    rate_limit_stats: dict[Provider, dict[CallType, RateLimitState]] = field(default_factory=dict)
    last_successful_sync: dict[Provider, datetime] = field(default_factory=dict)

    def is_connected(self, provider: Provider) -> bool:
        return any(cp.provider is provider for cp in self.connected_providers)

    def rate_limit_state(self, provider: Provider, call_type: CallType) -> RateLimitState:
        return self.rate_limit_stats.get(provider, {}).get(
            call_type, RateLimitState(call_type=call_type)
        )

    @classmethod
    def from_document(cls, user_id: str, doc: dict) -> "UserSyncProfile":
        raw_tier = doc.get("subscriptionTier") or SubscriptionTier.FREE.value
        try:
            tier = SubscriptionTier(raw_tier)
        except ValueError:
            logger.warning("User %s has unknown tier %r; treating as free", user_id, raw_tier)
            tier = SubscriptionTier.FREE

        connected: list[ConnectedProvider] = []
        for entry in doc.get("connectedProviders") or []:
            try:
                provider = Provider(entry.get("id"))
            except ValueError:
                continue  # providers this engine does not sync
            connected.append(
                ConnectedProvider(
                    provider=provider,
                    name=entry.get("name") or provider.value,
                    connected_at=_parse_instant(entry.get("connectedAt")),
                )
            )

        stats: dict[Provider, dict[CallType, RateLimitState]] = {}
        for provider_key, per_call in (doc.get("rateLimitStats") or {}).items():
            try:
                provider = Provider(provider_key)
            except ValueError:
                continue
            stats[provider] = {}
            for call_key, state in (per_call or {}).items():
                try:
                    call_type = CallType(call_key)
                except ValueError:
                    continue
                stats[provider][call_type] = RateLimitState.from_document(call_type, state)

        last_sync: dict[Provider, datetime] = {}
        for provider_key, value in (doc.get("lastSuccessfulSync") or {}).items():
            instant = _parse_instant(value)
            if instant is None:
                continue
            try:
                last_sync[Provider(provider_key)] = instant
            except ValueError:
                continue

        return cls(
            user_id=user_id,
            tier=tier,
            timezone=doc.get("timezone") or None,
            connected_providers=connected,
            rate_limit_stats=stats,
            last_successful_sync=last_sync,
        )

    def to_document(self) -> dict:
        return {
            "subscriptionTier": self.tier.value,
            "timezone": self.timezone,
            "connectedProviders": [
                {
                    "id": cp.provider.value,
                    "name": cp.name,
                    "connectedAt": cp.connected_at.isoformat() if cp.connected_at else None,
                }
                for cp in self.connected_providers
            ],
            "rateLimitStats": {
                provider.value: {ct.value: state.to_document() for ct, state in per_call.items()}
                for provider, per_call in self.rate_limit_stats.items()
            },
            "lastSuccessfulSync": {
                provider.value: instant.isoformat()
                for provider, instant in self.last_successful_sync.items()
            },
        }


async def load_profile(store: DocumentStore, user_id: str) -> UserSyncProfile:
    """Load the profile for ``user_id``.

    Raises:
        ProfileNotFound:    No ``users/{uid}`` document.
        StorageUnavailable: The store could not be read.
    """
    try:
        doc = await store.get(profile_path(user_id))
    except StorageError as exc:
        raise StorageUnavailable() from exc
    if doc is None:
        raise ProfileNotFound()
    return UserSyncProfile.from_document(user_id, doc)


async def save_profile(store: DocumentStore, profile: UserSyncProfile) -> None:
    """Merge-write the whole profile (used when provisioning users)."""
    try:
        await store.set(profile_path(profile.user_id), profile.to_document())
    except StorageError as exc:
        raise StorageUnavailable() from exc


async def record_successful_sync(
    store: DocumentStore, user_id: str, provider: Provider, at: datetime
) -> None:
    """Set ``lastSuccessfulSync[provider]``; never moves the instant backwards."""

    def _apply(current: dict | None) -> dict:
        doc = current or {}
        per_provider = dict(doc.get("lastSuccessfulSync") or {})
        previous = _parse_instant(per_provider.get(provider.value))
        if previous is None or previous < at:
            per_provider[provider.value] = at.isoformat()
        doc["lastSuccessfulSync"] = per_provider
        return doc

    try:
        await store.update(profile_path(user_id), _apply)
    except StorageError as exc:
        raise StorageUnavailable() from exc
