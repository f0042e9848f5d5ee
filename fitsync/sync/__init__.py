"""FitSync Fitness Data Synchronization Engine.

This package pulls activity, sleep and heart-rate data from Fitbit, Strava
and Google Fit, normalizes it into one canonical model and persists it
idempotently, within per-tier daily call budgets.

Subpackages:
    adapters/ — Provider API adapters (Fitbit, Strava, Google Fit)

Core modules:
    base          — ProviderAdapter ABC and canonical data models
    errors        — SyncErrorKind and the SyncError hierarchy
    payloads      — Pydantic models for raw provider responses
    profile       — UserSyncProfile load/save
    config_loader — Load/validate/hot-reload rate_limits.yaml
    rate_limiter  — Atomic per-day call budgets with reservations
    tokens        — TokenStore and single-flight TokenManager
    normalizer    — Payload -> canonical record mapping
    persister     — Idempotent merge-writes of canonical records
    orchestrator  — Concurrent sync runs with per-call-type results
"""

from fitsync.sync.base import (
    ActivityRecord,
    ActivityType,
    CallType,
    DailySummary,
    HeartRateRecord,
    OAuthTokenSet,
    Provider,
    ProviderAdapter,
    SleepRecord,
    SubscriptionTier,
)
from fitsync.sync.errors import SyncError, SyncErrorKind
from fitsync.sync.orchestrator import ProviderSyncResult, SyncOrchestrator

__all__ = [
    "ActivityRecord",
    "ActivityType",
    "CallType",
    "DailySummary",
    "HeartRateRecord",
    "OAuthTokenSet",
    "Provider",
    "ProviderAdapter",
    "SleepRecord",
    "SubscriptionTier",
    "SyncError",
    "SyncErrorKind",
    "ProviderSyncResult",
    "SyncOrchestrator",
]
