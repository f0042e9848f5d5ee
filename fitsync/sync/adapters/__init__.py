"""Provider adapters for FitSync.

Each adapter implements the ProviderAdapter ABC and handles:
- OAuth token refresh against the provider's token endpoint
- Fetching raw payloads and validating them into ``fitsync.sync.payloads`` models

Available adapters:
    FitbitAdapter    — Fitbit Web API (OAuth2, Basic client auth)
    StravaAdapter    — Strava API v3 (OAuth2)
    GoogleFitAdapter — Google Fit REST API (Google OAuth2)
"""

from __future__ import annotations

import httpx

from fitsync.config import Settings
from fitsync.sync.adapters.fitbit import FitbitAdapter
from fitsync.sync.adapters.google_fit import GoogleFitAdapter
from fitsync.sync.adapters.strava import StravaAdapter
from fitsync.sync.base import Provider, ProviderAdapter

__all__ = [
    "FitbitAdapter",
    "StravaAdapter",
    "GoogleFitAdapter",
    "ADAPTER_REGISTRY",
    "get_adapter",
    "build_adapters",
]

# Registry: provider → adapter class
ADAPTER_REGISTRY: dict[Provider, type[ProviderAdapter]] = {
    Provider.FITBIT: FitbitAdapter,
    Provider.STRAVA: StravaAdapter,
    Provider.GOOGLE_FIT: GoogleFitAdapter,
}


def get_adapter(provider: Provider | str) -> type[ProviderAdapter]:
    """Return the adapter class for a provider.

    Args:
        provider: Provider enum or its id, e.g. 'fitbit', 'strava', 'google-fit'.

    Raises:
        KeyError: If the provider is not registered.
    """
    try:
        key = Provider(provider)
    except ValueError:
        raise KeyError(
            f"No adapter registered for provider '{provider}'. "
            f"Available: {[p.value for p in ADAPTER_REGISTRY]}"
        ) from None
    return ADAPTER_REGISTRY[key]


def build_adapters(
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[Provider, ProviderAdapter]:
    """Instantiate every registered adapter around one shared client."""
    return {
        provider: cls(settings=settings, http_client=http_client)
        for provider, cls in ADAPTER_REGISTRY.items()
    }
