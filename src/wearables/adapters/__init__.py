"""Wearable provider adapters.

Each adapter implements the ProviderAdapter contract and handles:
- OAuth code exchange and token refresh
- Fetching raw items since a provider cursor
- Normalizing provider-specific JSON into canonical BiometricReadings

Available adapters:
    OuraAdapter   — Oura API v2 (OAuth2)
    WhoopAdapter  — WHOOP API v1 (OAuth2)
    FitbitAdapter — Fitbit Web API (OAuth2, Basic-auth token endpoint)
"""

from __future__ import annotations

import logging

import httpx

from src.config import Settings
from src.core.clock import Clock
from src.wearables.adapters.fitbit import FitbitAdapter
from src.wearables.adapters.oura import OuraAdapter
from src.wearables.adapters.whoop import WhoopAdapter
from src.wearables.base import Provider, ProviderAdapter

__all__ = [
    "OuraAdapter",
    "WhoopAdapter",
    "FitbitAdapter",
    "ADAPTER_CLASSES",
    "ProviderRegistry",
]

logger = logging.getLogger("cadence.wearables.adapters")

# provider -> adapter class
ADAPTER_CLASSES: dict[Provider, type[ProviderAdapter]] = {
    Provider.OURA: OuraAdapter,
    Provider.WHOOP: WhoopAdapter,
    Provider.FITBIT: FitbitAdapter,
}


class ProviderRegistry:
    """Lookup of configured adapter instances keyed by provider slug."""

    def __init__(self, adapters: dict[Provider, ProviderAdapter] | None = None) -> None:
        self._adapters: dict[Provider, ProviderAdapter] = dict(adapters or {})

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> "ProviderRegistry":
        """Instantiate every adapter whose OAuth client credentials are configured."""
        adapters: dict[Provider, ProviderAdapter] = {}
        for provider, adapter_cls in ADAPTER_CLASSES.items():
            credentials = settings.provider_credentials(provider.value)
            if credentials is None:
                logger.info("%s credentials not configured; provider disabled", provider.value)
                continue
            client_id, client_secret = credentials
            adapters[provider] = adapter_cls(
                client_id=client_id,
                client_secret=client_secret,
                http_client=http_client,
                timeout=settings.provider_http_timeout_seconds,
                clock=clock,
            )
        return cls(adapters)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.SOURCE_ID] = adapter

    def get(self, provider: Provider | str) -> ProviderAdapter:
        """Return the adapter for ``provider``.

        Raises:
            KeyError: If the provider is unknown or not configured.
        """
        try:
            key = Provider(provider)
        except ValueError:
            raise KeyError(f"Unknown provider {provider!r}") from None
        if key not in self._adapters:
            raise KeyError(
                f"No adapter registered for provider '{key.value}'. "
                f"Available: {[p.value for p in self._adapters]}"
            )
        return self._adapters[key]

    def __contains__(self, provider: object) -> bool:
        try:
            return Provider(provider) in self._adapters
        except ValueError:
            return False

    @property
    def providers(self) -> list[Provider]:
        return list(self._adapters)
