"""Cadence wearable sync engine.

This package handles OAuth connections to wearable providers, token
lifecycle, incremental ingestion, normalization into canonical readings,
and per-metric merging into one value per user-local day.

Subpackages:
    adapters/ — Provider API adapters (Oura, WHOOP, Fitbit) and the registry
    sync/     — Sync engine and reading deduplication

Core modules:
    base          — ProviderAdapter ABC and canonical data models
    config_loader — Load/validate/hot-reload merge_policy.yaml
    merge_engine  — Per-metric merge into MergedBiometricDay
    token_manager — Proactive OAuth refresh with per-connection backoff
    connections   — OAuth callback, listing, and disconnect
    limits        — Per-provider concurrency caps
"""

from src.wearables.base import (
    BiometricReading,
    MergedBiometricDay,
    MetricType,
    OAuthTokens,
    Provider,
    ProviderAdapter,
    WearableConnection,
)
from src.wearables.config_loader import MergeConfig, get_merge_config

__all__ = [
    "ProviderAdapter",
    "Provider",
    "MetricType",
    "BiometricReading",
    "MergedBiometricDay",
    "WearableConnection",
    "OAuthTokens",
    "MergeConfig",
    "get_merge_config",
]
