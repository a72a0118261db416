"""Load, validate, and hot-reload the per-metric merge policy.

The config lives in ``merge_policy.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_merge_config()`` to re-read from
disk after an edit; no restart required.

Usage::

    from src.wearables.config_loader import get_merge_config

    config = get_merge_config()
    rule = config.policy_for(MetricType.STEPS)   # priority, [fitbit, oura]
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from src.core.errors import ConfigurationError
from src.wearables.base import MetricType, Provider

logger = logging.getLogger("cadence.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "merge_policy.yaml"


class MergePolicy(str, Enum):
    PRIORITY = "priority"
    LATEST = "latest"
    ADDITIVE = "additive"


@dataclass(frozen=True)
class MetricRule:
    """How one metric's readings collapse into a single daily value."""

    metric: MetricType
    policy: MergePolicy
    priority: tuple[Provider, ...] = ()

    def rank(self, provider: Provider) -> int:
        """Lower is more authoritative; unlisted providers rank last."""
        try:
            return self.priority.index(provider)
        except ValueError:
            return len(self.priority)


@dataclass
class MergeConfig:
    """Complete, validated merge configuration.

    Attributes:
        version:          Config schema version string.
        default_policy:   Policy for metrics without an explicit rule.
        default_priority: Provider ranking for metrics without an explicit list.
        rules:            Explicit per-metric rules.
    """

    version: str
    default_policy: MergePolicy
    default_priority: tuple[Provider, ...]
    rules: dict[MetricType, MetricRule] = field(default_factory=dict)

    def policy_for(self, metric: MetricType) -> MetricRule:
        rule = self.rules.get(metric)
        if rule is not None:
            return rule
        return MetricRule(metric=metric, policy=self.default_policy, priority=self.default_priority)


class ConfigValidationError(ConfigurationError):
    """Raised when merge_policy.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise ConfigValidationError(f"Merge policy config not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _validate_and_build(raw: dict) -> MergeConfig:
    """Validate the raw YAML dict and construct a MergeConfig.

    Raises:
        ConfigValidationError: If any metric, policy, or provider is unknown.
    """
    errors: list[str] = []

    def _policy(value: Any, where: str) -> MergePolicy | None:
        try:
            return MergePolicy(value)
        except ValueError:
            errors.append(f"{where}: unknown policy {value!r}")
            return None

    def _priority(value: Any, where: str) -> tuple[Provider, ...]:
        if value is None:
            return ()
        if not isinstance(value, list):
            errors.append(f"{where}: priority must be a list of providers")
            return ()
        ranked: list[Provider] = []
        for item in value:
            try:
                ranked.append(Provider(item))
            except ValueError:
                errors.append(f"{where}: unknown provider {item!r}")
        if len(set(ranked)) != len(ranked):
            errors.append(f"{where}: priority lists a provider twice")
        return tuple(ranked)

    defaults = raw.get("defaults") or {}
    default_policy = _policy(defaults.get("policy", "latest"), "defaults") or MergePolicy.LATEST
    default_priority = _priority(defaults.get("priority"), "defaults")

    rules: dict[MetricType, MetricRule] = {}
    metrics_raw = raw.get("metrics") or {}
    if not isinstance(metrics_raw, dict):
        errors.append("'metrics' must be a mapping of metric -> rule")
        metrics_raw = {}

    for name, cfg in metrics_raw.items():
        try:
            metric = MetricType(name)
        except ValueError:
            errors.append(f"metrics.{name}: unknown metric")
            continue
        if not isinstance(cfg, dict):
            errors.append(f"metrics.{name} must be a mapping")
            continue
        policy = _policy(cfg.get("policy", default_policy.value), f"metrics.{name}")
        priority = _priority(cfg.get("priority"), f"metrics.{name}") or default_priority
        if policy is not None:
            rules[metric] = MetricRule(metric=metric, policy=policy, priority=priority)

    if errors:
        raise ConfigValidationError(
            f"merge_policy.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return MergeConfig(
        version=str(raw.get("version", "1.0")),
        default_policy=default_policy,
        default_priority=default_priority,
        rules=rules,
    )


def load_merge_config(path: Path | None = None) -> MergeConfig:
    """Load and validate the merge config from disk."""
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded merge policy v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: MergeConfig | None = None
_config_lock = threading.Lock()


def get_merge_config() -> MergeConfig:
    """Return the global MergeConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_merge_config()
    return _config


def reload_merge_config(path: Path | None = None) -> MergeConfig:
    """Reload the merge config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.
    """
    global _config
    new_config = load_merge_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded merge policy: %s → %s", old_version, new_config.version)
    return new_config
