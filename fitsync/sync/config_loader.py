"""Load, validate, and hot-reload the per-tier rate-limit table.

The table lives in ``rate_limits.yaml`` alongside this module.  It is loaded
once and cached.  Call ``reload_rate_limit_config()`` to re-read it from
disk after an update; no restart required.

Usage::

    from fitsync.sync.config_loader import get_rate_limit_config

    config = get_rate_limit_config()
    rule = config.rule(SubscriptionTier.FREE, Provider.FITBIT, CallType.SLEEP_DATA)
    rule.limit  # 1
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from fitsync.sync.base import CallType, Provider, SubscriptionTier

logger = logging.getLogger("fitsync.sync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "rate_limits.yaml"


@dataclass(frozen=True)
class RateLimitRule:
    """Allowed calls per period for one (tier, provider, call type)."""

    limit: int
    period_hours: int = 24


@dataclass
class RateLimitConfig:
    """Complete, validated rate-limit table.

    Attributes:
        version: Config schema version string.
        rules:   Nested dict: tier -> provider -> call type -> rule.
    """

    version: str
    rules: dict[SubscriptionTier, dict[Provider, dict[CallType, RateLimitRule]]]
    _raw: dict = field(default_factory=dict, repr=False)

    def rule(
        self, tier: SubscriptionTier, provider: Provider, call_type: CallType
    ) -> RateLimitRule | None:
        """Return the rule for a call, or None when the table has no entry.

        A missing entry means the call is not allowed for that tier.
        """
        return self.rules.get(tier, {}).get(provider, {}).get(call_type)

    def call_types(self, tier: SubscriptionTier, provider: Provider) -> list[CallType]:
        return list(self.rules.get(tier, {}).get(provider, {}))


class ConfigValidationError(ValueError):
    """Raised when rate_limits.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError:     If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    try:
        import yaml  # pyyaml
    except ImportError as exc:
        raise ImportError(
            "pyyaml is required for config loading. Install with: pip install pyyaml"
        ) from exc

    if not path.exists():
        raise FileNotFoundError(f"Rate-limit config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> RateLimitConfig:
    """Validate the raw YAML dict and construct a RateLimitConfig.

    Every error is collected before raising so one run reports them all.

    Raises:
        ConfigValidationError: If tiers, providers or call types are unknown,
                               or a limit is not a non-negative integer.
    """
    errors: list[str] = []
    version = str(raw.get("version", "1.0"))

    tiers_raw = raw.get("tiers")
    if not isinstance(tiers_raw, dict) or not tiers_raw:
        raise ConfigValidationError("'tiers' section is missing or empty")

    rules: dict[SubscriptionTier, dict[Provider, dict[CallType, RateLimitRule]]] = {}
    for tier_key, providers in tiers_raw.items():
        try:
            tier = SubscriptionTier(tier_key)
        except ValueError:
            errors.append(f"Unknown tier '{tier_key}'")
            continue
        if not isinstance(providers, dict):
            errors.append(f"tiers.{tier_key} must be a mapping of provider -> call types")
            continue

        rules[tier] = {}
        for provider_key, call_types in providers.items():
            try:
                provider = Provider(provider_key)
            except ValueError:
                errors.append(f"tiers.{tier_key}: unknown provider '{provider_key}'")
                continue
            if not isinstance(call_types, dict):
                errors.append(f"tiers.{tier_key}.{provider_key} must be a mapping")
                continue

            rules[tier][provider] = {}
            for call_key, entry in call_types.items():
                where = f"tiers.{tier_key}.{provider_key}.{call_key}"
                try:
                    call_type = CallType(call_key)
                except ValueError:
                    errors.append(f"{where}: unknown call type")
                    continue
                if not isinstance(entry, dict) or "limit" not in entry:
                    errors.append(f"{where} must be a mapping with a 'limit' key")
                    continue
                try:
                    limit = int(entry["limit"])
                    period = int(entry.get("period_hours", 24))
                except (TypeError, ValueError):
                    errors.append(f"{where}: limit and period_hours must be integers")
                    continue
                if limit < 0 or period <= 0:
                    errors.append(f"{where}: limit must be >= 0 and period_hours > 0")
                    continue
                if period != 24:
                    logger.warning(
                        "%s: period_hours=%d; budgets reset at the calendar-day boundary",
                        where,
                        period,
                    )
                rules[tier][provider][call_type] = RateLimitRule(limit=limit, period_hours=period)

    missing = [t.value for t in SubscriptionTier if t not in rules]
    if missing and not errors:
        logger.warning("Rate-limit table has no entry for tier(s): %s", ", ".join(missing))

    if errors:
        raise ConfigValidationError(
            f"rate_limits.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return RateLimitConfig(version=version, rules=rules, _raw=raw)


def load_rate_limit_config(path: Path | None = None) -> RateLimitConfig:
    """Load and validate the rate-limit table from disk.

    Args:
        path: Override path to YAML. Uses the bundled rate_limits.yaml by default.
    """
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded rate-limit config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: RateLimitConfig | None = None
_config_lock = threading.Lock()


def get_rate_limit_config() -> RateLimitConfig:
    """Return the global RateLimitConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_rate_limit_config()
    return _config


def reload_rate_limit_config(path: Path | None = None) -> RateLimitConfig:
    """Reload the table from disk and replace the global singleton.

    If validation fails the old table is retained and the error re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_rate_limit_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded rate-limit config: %s → %s", old_version, new_config.version)
    return new_config
