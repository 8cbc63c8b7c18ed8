"""
Tier feature catalog configuration loader.

Loads the tier feature catalog from config/tier_features.yml, the single
source of truth for seeding tier_feature_definitions and for deciding which
usage counters are periodically reset.

Consumers:
  - scripts/seed_tier_features.py: upserts catalog rows
  - TierScheduler: features_with_reset() for the usage reset job

Usage:
    from stokreal.config.tier_features import get_tier_features_config

    config = get_tier_features_config()
    for seed in config.definitions():
        ...
    daily = config.features_with_reset("daily")
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

VALID_RESET_PERIODS = ("daily", "weekly", "monthly")


@dataclass(frozen=True)
class FeatureSeed:
    """One (tier, feature) row of the catalog."""
    tier: str
    feature_name: str
    feature_limit: Optional[int]
    feature_enabled: bool
    description: Optional[str]


class TierFeaturesConfig:
    """
    Thread-safe loader for tier_features.yml.

    Validates the file on load: limits must be non-negative integers or
    null and reset periods must be one of VALID_RESET_PERIODS.
    """

    def __init__(self, config_path: Optional[str] = None):
        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._features: Dict[str, Dict[str, Any]] = {}
        self._default_tier: str = "free"
        self._load_lock = Lock()

        self._load()

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        env_path = os.getenv("TIER_FEATURES_CONFIG")
        candidates = [
            Path(__file__).parent / "tier_features.yml",
            Path(os.getcwd()) / "config" / "tier_features.yml",
        ]
        if env_path:
            candidates.insert(0, Path(env_path))

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"tier_features.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            logger.info("Loading tier feature catalog from %s", path)

            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}

            features = raw.get("features") or {}
            for name, feature_cfg in features.items():
                _validate_feature(name, feature_cfg)

            self._raw = raw
            self._features = features
            self._default_tier = raw.get("default_tier", "free")

            logger.info(
                "Loaded tier feature catalog with %d features, tiers=%s",
                len(self._features),
                self.tiers,
            )

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def version(self) -> Optional[str]:
        return self._raw.get("version")

    @property
    def default_tier(self) -> str:
        return self._default_tier

    @property
    def tiers(self) -> List[str]:
        tier_set: set = set()
        for feature_cfg in self._features.values():
            tier_set.update((feature_cfg.get("tiers") or {}).keys())
        return sorted(tier_set)

    @property
    def feature_names(self) -> List[str]:
        return list(self._features.keys())

    def definitions(self, tier: Optional[str] = None) -> List[FeatureSeed]:
        """Flatten the catalog into seed rows, optionally for one tier."""
        seeds = []
        for name, feature_cfg in self._features.items():
            for tier_name, tier_cfg in (feature_cfg.get("tiers") or {}).items():
                if tier is not None and tier_name != tier:
                    continue
                seeds.append(FeatureSeed(
                    tier=tier_name,
                    feature_name=name,
                    feature_limit=tier_cfg.get("limit"),
                    feature_enabled=bool(tier_cfg.get("enabled", True)),
                    description=feature_cfg.get("description"),
                ))
        return seeds

    def reset_period(self, feature_name: str) -> Optional[str]:
        feature_cfg = self._features.get(feature_name) or {}
        return feature_cfg.get("reset_period")

    def features_with_reset(self, reset_type: str) -> List[str]:
        """Names of features whose counters reset on the given period."""
        return [
            name for name, feature_cfg in self._features.items()
            if feature_cfg.get("reset_period") == reset_type
        ]


def _validate_feature(name: str, feature_cfg: Dict[str, Any]) -> None:
    reset_period = feature_cfg.get("reset_period")
    if reset_period is not None and reset_period not in VALID_RESET_PERIODS:
        raise ValueError(
            f"Feature '{name}' has invalid reset_period '{reset_period}'"
        )

    for tier_name, tier_cfg in (feature_cfg.get("tiers") or {}).items():
        limit = tier_cfg.get("limit")
        if limit is None:
            continue
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ValueError(
                f"Feature '{name}' has invalid limit {limit!r} for tier '{tier_name}'"
            )


_config: Optional[TierFeaturesConfig] = None
_config_lock = Lock()


def get_tier_features_config() -> TierFeaturesConfig:
    """Return the process-wide catalog config, loading it on first use."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = TierFeaturesConfig()
    return _config


def reset_tier_features_config() -> None:
    """Drop the cached config (tests)."""
    global _config
    with _config_lock:
        _config = None
