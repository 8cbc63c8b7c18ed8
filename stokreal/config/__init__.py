"""Tier engine configuration: environment settings and the feature catalog."""

from stokreal.config.tier_settings import TierSettings, get_tier_settings
from stokreal.config.tier_features import TierFeaturesConfig, get_tier_features_config

__all__ = [
    "TierSettings",
    "get_tier_settings",
    "TierFeaturesConfig",
    "get_tier_features_config",
]
