from stokreal.constants.features import (
    FeatureName,
    FEATURE_DISPLAY_NAMES,
    get_feature_display_name,
    get_upgrade_benefit,
)

__all__ = [
    "FeatureName",
    "FEATURE_DISPLAY_NAMES",
    "get_feature_display_name",
    "get_upgrade_benefit",
]
