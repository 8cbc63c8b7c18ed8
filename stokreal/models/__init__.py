"""
Database models for subscription tiers, feature definitions, usage and history.
"""

from stokreal.models.base import TimestampMixin, generate_uuid, utcnow, ensure_utc
from stokreal.models.user import User, SubscriptionPlan
from stokreal.models.tier_feature import TierFeatureDefinition
from stokreal.models.feature_usage import UserFeatureUsage
from stokreal.models.tier_history import TierHistory, TierChangeReason

__all__ = [
    "TimestampMixin",
    "generate_uuid",
    "utcnow",
    "ensure_utc",
    "User",
    "SubscriptionPlan",
    "TierFeatureDefinition",
    "UserFeatureUsage",
    "TierHistory",
    "TierChangeReason",
]
