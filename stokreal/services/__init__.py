"""
Tier engine services.
"""

from stokreal.services.entitlement_service import EntitlementService
from stokreal.services.subscription_lifecycle import SubscriptionLifecycle
from stokreal.services.tier_validation_service import TierValidationService

__all__ = ["EntitlementService", "SubscriptionLifecycle", "TierValidationService"]
