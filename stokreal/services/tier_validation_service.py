"""
Tier validation for creation endpoints (products, categories, bulk).

Wraps EntitlementService with user-facing messages: remaining quota,
approaching-limit warnings and upgrade prompts for free users.

Validation failures propagate. A storage error never turns into "allowed".
"""

import logging
import math
from dataclasses import asdict, dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from stokreal.constants.features import (
    FeatureName,
    get_feature_display_name,
    get_upgrade_benefit,
)
from stokreal.models.user import SubscriptionPlan
from stokreal.services.entitlement_service import DenialReason, EntitlementService
from stokreal.services.subscription_lifecycle import effective_plan

logger = logging.getLogger(__name__)

# Fraction of the limit at which the approaching-limit warning starts
APPROACHING_LIMIT_FRACTION = 0.8

UNLIMITED = "unlimited"


@dataclass
class TierValidationResult:
    can_proceed: bool
    current_tier: SubscriptionPlan
    feature: str
    current_usage: int
    limit: Optional[int]
    remaining: Union[int, str]
    reason: Optional[str] = None
    warning: Optional[str] = None
    upgrade_prompt: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["current_tier"] = self.current_tier.value
        return data


@dataclass
class BulkTierValidationResult:
    products: TierValidationResult
    categories: TierValidationResult
    overall_access: bool


def is_approaching_limit(current_usage: int, limit: Optional[int]) -> bool:
    if limit is None:
        return False
    return current_usage >= math.floor(limit * APPROACHING_LIMIT_FRACTION)


def upgrade_prompt(feature_name: str, tier: SubscriptionPlan) -> Optional[str]:
    if tier == SubscriptionPlan.PREMIUM:
        return None
    return f"Upgrade to Premium for {get_upgrade_benefit(feature_name)} and advanced features."


class TierValidationService:
    """
    Usage:
        service = TierValidationService(db_session)
        result = service.validate_product_creation(user_id)
        if not result.can_proceed:
            raise HTTPException(403, result.reason)
    """

    def __init__(self, db_session: Session, entitlements: Optional[EntitlementService] = None):
        self.db = db_session
        self.entitlements = entitlements or EntitlementService(db_session)

    def validate_product_creation(self, user_id: str) -> TierValidationResult:
        return self.validate_feature(user_id, FeatureName.PRODUCT_SLOT)

    def validate_category_creation(self, user_id: str) -> TierValidationResult:
        return self.validate_feature(user_id, FeatureName.CATEGORIES)

    def validate_bulk_creation(self, user_id: str) -> BulkTierValidationResult:
        products = self.validate_product_creation(user_id)
        categories = self.validate_category_creation(user_id)
        return BulkTierValidationResult(
            products=products,
            categories=categories,
            overall_access=products.can_proceed and categories.can_proceed,
        )

    def validate_feature(self, user_id: str, feature_name: str) -> TierValidationResult:
        """
        Validate one feature against the user's effective plan.

        Raises:
            UserNotFoundError: If the user does not exist
            TransientStorageError: On storage failure
        """
        user = self.entitlements.get_user(user_id)
        tier = effective_plan(user.subscription_plan, user.subscription_expires_at)
        access = self.entitlements.validate_feature_access(user_id, feature_name, tier)
        display = get_feature_display_name(feature_name)

        if not access.feature_available:
            if access.reason == DenialReason.FEATURE_NOT_DEFINED:
                reason = f"{display.capitalize()} is not defined for the {tier.value} tier."
            else:
                reason = f"{display.capitalize()} is not available on the {tier.value} tier."
            return TierValidationResult(
                can_proceed=False,
                current_tier=tier,
                feature=feature_name,
                current_usage=access.current_usage,
                limit=None,
                remaining=0,
                reason=reason,
                upgrade_prompt=upgrade_prompt(feature_name, tier),
            )

        current = access.current_usage
        limit = access.limit

        if limit is None:
            return TierValidationResult(
                can_proceed=True,
                current_tier=tier,
                feature=feature_name,
                current_usage=current,
                limit=None,
                remaining=UNLIMITED,
            )

        if not access.usage_within_limits:
            logger.info("Tier limit reached", extra={
                "user_id": user_id,
                "feature_name": feature_name,
                "current_usage": current,
                "limit": limit,
            })
            return TierValidationResult(
                can_proceed=False,
                current_tier=tier,
                feature=feature_name,
                current_usage=current,
                limit=limit,
                remaining=0,
                reason=(
                    f"{display.capitalize()} limit reached. Maximum {limit} {display} "
                    f"allowed for {tier.value} tier."
                ),
                upgrade_prompt=upgrade_prompt(feature_name, tier),
            )

        remaining = limit - current
        if is_approaching_limit(current, limit):
            return TierValidationResult(
                can_proceed=True,
                current_tier=tier,
                feature=feature_name,
                current_usage=current,
                limit=limit,
                remaining=remaining,
                warning=(
                    f"You're approaching your {display} limit. "
                    f"Only {remaining} {display} remaining."
                ),
                upgrade_prompt=upgrade_prompt(feature_name, tier),
            )

        return TierValidationResult(
            can_proceed=True,
            current_tier=tier,
            feature=feature_name,
            current_usage=current,
            limit=limit,
            remaining=remaining,
        )
