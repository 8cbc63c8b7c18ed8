"""
Entitlement resolver - tier status and feature access decisions.

Composes the feature catalog, usage counters and subscription lifecycle.

CRITICAL:
- Policy denials are RESULTS, never exceptions (validate_feature_access)
- Only storage failures raise from the read paths
- Hard caps must go through consume_feature inside the same unit of work
  as the protected write; validate-then-track leaves a race window
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from stokreal.config.tier_settings import get_tier_settings
from stokreal.errors import (
    FeatureAccessDeniedError,
    UsageLimitExceededError,
    UserNotFoundError,
)
from stokreal.models.base import ensure_utc, utcnow
from stokreal.models.user import SubscriptionPlan, User
from stokreal.repositories.feature_definitions_repo import FeatureDefinitionsRepository
from stokreal.repositories.feature_usage_repo import FeatureUsageRepository, IncrementResult
from stokreal.repositories.users_repo import UsersRepository
from stokreal.services.subscription_lifecycle import (
    SubscriptionState,
    days_until_expiration,
    effective_plan,
    grace_period_end,
    is_expired,
    is_grace_period_active,
    resolve_subscription_state,
)

logger = logging.getLogger(__name__)


class DenialReason:
    """Values for FeatureAccessResult.reason."""
    FEATURE_NOT_DEFINED = "feature_not_defined"
    FEATURE_NOT_AVAILABLE = "feature_not_available"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"


@dataclass
class TierStatus:
    """Point-in-time view of a user's tier. Advisory, not cached."""
    user_id: str
    subscription_plan: SubscriptionPlan
    subscription_expires_at: Optional[datetime]
    is_active: bool
    days_until_expiration: Optional[int]
    grace_period_active: bool
    grace_period_expires_at: Optional[datetime]
    tier_features: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    current_usage: Dict[str, Dict[str, Optional[int]]] = field(default_factory=dict)
    subscription_state: SubscriptionState = SubscriptionState.ACTIVE
    effective_plan: SubscriptionPlan = SubscriptionPlan.FREE

    def to_dict(self) -> dict:
        data = asdict(self)
        data["subscription_plan"] = self.subscription_plan.value
        data["subscription_state"] = self.subscription_state.value
        data["effective_plan"] = self.effective_plan.value
        return data


@dataclass
class FeatureAccessResult:
    """Result of a feature access check."""
    access_granted: bool
    feature_available: bool
    usage_within_limits: bool
    current_usage: int = 0
    limit: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UsageThresholdResult:
    """Result of a usage threshold check."""
    threshold_exceeded: bool
    current_usage: int
    limit: Optional[int]
    percentage: float
    warning_message: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _feature_rule(limit: Optional[int], enabled: bool) -> Dict[str, Any]:
    if not enabled:
        return {"disabled": True}
    if limit is None:
        return {"unlimited": True}
    return {"limit": limit}


class EntitlementService:
    """
    Answers "may this user do X?" for metered and gated features.

    Usage:
        service = EntitlementService(db_session)
        status = service.get_tier_status(user_id)
        result = service.validate_feature_access(user_id, "product_slot", "free")
        if result.access_granted:
            ...
            service.track_usage(user_id, "product_slot", 1)
    """

    def __init__(self, db_session: Session):
        self.db = db_session
        self.users = UsersRepository(db_session)
        self.catalog = FeatureDefinitionsRepository(db_session)
        self.usage = FeatureUsageRepository(db_session)

    def get_user(self, user_id: str) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def get_tier_status(self, user_id: str, now: Optional[datetime] = None) -> TierStatus:
        """
        Assemble the tier status for a user.

        Raises:
            UserNotFoundError: If the user does not exist
            TransientStorageError: On storage failure
        """
        now = ensure_utc(now) or utcnow()
        user = self.get_user(user_id)
        plan = SubscriptionPlan(user.subscription_plan)
        expires_at = ensure_utc(user.subscription_expires_at)

        grace_end = None
        grace_active = False
        if is_expired(expires_at, now):
            grace_end = grace_period_end(expires_at)
            grace_active = is_grace_period_active(grace_end, now)

        tier_features = {
            name: _feature_rule(rule["limit"], rule["enabled"])
            for name, rule in self.catalog.get_feature_limits(plan).items()
        }

        return TierStatus(
            user_id=user.id,
            subscription_plan=plan,
            subscription_expires_at=expires_at,
            is_active=bool(user.is_active),
            days_until_expiration=days_until_expiration(expires_at, now),
            grace_period_active=grace_active,
            grace_period_expires_at=grace_end,
            tier_features=tier_features,
            current_usage=self.usage.get_usage(user.id),
            subscription_state=resolve_subscription_state(plan, expires_at, now),
            effective_plan=effective_plan(plan, expires_at, now),
        )

    def validate_feature_access(
        self,
        user_id: str,
        feature_name: str,
        tier: Union[SubscriptionPlan, str]
    ) -> FeatureAccessResult:
        """
        Decide whether user_id may use feature_name on tier.

        Does not check that the user exists; callers pass the tier they
        resolved. Unlimited features are never denied on usage.
        """
        definition = self.catalog.get_definition(tier, feature_name)
        if definition is None:
            result = FeatureAccessResult(
                access_granted=False,
                feature_available=False,
                usage_within_limits=False,
                reason=DenialReason.FEATURE_NOT_DEFINED,
            )
        elif not definition.feature_enabled:
            result = FeatureAccessResult(
                access_granted=False,
                feature_available=False,
                usage_within_limits=False,
                reason=DenialReason.FEATURE_NOT_AVAILABLE,
            )
        else:
            record = self.usage.get_record(user_id, feature_name)
            current = record.current_usage if record is not None else 0
            limit = definition.feature_limit
            within_limits = limit is None or current < limit
            result = FeatureAccessResult(
                access_granted=within_limits,
                feature_available=True,
                usage_within_limits=within_limits,
                current_usage=current,
                limit=limit,
                reason=None if within_limits else DenialReason.USAGE_LIMIT_EXCEEDED,
            )

        if not result.access_granted:
            logger.warning("Feature access denied", extra={
                "user_id": user_id,
                "feature_name": feature_name,
                "tier": SubscriptionPlan(tier).value,
                "reason": result.reason,
                "current_usage": result.current_usage,
                "limit": result.limit,
            })
        return result

    def validate_user_feature_access(
        self,
        user_id: str,
        feature_name: str,
        now: Optional[datetime] = None
    ) -> FeatureAccessResult:
        """
        validate_feature_access against the user's effective plan.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = self.get_user(user_id)
        plan = effective_plan(user.subscription_plan, user.subscription_expires_at, now)
        return self.validate_feature_access(user_id, feature_name, plan)

    def check_usage_threshold(
        self,
        user_id: str,
        feature_name: str,
        threshold: Optional[float] = None
    ) -> UsageThresholdResult:
        """
        Compare usage to the counter's limit snapshot.

        Args:
            threshold: Fraction of the limit (default TIER_USAGE_WARNING_THRESHOLD)
        """
        if threshold is None:
            threshold = get_tier_settings().usage_warning_threshold

        record = self.usage.get_record(user_id, feature_name)
        if record is None:
            return UsageThresholdResult(
                threshold_exceeded=False,
                current_usage=0,
                limit=None,
                percentage=0.0,
            )

        current = record.current_usage
        limit = record.usage_limit
        percentage = current / limit if limit else 0.0
        exceeded = bool(limit) and percentage >= threshold

        warning = None
        if exceeded:
            warning = (
                f"You are approaching your {feature_name} limit "
                f"({round(percentage * 100)}% used)"
            )

        return UsageThresholdResult(
            threshold_exceeded=exceeded,
            current_usage=current,
            limit=limit,
            percentage=percentage,
            warning_message=warning,
        )

    def track_usage(
        self,
        user_id: str,
        feature_name: str,
        delta: int,
        atomic: bool = False,
        commit: bool = True
    ) -> IncrementResult:
        """
        Adjust a usage counter after the metered action succeeded.

        Args:
            commit: Commit immediately. Pass False to leave the change in
                the caller's unit of work.

        Raises:
            UsageRecordNotFoundError: If the counter was never provisioned
            TransientStorageError: On storage failure
        """
        try:
            result = self.usage.increment(user_id, feature_name, delta, atomic=atomic)
            if commit:
                self.db.commit()
        except Exception:
            if commit:
                self.db.rollback()
            raise

        logger.debug("Feature usage tracked", extra={
            "user_id": user_id,
            "feature_name": feature_name,
            "delta": delta,
            "atomic": atomic,
            "current_usage": result.current_usage,
        })
        return result

    def consume_feature(
        self,
        user_id: str,
        feature_name: str,
        tier: Union[SubscriptionPlan, str],
        amount: int = 1
    ) -> IncrementResult:
        """
        Check and consume quota in one locked step.

        Runs inside the caller's unit of work and never commits: the
        counter change and the protected write commit or roll back
        together. The limit enforced is the live catalog limit.

        Raises:
            FeatureAccessDeniedError: If the feature is unavailable or the
                increment would exceed the limit. Carries the
                FeatureAccessResult.
        """
        definition = self.catalog.get_definition(tier, feature_name)
        if definition is None or not definition.feature_enabled:
            denial = FeatureAccessResult(
                access_granted=False,
                feature_available=False,
                usage_within_limits=False,
                reason=(
                    DenialReason.FEATURE_NOT_DEFINED if definition is None
                    else DenialReason.FEATURE_NOT_AVAILABLE
                ),
            )
            logger.warning("Feature consumption denied", extra={
                "user_id": user_id,
                "feature_name": feature_name,
                "reason": denial.reason,
            })
            raise FeatureAccessDeniedError(feature_name, denial)

        self.usage.ensure_record(user_id, feature_name, usage_limit=definition.feature_limit)

        try:
            return self.usage.increment(
                user_id,
                feature_name,
                amount,
                atomic=True,
                max_usage=definition.feature_limit,
            )
        except UsageLimitExceededError as e:
            denial = FeatureAccessResult(
                access_granted=False,
                feature_available=True,
                usage_within_limits=False,
                current_usage=e.current_usage,
                limit=e.limit,
                reason=DenialReason.USAGE_LIMIT_EXCEEDED,
            )
            logger.warning("Feature consumption denied", extra={
                "user_id": user_id,
                "feature_name": feature_name,
                "reason": denial.reason,
                "current_usage": e.current_usage,
                "limit": e.limit,
            })
            raise FeatureAccessDeniedError(feature_name, denial) from e

    def provision_user_features(
        self,
        user_id: str,
        plan: Optional[Union[SubscriptionPlan, str]] = None,
        commit: bool = True
    ) -> List[str]:
        """
        Create missing counters for the plan's enabled features.

        Limits are snapshotted from the catalog; existing counters are left
        untouched.

        Returns:
            Names of the counters created
        """
        user = self.get_user(user_id)
        if plan is None:
            plan = effective_plan(user.subscription_plan, user.subscription_expires_at)

        created = []
        try:
            for definition in self.catalog.get_definitions(plan):
                if not definition.feature_enabled:
                    continue
                if self.usage.get_record(user_id, definition.feature_name) is not None:
                    continue
                self.usage.create(user_id, definition.feature_name, usage_limit=definition.feature_limit)
                created.append(definition.feature_name)
            if commit:
                self.db.commit()
        except Exception:
            if commit:
                self.db.rollback()
            raise

        logger.info("User features provisioned", extra={
            "user_id": user_id,
            "tier": SubscriptionPlan(plan).value,
            "created": created,
        })
        return created
