"""
Tier API routes.

- /api/v1/tier: the authenticated user's tier status, access and thresholds
- /api/v1/internal: service-to-service tier validation

Authentication happens upstream; request.state.user_id is trusted here.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stokreal.api.dependencies.entitlements import get_current_user_id, http_error_for
from stokreal.database.session import get_db_session
from stokreal.errors import TierEngineError
from stokreal.models.user import SubscriptionPlan
from stokreal.services.entitlement_service import EntitlementService
from stokreal.services.subscription_lifecycle import SubscriptionLifecycle
from stokreal.services.tier_validation_service import (
    TierValidationResult,
    TierValidationService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/tier", tags=["tier"])
internal_router = APIRouter(prefix="/api/v1/internal", tags=["internal"])

TIER_RANK = {
    SubscriptionPlan.FREE: 0,
    SubscriptionPlan.PREMIUM: 1,
}

UPGRADE_URL = "/api/v1/subscription/upgrade"


# Request/Response models
class FeatureUsageResponse(BaseModel):
    current: int
    limit: Optional[int] = None


class TierStatusResponse(BaseModel):
    """Current tier status for the authenticated user."""
    user_id: str
    subscription_plan: str
    effective_plan: str
    subscription_state: str
    subscription_expires_at: Optional[datetime] = None
    is_active: bool
    days_until_expiration: Optional[int] = None
    grace_period_active: bool
    grace_period_expires_at: Optional[datetime] = None
    tier_features: Dict[str, Dict[str, Any]]
    current_usage: Dict[str, FeatureUsageResponse]


class FeatureAccessResponse(BaseModel):
    feature: str
    access_granted: bool
    feature_available: bool
    usage_within_limits: bool
    current_usage: int
    limit: Optional[int] = None
    reason: Optional[str] = None


class UsageThresholdResponse(BaseModel):
    feature: str
    threshold_exceeded: bool
    current_usage: int
    limit: Optional[int] = None
    percentage: float
    warning_message: Optional[str] = None


class TierValidationResponse(BaseModel):
    can_proceed: bool
    current_tier: str
    feature: str
    current_usage: int
    limit: Optional[int] = None
    remaining: Any
    reason: Optional[str] = None
    warning: Optional[str] = None
    upgrade_prompt: Optional[str] = None


class BulkValidationResponse(BaseModel):
    products: TierValidationResponse
    categories: TierValidationResponse
    overall_access: bool


class TierHistoryEntryResponse(BaseModel):
    previous_plan: Optional[str] = None
    new_plan: str
    change_reason: str
    changed_by: Optional[str] = None
    effective_date: datetime
    notes: Optional[str] = None


class InternalTierValidationRequest(BaseModel):
    """Service-to-service tier check."""
    user_id: str = Field(..., min_length=1, description="User to validate")
    required_tier: SubscriptionPlan = Field(..., description="Minimum tier required")
    feature: str = Field(..., min_length=1, description="Feature key")
    action: Optional[str] = Field(None, description="Action being attempted (for logging)")


class InternalTierValidationResponse(BaseModel):
    user_id: str
    current_tier: str
    access_granted: bool
    feature_available: bool
    usage_within_limits: bool
    subscription_expires_at: Optional[datetime] = None
    grace_period_active: bool


def _validation_response(result: TierValidationResult) -> TierValidationResponse:
    return TierValidationResponse(**result.to_dict())


@router.get("/status", response_model=TierStatusResponse)
def get_tier_status(
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
):
    try:
        tier_status = EntitlementService(db_session).get_tier_status(user_id)
    except TierEngineError as e:
        raise http_error_for(e) from e
    return TierStatusResponse(**tier_status.to_dict())


@router.get("/features/{feature_name}/access", response_model=FeatureAccessResponse)
def get_feature_access(
    feature_name: str,
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
):
    """Access decision against the user's effective plan. Denials are 200s here."""
    try:
        result = EntitlementService(db_session).validate_user_feature_access(user_id, feature_name)
    except TierEngineError as e:
        raise http_error_for(e) from e
    return FeatureAccessResponse(feature=feature_name, **result.to_dict())


@router.get("/features/{feature_name}/threshold", response_model=UsageThresholdResponse)
def get_usage_threshold(
    feature_name: str,
    threshold: Optional[float] = Query(None, gt=0, le=1, description="Fraction of the limit"),
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
):
    try:
        result = EntitlementService(db_session).check_usage_threshold(user_id, feature_name, threshold)
    except TierEngineError as e:
        raise http_error_for(e) from e
    return UsageThresholdResponse(feature=feature_name, **result.to_dict())


@router.get("/validation/bulk", response_model=BulkValidationResponse)
def get_bulk_validation(
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
):
    try:
        result = TierValidationService(db_session).validate_bulk_creation(user_id)
    except TierEngineError as e:
        raise http_error_for(e) from e
    return BulkValidationResponse(
        products=_validation_response(result.products),
        categories=_validation_response(result.categories),
        overall_access=result.overall_access,
    )


@router.get("/validation/{feature_name}", response_model=TierValidationResponse)
def get_feature_validation(
    feature_name: str,
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
):
    try:
        result = TierValidationService(db_session).validate_feature(user_id, feature_name)
    except TierEngineError as e:
        raise http_error_for(e) from e
    return _validation_response(result)


@router.get("/history", response_model=List[TierHistoryEntryResponse])
def get_tier_history(
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
):
    try:
        entries = SubscriptionLifecycle(db_session).list_history(user_id)
    except TierEngineError as e:
        raise http_error_for(e) from e
    return [
        TierHistoryEntryResponse(
            previous_plan=entry.previous_plan.value if entry.previous_plan else None,
            new_plan=entry.new_plan.value,
            change_reason=entry.change_reason,
            changed_by=entry.changed_by,
            effective_date=entry.effective_date,
            notes=entry.notes,
        )
        for entry in entries
    ]


@internal_router.post("/validate-tier", response_model=InternalTierValidationResponse)
def validate_tier(
    body: InternalTierValidationRequest,
    db_session: Session = Depends(get_db_session),
):
    """
    Check that a user is active, on a sufficient tier, and allowed to use
    the feature. 403 with TIER_UPGRADE_REQUIRED / USER_INACTIVE otherwise.
    """
    service = EntitlementService(db_session)
    try:
        tier_status = service.get_tier_status(body.user_id)
    except TierEngineError as e:
        raise http_error_for(e) from e

    current_tier = tier_status.effective_plan
    error_data = {
        "current_tier": current_tier.value,
        "required_tier": body.required_tier.value,
        "feature": body.feature,
        "upgrade_url": UPGRADE_URL,
    }

    if not tier_status.is_active:
        logger.warning("Tier validation failed - user inactive", extra={
            "user_id": body.user_id,
            "feature_name": body.feature,
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "USER_INACTIVE",
                "message": "User account is inactive",
                **error_data,
                "upgrade_message": "Please reactivate your account to continue",
            },
        )

    try:
        access = service.validate_feature_access(body.user_id, body.feature, current_tier)
    except TierEngineError as e:
        raise http_error_for(e) from e

    tier_sufficient = TIER_RANK[current_tier] >= TIER_RANK[body.required_tier]
    if not (tier_sufficient and access.access_granted):
        message = "Insufficient tier privileges"
        upgrade_message = f"Upgrade to Premium to access {body.feature} features"
        if tier_sufficient and not access.feature_available:
            message = "Feature not available for your tier"
        elif tier_sufficient and not access.usage_within_limits:
            message = "Usage limit exceeded"
            upgrade_message = f"Upgrade to Premium for unlimited {body.feature}"

        logger.warning("Tier validation failed", extra={
            "user_id": body.user_id,
            "feature_name": body.feature,
            "action": body.action,
            "tier_sufficient": tier_sufficient,
            "reason": access.reason,
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "TIER_UPGRADE_REQUIRED",
                "message": message,
                **error_data,
                "upgrade_message": upgrade_message,
            },
        )

    logger.info("Tier validation successful", extra={
        "user_id": body.user_id,
        "feature_name": body.feature,
        "action": body.action,
    })
    return InternalTierValidationResponse(
        user_id=body.user_id,
        current_tier=current_tier.value,
        access_granted=True,
        feature_available=access.feature_available,
        usage_within_limits=access.usage_within_limits,
        subscription_expires_at=tier_status.subscription_expires_at,
        grace_period_active=tier_status.grace_period_active,
    )
