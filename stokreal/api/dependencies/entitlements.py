"""
Tier entitlement dependencies.

Reusable FastAPI dependencies that gate routes on tier features. The
authenticated user id is read from request.state.user_id, set by the JWT
middleware upstream.

Error mapping:
- feature not defined / not available on tier -> 402 (upgrade required)
- usage limit exceeded -> 403 (limit exceeded)
- unknown or unauthenticated user -> 401
- transient storage failure -> 503
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from stokreal.constants.features import FeatureName, get_feature_display_name
from stokreal.database.session import get_db_session
from stokreal.errors import TierEngineError, TransientStorageError, UserNotFoundError
from stokreal.services.entitlement_service import (
    DenialReason,
    EntitlementService,
    FeatureAccessResult,
)
from stokreal.services.tier_validation_service import TierValidationService

logger = logging.getLogger(__name__)


def get_current_user_id(request: Request) -> str:
    """User id set by the authentication middleware, or 401."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not authenticated",
        )
    return user_id


def http_error_for(error: TierEngineError) -> HTTPException:
    """Map an engine error to the HTTP error the client sees."""
    if isinstance(error, UserNotFoundError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not authenticated",
        )
    if isinstance(error, TransientStorageError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Tier service temporarily unavailable",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Tier validation failed",
    )


def denial_exception(display_name: str, result: FeatureAccessResult) -> HTTPException:
    if result.reason == DenialReason.USAGE_LIMIT_EXCEEDED:
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "TIER_LIMIT_EXCEEDED",
                "message": f"{display_name} limit exceeded",
                "current_usage": result.current_usage,
                "limit": result.limit,
            },
        )
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "error": "TIER_UPGRADE_REQUIRED",
            "message": f"{display_name} requires a premium plan",
            "reason": result.reason,
        },
    )


def create_feature_access_check(
    feature_name: str,
    display_name: Optional[str] = None,
) -> Callable:
    """
    Factory for a dependency that checks feature access.

    Args:
        feature_name: Catalog feature key
        display_name: Name for error messages (default: feature display name)

    Returns:
        A FastAPI dependency that returns the db session when access is granted
    """
    display_name = display_name or get_feature_display_name(feature_name).capitalize()

    def check_feature_access(
        user_id: str = Depends(get_current_user_id),
        db_session: Session = Depends(get_db_session),
    ) -> Session:
        try:
            result = EntitlementService(db_session).validate_user_feature_access(user_id, feature_name)
        except TierEngineError as e:
            raise http_error_for(e) from e

        if not result.access_granted:
            logger.warning(
                f"{display_name} access denied",
                extra={
                    "user_id": user_id,
                    "feature_name": feature_name,
                    "reason": result.reason,
                },
            )
            raise denial_exception(display_name, result)

        return db_session

    return check_feature_access


def create_creation_limit_check(feature_name: str) -> Callable:
    """
    Dependency for create endpoints: 403 when the limit is reached, and
    X-Tier-Warning / X-Tier-Upgrade-Prompt headers when approaching it.
    """

    def check_creation_limit(
        response: Response,
        user_id: str = Depends(get_current_user_id),
        db_session: Session = Depends(get_db_session),
    ) -> Session:
        try:
            validation = TierValidationService(db_session).validate_feature(user_id, feature_name)
        except TierEngineError as e:
            raise http_error_for(e) from e

        if not validation.can_proceed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "TIER_LIMIT_EXCEEDED",
                    "message": validation.reason,
                    **validation.to_dict(),
                },
            )

        if validation.warning:
            response.headers["X-Tier-Warning"] = validation.warning
        if validation.upgrade_prompt:
            response.headers["X-Tier-Upgrade-Prompt"] = validation.upgrade_prompt
        return db_session

    return check_creation_limit


# Pre-configured checks for common features
check_analytics_access = create_feature_access_check(
    FeatureName.ANALYTICS_ACCESS,
    "Analytics",
)

check_export_access = create_feature_access_check(
    FeatureName.EXPORT_CAPABILITIES,
    "Data export",
)

check_product_creation = create_creation_limit_check(FeatureName.PRODUCT_SLOT)

check_category_creation = create_creation_limit_check(FeatureName.CATEGORIES)
