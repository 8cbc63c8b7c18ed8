"""
Structured error classes for the tier engine.

Taxonomy:
- NotFoundError: user (or other required record) is absent
- ConflictError: create on an existing composite key
- TransientStorageError: storage/connectivity failure, safe to retry
- InvariantViolationError: provisioning bug upstream, never retried

Policy denials (feature disabled, limit reached, feature not defined) are
NOT exceptions on the validation path - they are returned as results.
FeatureAccessDeniedError exists only for consume_feature, where the denial
must abort the caller's unit of work.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy.exc import DBAPIError, OperationalError

logger = logging.getLogger(__name__)


class TierEngineError(Exception):
    """Base exception for all tier engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context: Dict[str, Any] = context or {}


class NotFoundError(TierEngineError):
    """A required record does not exist."""
    pass


class UserNotFoundError(NotFoundError):
    """User record is absent."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User '{user_id}' not found", {"user_id": user_id})


class ConflictError(TierEngineError):
    """Record with the same composite key already exists."""
    pass


class UsageRecordExistsError(ConflictError):
    """Usage counter for (user_id, feature_name) already exists."""

    def __init__(self, user_id: str, feature_name: str):
        self.user_id = user_id
        self.feature_name = feature_name
        super().__init__(
            f"Usage record for user '{user_id}' and feature '{feature_name}' already exists",
            {"user_id": user_id, "feature_name": feature_name},
        )


class TransientStorageError(TierEngineError):
    """Storage or connectivity failure. Callers may retry."""
    pass


class InvariantViolationError(TierEngineError):
    """An engine invariant does not hold. Indicates an upstream bug."""
    pass


class UsageRecordNotFoundError(InvariantViolationError):
    """Increment attempted on a counter that was never provisioned."""

    def __init__(self, user_id: str, feature_name: str):
        self.user_id = user_id
        self.feature_name = feature_name
        super().__init__(
            f"Feature usage record not found for user '{user_id}', feature '{feature_name}'",
            {"user_id": user_id, "feature_name": feature_name},
        )


class UsageLimitExceededError(TierEngineError):
    """Capped atomic increment would push usage past the limit."""

    def __init__(self, user_id: str, feature_name: str, current_usage: int, limit: int):
        self.user_id = user_id
        self.feature_name = feature_name
        self.current_usage = current_usage
        self.limit = limit
        super().__init__(
            f"Usage limit reached for feature '{feature_name}' ({current_usage}/{limit})",
            {
                "user_id": user_id,
                "feature_name": feature_name,
                "current_usage": current_usage,
                "limit": limit,
            },
        )


class FeatureAccessDeniedError(TierEngineError):
    """
    Raised by consume_feature when access is denied.

    Carries the denial result so the boundary can map it to a response.
    """

    def __init__(self, feature_name: str, result: Any):
        self.feature_name = feature_name
        self.result = result
        self.reason = getattr(result, "reason", None)
        super().__init__(
            f"Feature '{feature_name}' denied: {self.reason}",
            {"feature_name": feature_name, "reason": self.reason},
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "feature_access_denied",
            "feature": self.feature_name,
            "reason": self.reason,
            "current_usage": getattr(self.result, "current_usage", None),
            "limit": getattr(self.result, "limit", None),
        }


@contextmanager
def storage_errors(operation: str, **context: Any) -> Iterator[None]:
    """
    Translate low-level storage failures into TransientStorageError.

    Integrity errors are left alone so callers can map them to conflicts.
    """
    try:
        yield
    except OperationalError as e:
        _log_storage_failure(operation, e, context)
        raise TransientStorageError(f"Storage failure during {operation}: {e}", context) from e
    except DBAPIError as e:
        if not e.connection_invalidated:
            raise
        _log_storage_failure(operation, e, context)
        raise TransientStorageError(f"Connection lost during {operation}: {e}", context) from e


def _log_storage_failure(operation: str, error: Exception, context: Dict[str, Any]) -> None:
    logger.error(
        "Storage failure",
        extra={"operation": operation, "error": str(error), **context},
    )
