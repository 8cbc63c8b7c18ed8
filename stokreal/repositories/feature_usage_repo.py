"""
Usage counter repository.

The only writer of user_tier_features.current_usage. All mutating calls
flush and never commit: the caller's unit of work owns the transaction.

Two increment modes:
- non-atomic: a single UPDATE ... SET current_usage = current_usage + :delta.
  No read-modify-write ordering guarantee against concurrent writers.
- atomic: SELECT ... FOR UPDATE on the (user_id, feature_name) row, then
  write. The row lock is held until the caller's transaction ends, so
  concurrent atomic increments for the same key serialize.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stokreal.config.tier_settings import get_tier_settings
from stokreal.errors import (
    UsageLimitExceededError,
    UsageRecordExistsError,
    UsageRecordNotFoundError,
    storage_errors,
)
from stokreal.models.base import ensure_utc, utcnow
from stokreal.models.feature_usage import UserFeatureUsage

logger = logging.getLogger(__name__)


@dataclass
class IncrementResult:
    """Counter state after an increment."""
    current_usage: int
    updated_at: datetime


class FeatureUsageRepository:
    """Per-user, per-feature usage counters."""

    def __init__(self, db_session: Session, lock_timeout_ms: Optional[int] = None):
        self.db = db_session
        self.lock_timeout_ms = (
            lock_timeout_ms if lock_timeout_ms is not None
            else get_tier_settings().usage_lock_timeout_ms
        )

    def get_record(self, user_id: str, feature_name: str) -> Optional[UserFeatureUsage]:
        with storage_errors("get_usage_record", user_id=user_id, feature_name=feature_name):
            return (
                self.db.query(UserFeatureUsage)
                .filter(
                    UserFeatureUsage.user_id == user_id,
                    UserFeatureUsage.feature_name == feature_name,
                )
                .first()
            )

    def get_usage(self, user_id: str) -> Dict[str, Dict[str, Optional[int]]]:
        """
        All counters for a user.

        Returns:
            Map of feature_name -> {"current": int, "limit": Optional[int]}.
            Empty if the user has no counters.
        """
        with storage_errors("get_usage", user_id=user_id):
            records = (
                self.db.query(UserFeatureUsage)
                .filter(UserFeatureUsage.user_id == user_id)
                .all()
            )
        return {
            record.feature_name: {
                "current": record.current_usage,
                "limit": record.usage_limit,
            }
            for record in records
        }

    def increment(
        self,
        user_id: str,
        feature_name: str,
        delta: int,
        atomic: bool = False,
        max_usage: Optional[int] = None
    ) -> IncrementResult:
        """
        Add delta (may be negative) to a counter.

        Args:
            user_id: Counter owner
            feature_name: Feature key
            delta: Amount to add
            atomic: Lock the row and read-modify-write inside the caller's
                transaction
            max_usage: Atomic mode only. Refuse the increment if the new
                value would exceed this cap.

        Raises:
            UsageRecordNotFoundError: If no counter row exists
            UsageLimitExceededError: If max_usage would be exceeded
            TransientStorageError: On storage failure or lock timeout
        """
        if atomic:
            return self._increment_locked(user_id, feature_name, delta, max_usage)
        if max_usage is not None:
            raise ValueError("max_usage requires atomic=True")
        return self._increment_in_place(user_id, feature_name, delta)

    def _increment_in_place(self, user_id: str, feature_name: str, delta: int) -> IncrementResult:
        with storage_errors("increment_usage", user_id=user_id, feature_name=feature_name):
            result = self.db.execute(
                update(UserFeatureUsage)
                .where(
                    UserFeatureUsage.user_id == user_id,
                    UserFeatureUsage.feature_name == feature_name,
                )
                .values(
                    current_usage=UserFeatureUsage.current_usage + delta,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise UsageRecordNotFoundError(user_id, feature_name)

            record = (
                self.db.query(UserFeatureUsage)
                .populate_existing()
                .filter(
                    UserFeatureUsage.user_id == user_id,
                    UserFeatureUsage.feature_name == feature_name,
                )
                .one()
            )

        return IncrementResult(
            current_usage=record.current_usage,
            updated_at=ensure_utc(record.updated_at),
        )

    def _increment_locked(
        self,
        user_id: str,
        feature_name: str,
        delta: int,
        max_usage: Optional[int]
    ) -> IncrementResult:
        with storage_errors("increment_usage_atomic", user_id=user_id, feature_name=feature_name):
            self._set_lock_timeout()
            record = (
                self.db.query(UserFeatureUsage)
                .populate_existing()
                .with_for_update()
                .filter(
                    UserFeatureUsage.user_id == user_id,
                    UserFeatureUsage.feature_name == feature_name,
                )
                .first()
            )
            if record is None:
                logger.error("Atomic increment on unprovisioned counter", extra={
                    "user_id": user_id,
                    "feature_name": feature_name,
                })
                raise UsageRecordNotFoundError(user_id, feature_name)

            new_usage = record.current_usage + delta
            if max_usage is not None and delta > 0 and new_usage > max_usage:
                raise UsageLimitExceededError(
                    user_id, feature_name, record.current_usage, max_usage
                )

            record.current_usage = new_usage
            record.updated_at = utcnow()
            self.db.flush()

        return IncrementResult(
            current_usage=record.current_usage,
            updated_at=ensure_utc(record.updated_at),
        )

    def _set_lock_timeout(self) -> None:
        # SET LOCAL only lasts until the end of the current transaction
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.execute(text(f"SET LOCAL lock_timeout = '{int(self.lock_timeout_ms)}ms'"))

    def create(
        self,
        user_id: str,
        feature_name: str,
        usage_limit: Optional[int] = None,
        initial_usage: int = 0
    ) -> UserFeatureUsage:
        """
        Create a counter row. Flushes, does not commit.

        Raises:
            UsageRecordExistsError: If (user_id, feature_name) already exists
        """
        if self.get_record(user_id, feature_name) is not None:
            raise UsageRecordExistsError(user_id, feature_name)

        record = UserFeatureUsage(
            user_id=user_id,
            feature_name=feature_name,
            current_usage=initial_usage,
            usage_limit=usage_limit,
            last_reset_at=utcnow(),
        )

        try:
            with storage_errors("create_usage_record", user_id=user_id, feature_name=feature_name):
                # Savepoint: a conflict discards only this insert, not the caller's transaction
                with self.db.begin_nested():
                    self.db.add(record)
                    self.db.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent create for the same key
            logger.warning("Usage record create conflict", extra={
                "user_id": user_id,
                "feature_name": feature_name,
                "error": str(e),
            })
            raise UsageRecordExistsError(user_id, feature_name) from e

        logger.info("Usage record created", extra={
            "user_id": user_id,
            "feature_name": feature_name,
            "usage_limit": usage_limit,
        })
        return record

    def ensure_record(
        self,
        user_id: str,
        feature_name: str,
        usage_limit: Optional[int] = None
    ) -> UserFeatureUsage:
        """Return the existing counter or create it."""
        record = self.get_record(user_id, feature_name)
        if record is not None:
            return record
        try:
            return self.create(user_id, feature_name, usage_limit=usage_limit)
        except UsageRecordExistsError:
            record = self.get_record(user_id, feature_name)
            if record is None:
                raise
            return record

    def reset_counters(
        self,
        reset_type: str,
        as_of: Optional[datetime] = None,
        feature_names: Optional[Iterable[str]] = None
    ) -> int:
        """
        Zero counters last reset before as_of.

        Re-running with the same as_of touches no rows.

        Args:
            reset_type: Period label, used for logging only
            as_of: Reset timestamp (default now)
            feature_names: Features to reset (None = all)

        Returns:
            Number of counters reset
        """
        as_of = ensure_utc(as_of) or utcnow()
        names: Optional[List[str]] = list(feature_names) if feature_names is not None else None
        if names is not None and not names:
            return 0

        stmt = update(UserFeatureUsage).where(UserFeatureUsage.last_reset_at < as_of)
        if names is not None:
            stmt = stmt.where(UserFeatureUsage.feature_name.in_(names))
        stmt = stmt.values(
            current_usage=0,
            last_reset_at=as_of,
            updated_at=utcnow(),
        ).execution_options(synchronize_session=False)

        with storage_errors("reset_counters", reset_type=reset_type):
            result = self.db.execute(stmt)

        logger.info("Usage counters reset", extra={
            "reset_type": reset_type,
            "as_of": as_of.isoformat(),
            "features": names,
            "rows_reset": result.rowcount,
        })
        return result.rowcount
