"""
User lookup for the tier engine.

The users table belongs to the wider application. This repository reads it
and writes only the subscription columns, on behalf of SubscriptionLifecycle.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from stokreal.errors import storage_errors
from stokreal.models.user import SubscriptionPlan, User

logger = logging.getLogger(__name__)


class UsersRepository:

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_id(self, user_id: str) -> Optional[User]:
        with storage_errors("get_user", user_id=user_id):
            return self.db.query(User).filter(User.id == user_id).first()

    def update_subscription(
        self,
        user: User,
        plan: SubscriptionPlan,
        expires_at: Optional[datetime]
    ) -> User:
        """Set plan and expiry. Flushes, does not commit."""
        user.subscription_plan = plan
        user.subscription_expires_at = expires_at
        with storage_errors("update_subscription", user_id=user.id):
            self.db.flush()
        return user

    def list_premium_expired_before(
        self,
        cutoff: datetime,
        limit: int,
        offset: int = 0
    ) -> List[User]:
        """
        Active premium users whose subscription expired at or before cutoff.

        Used by the downgrade job; ordered by expiry so batches are stable.
        """
        with storage_errors("list_premium_expired_before"):
            return (
                self.db.query(User)
                .filter(
                    User.subscription_plan == SubscriptionPlan.PREMIUM,
                    User.is_active == True,  # noqa: E712
                    User.subscription_expires_at.isnot(None),
                    User.subscription_expires_at <= cutoff,
                )
                .order_by(User.subscription_expires_at.asc(), User.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )

    def list_premium_expiring_between(
        self,
        start: datetime,
        end: datetime,
        limit: int,
        offset: int = 0
    ) -> List[User]:
        """Active premium users with start < expiry <= end."""
        with storage_errors("list_premium_expiring_between"):
            return (
                self.db.query(User)
                .filter(
                    User.subscription_plan == SubscriptionPlan.PREMIUM,
                    User.is_active == True,  # noqa: E712
                    User.subscription_expires_at > start,
                    User.subscription_expires_at <= end,
                )
                .order_by(User.subscription_expires_at.asc(), User.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )
