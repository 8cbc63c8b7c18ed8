"""
Subscription lifecycle: expiry and grace-period state, plus tier transitions.

States:
- active: free, or premium with no expiry / a future expiry
- expired_in_grace: premium, expired, grace period (7 days) still running
- expired_out_of_grace: premium, expired, grace period over

Premium entitlements remain while active or in grace. Out of grace the
effective plan is free even before the downgrade job has run.

The derivation functions are pure and never raise. Transitions read the user,
write plan/expiry, append history, commit, then notify (best-effort).
"""

import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from stokreal.errors import UserNotFoundError
from stokreal.models.base import ensure_utc, utcnow
from stokreal.models.tier_history import TierChangeReason, TierHistory
from stokreal.models.user import SubscriptionPlan, User
from stokreal.repositories.tier_history_repo import TierHistoryRepository
from stokreal.repositories.users_repo import UsersRepository
from stokreal.services.tier_notifications import TierNotifier, get_tier_notifier

logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = 7
GRACE_PERIOD = timedelta(days=GRACE_PERIOD_DAYS)


class SubscriptionState(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED_IN_GRACE = "expired_in_grace"
    EXPIRED_OUT_OF_GRACE = "expired_out_of_grace"


def is_expired(expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expiry is None:
        return False
    return ensure_utc(expiry) < (ensure_utc(now) or utcnow())


def grace_period_end(expiry: Optional[datetime]) -> Optional[datetime]:
    if expiry is None:
        return None
    return ensure_utc(expiry) + GRACE_PERIOD


def is_grace_period_active(grace_end: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if grace_end is None:
        return False
    return ensure_utc(grace_end) > (ensure_utc(now) or utcnow())


def days_until_expiration(expiry: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """Whole days until expiry, rounded up. Negative once expired."""
    if expiry is None:
        return None
    delta = ensure_utc(expiry) - (ensure_utc(now) or utcnow())
    return math.ceil(delta / timedelta(days=1))


def resolve_subscription_state(
    plan: Union[SubscriptionPlan, str],
    expiry: Optional[datetime],
    now: Optional[datetime] = None
) -> SubscriptionState:
    now = ensure_utc(now) or utcnow()
    if SubscriptionPlan(plan) != SubscriptionPlan.PREMIUM:
        return SubscriptionState.ACTIVE
    if not is_expired(expiry, now):
        return SubscriptionState.ACTIVE
    if is_grace_period_active(grace_period_end(expiry), now):
        return SubscriptionState.EXPIRED_IN_GRACE
    return SubscriptionState.EXPIRED_OUT_OF_GRACE


def effective_plan(
    plan: Union[SubscriptionPlan, str],
    expiry: Optional[datetime],
    now: Optional[datetime] = None
) -> SubscriptionPlan:
    """Plan whose entitlements apply right now."""
    state = resolve_subscription_state(plan, expiry, now)
    if state == SubscriptionState.EXPIRED_OUT_OF_GRACE:
        return SubscriptionPlan.FREE
    return SubscriptionPlan(plan)


@dataclass
class TierChangeResult:
    """Outcome of an upgrade/downgrade call."""
    user_id: str
    changed: bool
    previous_plan: SubscriptionPlan
    new_plan: SubscriptionPlan
    subscription_expires_at: Optional[datetime]
    history: Optional[TierHistory] = None
    notified: bool = False


class SubscriptionLifecycle:
    """
    Owns writes to users.subscription_plan / subscription_expires_at.

    Each transition commits its own transaction. Concurrent transitions for
    the same user are last-write-wins.
    """

    def __init__(self, db_session: Session, notifier: Optional[TierNotifier] = None):
        self.db = db_session
        self.users = UsersRepository(db_session)
        self.history = TierHistoryRepository(db_session)
        self.notifier = notifier or get_tier_notifier()

    def _get_user(self, user_id: str) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def _transition(
        self,
        user: User,
        new_plan: SubscriptionPlan,
        expires_at: Optional[datetime],
        reason: str,
        changed_by: Optional[str],
        notes: Optional[str]
    ) -> TierChangeResult:
        previous_plan = SubscriptionPlan(user.subscription_plan)
        now = utcnow()
        try:
            self.users.update_subscription(user, new_plan, expires_at)
            entry = self.history.append(
                user_id=user.id,
                previous_plan=previous_plan,
                new_plan=new_plan,
                change_reason=reason,
                changed_by=changed_by,
                effective_date=now,
                notes=notes,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Subscription tier changed", extra={
            "user_id": user.id,
            "previous_plan": previous_plan.value,
            "new_plan": new_plan.value,
            "change_reason": reason,
            "changed_by": changed_by,
        })

        return TierChangeResult(
            user_id=user.id,
            changed=True,
            previous_plan=previous_plan,
            new_plan=new_plan,
            subscription_expires_at=ensure_utc(expires_at),
            history=entry,
            notified=self._notify(user, previous_plan, new_plan, reason),
        )

    def _notify(
        self,
        user: User,
        previous_plan: SubscriptionPlan,
        new_plan: SubscriptionPlan,
        reason: str
    ) -> bool:
        try:
            delivered = self.notifier.notify_tier_change(user, previous_plan, new_plan, reason)
        except Exception as e:
            logger.error("Tier change notification failed", extra={
                "user_id": user.id,
                "change_reason": reason,
                "error": str(e),
            }, exc_info=True)
            return False

        if not delivered:
            logger.warning("Tier change notification not delivered", extra={
                "user_id": user.id,
                "change_reason": reason,
            })
        return bool(delivered)

    def upgrade_to_premium(
        self,
        user_id: str,
        expires_at: Optional[datetime] = None,
        changed_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> TierChangeResult:
        """
        Move a user to premium.

        Always permitted. Upgrading a premium user records history again and
        replaces the expiry; without expires_at an existing expiry is kept.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = self._get_user(user_id)
        if expires_at is None and user.subscription_plan == SubscriptionPlan.PREMIUM:
            expires_at = user.subscription_expires_at

        return self._transition(
            user,
            SubscriptionPlan.PREMIUM,
            ensure_utc(expires_at),
            TierChangeReason.UPGRADE,
            changed_by,
            notes,
        )

    def downgrade_to_free(
        self,
        user_id: str,
        changed_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> TierChangeResult:
        """
        Move a user to free and clear the expiry.

        No-op (changed=False, no history row) when already free.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = self._get_user(user_id)
        if user.subscription_plan == SubscriptionPlan.FREE:
            logger.info("Downgrade skipped, user already on free tier", extra={"user_id": user_id})
            return TierChangeResult(
                user_id=user_id,
                changed=False,
                previous_plan=SubscriptionPlan.FREE,
                new_plan=SubscriptionPlan.FREE,
                subscription_expires_at=None,
            )

        return self._transition(
            user,
            SubscriptionPlan.FREE,
            None,
            TierChangeReason.DOWNGRADE,
            changed_by,
            notes,
        )

    def perform_automatic_downgrade(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """
        Downgrade a premium user whose grace period is over.

        Returns:
            True if the user was downgraded. False for every other case
            (unknown user, free, not expired, still in grace); False is a
            normal outcome, not an error.
        """
        user = self.users.get_by_id(user_id)
        if user is None:
            return False

        state = resolve_subscription_state(
            user.subscription_plan, user.subscription_expires_at, now
        )
        if user.subscription_plan != SubscriptionPlan.PREMIUM or state != SubscriptionState.EXPIRED_OUT_OF_GRACE:
            return False

        self._transition(
            user,
            SubscriptionPlan.FREE,
            None,
            TierChangeReason.EXPIRATION,
            None,
            None,
        )
        return True

    def list_history(self, user_id: str) -> List[TierHistory]:
        return self.history.list_for_user(user_id)
