"""
Tier history ledger repository.

Append-only: there is no update or delete method.
"""

import logging
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from stokreal.errors import storage_errors
from stokreal.models.base import utcnow
from stokreal.models.tier_history import TierHistory
from stokreal.models.user import SubscriptionPlan

logger = logging.getLogger(__name__)


class TierHistoryRepository:
    """Append and list plan transitions."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def append(
        self,
        user_id: str,
        previous_plan: Optional[Union[SubscriptionPlan, str]],
        new_plan: Union[SubscriptionPlan, str],
        change_reason: str,
        changed_by: Optional[str] = None,
        effective_date: Optional[datetime] = None,
        notes: Optional[str] = None
    ) -> TierHistory:
        """
        Record a plan transition. Flushes, does not commit.

        Args:
            user_id: Affected user
            previous_plan: Plan before the change (None if unknown)
            new_plan: Plan after the change
            change_reason: One of TierChangeReason
            changed_by: Actor id (None for system transitions)
            effective_date: When the change takes effect (default now)
            notes: Free-text context
        """
        entry = TierHistory(
            user_id=user_id,
            previous_plan=SubscriptionPlan(previous_plan) if previous_plan is not None else None,
            new_plan=SubscriptionPlan(new_plan),
            change_reason=change_reason,
            changed_by=changed_by,
            effective_date=effective_date or utcnow(),
            notes=notes,
        )
        self.db.add(entry)

        with storage_errors("append_tier_history", user_id=user_id):
            self.db.flush()

        logger.info("Tier history recorded", extra={
            "user_id": user_id,
            "previous_plan": entry.previous_plan.value if entry.previous_plan else None,
            "new_plan": entry.new_plan.value,
            "change_reason": change_reason,
        })
        return entry

    def list_for_user(self, user_id: str) -> List[TierHistory]:
        """Transitions for a user, oldest first."""
        with storage_errors("list_tier_history", user_id=user_id):
            return (
                self.db.query(TierHistory)
                .filter(TierHistory.user_id == user_id)
                .order_by(TierHistory.effective_date.asc(), TierHistory.created_at.asc())
                .all()
            )
