"""
Tier history ledger model.

APPEND-ONLY: rows are inserted on every plan transition and never updated
or deleted. Corrections are modelled as new rows.
"""

from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index

from stokreal.db_base import Base
from stokreal.models.base import generate_uuid, utcnow
from stokreal.models.user import plan_enum


class TierChangeReason:
    """Values for TierHistory.change_reason."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    EXPIRATION = "expiration"


class TierHistory(Base):
    """
    A single plan transition for a user.

    previous_plan is NULL only for a user's first recorded transition when
    the prior plan is unknown.
    """

    __tablename__ = "user_tier_history"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    previous_plan = Column(
        plan_enum(),
        nullable=True
    )
    new_plan = Column(
        plan_enum(),
        nullable=False
    )

    change_reason = Column(
        String(100),
        nullable=False,
        index=True,
        comment="upgrade | downgrade | expiration"
    )
    changed_by = Column(
        String(36),
        nullable=True,
        comment="Actor user id (NULL for system transitions)"
    )

    effective_date = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True
    )
    notes = Column(
        Text,
        nullable=True
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("ix_user_tier_history_user_effective", "user_id", "effective_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<TierHistory(user_id={self.user_id}, {self.previous_plan} -> {self.new_plan}, "
            f"reason={self.change_reason})>"
        )
