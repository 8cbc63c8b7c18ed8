"""
User model: the subscription-bearing account record.

The users table is owned by the wider application (auth, profile, CRUD).
This engine reads it and, through SubscriptionLifecycle only, writes the
subscription_plan and subscription_expires_at columns.

is_active is an account-level switch (suspended / deleted accounts) and is
independent of the subscription plan.
"""

import enum

from sqlalchemy import Column, String, Boolean, DateTime, Enum, Index

from stokreal.db_base import Base
from stokreal.models.base import TimestampMixin, generate_uuid


class SubscriptionPlan(str, enum.Enum):
    """Subscription tiers."""
    FREE = "free"
    PREMIUM = "premium"


def plan_enum() -> Enum:
    """Shared database enum type for plan columns."""
    return Enum(
        SubscriptionPlan,
        name="subscription_plan_enum",
        values_callable=lambda members: [m.value for m in members],
    )


class User(Base, TimestampMixin):
    """
    Account record with subscription columns.

    subscription_expires_at is only meaningful for premium users.
    Free users have no expiry concept.
    """

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    email = Column(
        String(255),
        nullable=True,
        index=True,
        comment="User email address, used for tier notifications"
    )
    first_name = Column(
        String(255),
        nullable=True,
        comment="User first name"
    )

    subscription_plan = Column(
        plan_enum(),
        nullable=False,
        default=SubscriptionPlan.FREE,
        comment="Current subscription tier"
    )
    subscription_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Premium expiry (NULL = no expiry)"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Account-level active flag (not plan-level)"
    )

    __table_args__ = (
        Index("ix_users_plan_expiry", "subscription_plan", "subscription_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, plan={self.subscription_plan})>"

    @property
    def display_name(self) -> str:
        """Name used in notifications."""
        return self.first_name or self.email or self.id
