"""
Per-user feature usage counters.

One row per (user_id, feature_name). Created lazily on first use or
provisioned at signup, updated on every tracked action, reset (never
deleted) by the periodic reset job.

usage_limit is a SNAPSHOT of the catalog limit at creation time and may
drift from tier_feature_definitions if the catalog changes later.
"""

from sqlalchemy import (
    Column, String, Integer, DateTime,
    ForeignKey, UniqueConstraint, Index
)

from stokreal.db_base import Base
from stokreal.models.base import TimestampMixin, generate_uuid, utcnow


class UserFeatureUsage(Base, TimestampMixin):
    """
    Usage counter for a single user and feature.

    current_usage is mutated only by FeatureUsageRepository. The engine does
    not clamp it: a caller that increments without validating first can push
    it past usage_limit.
    """

    __tablename__ = "user_tier_features"

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
    feature_name = Column(
        String(100),
        nullable=False,
        index=True
    )

    current_usage = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Units consumed since last reset"
    )
    usage_limit = Column(
        Integer,
        nullable=True,
        comment="Limit snapshot at creation (NULL = unlimited)"
    )
    last_reset_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
        comment="When current_usage was last reset to zero"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "feature_name", name="uq_user_tier_features_user_feature"),
        Index("ix_user_tier_features_feature_reset", "feature_name", "last_reset_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserFeatureUsage(user_id={self.user_id}, feature={self.feature_name}, "
            f"current={self.current_usage}, limit={self.usage_limit})>"
        )
