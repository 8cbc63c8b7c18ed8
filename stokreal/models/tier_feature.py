"""
Tier feature definitions.

Definitions are GLOBAL (not user-scoped) - they describe what each tier
allows. Seeded from stokreal/config/tier_features.yml and read-only to
the engine.
"""

from sqlalchemy import Column, String, Text, Integer, Boolean, UniqueConstraint, Index

from stokreal.db_base import Base
from stokreal.models.base import TimestampMixin, generate_uuid
from stokreal.models.user import plan_enum


class TierFeatureDefinition(Base, TimestampMixin):
    """
    Per-tier rule for a single feature.

    At most one definition exists for a (tier, feature_name) pair.
    """

    __tablename__ = "tier_feature_definitions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier = Column(
        plan_enum(),
        nullable=False,
        index=True,
        comment="Subscription tier this rule applies to"
    )
    feature_name = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Feature key (e.g. product_slot)"
    )

    # NULL = unlimited
    feature_limit = Column(
        Integer,
        nullable=True,
        comment="Usage limit for the tier (NULL = unlimited)"
    )
    feature_enabled = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the feature is available at all on this tier"
    )
    description = Column(
        Text,
        nullable=True
    )

    __table_args__ = (
        UniqueConstraint("tier", "feature_name", name="uq_tier_feature_definitions_tier_feature"),
        Index("ix_tier_feature_definitions_tier_enabled", "tier", "feature_enabled"),
    )

    def __repr__(self) -> str:
        return (
            f"<TierFeatureDefinition(tier={self.tier}, feature={self.feature_name}, "
            f"limit={self.feature_limit}, enabled={self.feature_enabled})>"
        )

    @property
    def is_unlimited(self) -> bool:
        return self.feature_limit is None
