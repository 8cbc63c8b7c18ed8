"""
Feature definitions repository (the tier feature catalog).

Definitions are global (not user-scoped). The engine only reads them;
upsert_definition and sync_from_seeds exist for the seed script.
"""

import logging
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from stokreal.config.tier_features import FeatureSeed
from stokreal.errors import storage_errors
from stokreal.models.tier_feature import TierFeatureDefinition
from stokreal.models.user import SubscriptionPlan

logger = logging.getLogger(__name__)

PlanLike = Union[SubscriptionPlan, str]


class FeatureDefinitionsRepository:
    """Read access to (tier, feature_name) rules."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_definitions(self, tier: PlanLike) -> List[TierFeatureDefinition]:
        """
        All definitions for a tier, ordered by feature name.

        Raises:
            TransientStorageError: If the catalog cannot be read
        """
        plan = SubscriptionPlan(tier)
        with storage_errors("get_definitions", tier=plan.value):
            return (
                self.db.query(TierFeatureDefinition)
                .filter(TierFeatureDefinition.tier == plan)
                .order_by(TierFeatureDefinition.feature_name.asc())
                .all()
            )

    def get_definition(
        self,
        tier: PlanLike,
        feature_name: str
    ) -> Optional[TierFeatureDefinition]:
        """
        Single definition, or None if the feature is not defined for the tier.

        Raises:
            TransientStorageError: If the catalog cannot be read
        """
        plan = SubscriptionPlan(tier)
        with storage_errors("get_definition", tier=plan.value, feature_name=feature_name):
            return (
                self.db.query(TierFeatureDefinition)
                .filter(
                    TierFeatureDefinition.tier == plan,
                    TierFeatureDefinition.feature_name == feature_name,
                )
                .first()
            )

    def get_feature_limits(self, tier: PlanLike) -> Dict[str, Dict[str, object]]:
        """Map of feature_name -> {"limit", "enabled"} for a tier."""
        return {
            definition.feature_name: {
                "limit": definition.feature_limit,
                "enabled": definition.feature_enabled,
            }
            for definition in self.get_definitions(tier)
        }

    def upsert_definition(
        self,
        tier: PlanLike,
        feature_name: str,
        feature_limit: Optional[int],
        feature_enabled: bool = True,
        description: Optional[str] = None
    ) -> TierFeatureDefinition:
        """
        Create or update a definition. Flushes, does not commit.

        Returns:
            The stored definition
        """
        if feature_limit is not None and feature_limit < 0:
            raise ValueError(f"feature_limit must be >= 0 or None, got {feature_limit}")

        plan = SubscriptionPlan(tier)
        definition = self.get_definition(plan, feature_name)
        if definition is None:
            definition = TierFeatureDefinition(
                tier=plan,
                feature_name=feature_name,
            )
            self.db.add(definition)
            action = "created"
        else:
            action = "updated"

        definition.feature_limit = feature_limit
        definition.feature_enabled = feature_enabled
        definition.description = description

        with storage_errors("upsert_definition", tier=plan.value, feature_name=feature_name):
            self.db.flush()

        logger.info(f"Tier feature definition {action}", extra={
            "tier": plan.value,
            "feature_name": feature_name,
            "feature_limit": feature_limit,
            "feature_enabled": feature_enabled,
        })
        return definition

    def sync_from_seeds(self, seeds: Iterable[FeatureSeed]) -> int:
        """
        Upsert every seed row. Flushes, does not commit.

        Rows not present in the seeds are left alone.

        Returns:
            Number of definitions written
        """
        count = 0
        for seed in seeds:
            self.upsert_definition(
                tier=seed.tier,
                feature_name=seed.feature_name,
                feature_limit=seed.feature_limit,
                feature_enabled=seed.feature_enabled,
                description=seed.description,
            )
            count += 1
        return count
