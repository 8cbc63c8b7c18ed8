"""
Repositories for the tier engine.

Mutating methods flush and never commit; services and units of work own
the transaction.
"""

from stokreal.repositories.feature_definitions_repo import FeatureDefinitionsRepository
from stokreal.repositories.feature_usage_repo import FeatureUsageRepository, IncrementResult
from stokreal.repositories.tier_history_repo import TierHistoryRepository
from stokreal.repositories.users_repo import UsersRepository

__all__ = [
    "FeatureDefinitionsRepository",
    "FeatureUsageRepository",
    "IncrementResult",
    "TierHistoryRepository",
    "UsersRepository",
]
