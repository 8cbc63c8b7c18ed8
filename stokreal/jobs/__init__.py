"""
Background jobs module.
"""

from stokreal.jobs.tier_scheduler import JobStats, TierScheduler, period_start

__all__ = ["JobStats", "TierScheduler", "period_start"]
