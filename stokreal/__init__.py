"""
StokReal tier entitlement and usage-quota engine.

Resolves subscription state (expiry and grace period), meters per-feature
usage with race-safe counters, and decides feature access per tier.
"""

__version__ = "1.0.0"
