"""
Operational settings for the tier engine.

All values come from environment variables with safe defaults. The grace
period itself is NOT configurable (fixed at 7 days in
services/subscription_lifecycle.py).

Usage:
    from stokreal.config.tier_settings import get_tier_settings

    settings = get_tier_settings()
    settings.downgrade_batch_size
"""

import os
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Invalid integer setting, using default",
            extra={"setting": name, "value": raw, "default": default},
        )
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(
            "Invalid float setting, using default",
            extra={"setting": name, "value": raw, "default": default},
        )
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


@dataclass(frozen=True)
class TierSettings:
    """Tier scheduler and enforcement settings."""

    # Scheduler
    scheduler_enabled: bool = True
    downgrade_interval_seconds: int = 15 * 60
    notification_interval_seconds: int = 24 * 60 * 60
    downgrade_batch_size: int = 200
    notification_batch_size: int = 500

    # Notifications
    expiration_warning_days: int = 7
    notifier: str = "log"

    # Enforcement
    usage_warning_threshold: float = 0.8
    usage_lock_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> "TierSettings":
        return cls(
            scheduler_enabled=_env_bool("ENABLE_TIER_SCHEDULER", True),
            downgrade_interval_seconds=_env_int("TIER_DOWNGRADE_INTERVAL_SECONDS", 15 * 60),
            notification_interval_seconds=_env_int("TIER_NOTIFICATION_INTERVAL_SECONDS", 24 * 60 * 60),
            downgrade_batch_size=_env_int("TIER_DOWNGRADE_BATCH_SIZE", 200),
            notification_batch_size=_env_int("TIER_NOTIFICATION_BATCH_SIZE", 500),
            expiration_warning_days=_env_int("TIER_EXPIRATION_WARNING_DAYS", 7),
            notifier=os.getenv("TIER_NOTIFIER", "log").strip().lower(),
            usage_warning_threshold=_env_float("TIER_USAGE_WARNING_THRESHOLD", 0.8),
            usage_lock_timeout_ms=_env_int("TIER_USAGE_LOCK_TIMEOUT_MS", 5000),
        )


_settings: Optional[TierSettings] = None
_settings_lock = Lock()


def get_tier_settings() -> TierSettings:
    """Settings loader - reads the environment once, reuses thereafter."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = TierSettings.from_env()
    return _settings


def reset_tier_settings() -> None:
    """Drop cached settings (tests, config reload)."""
    global _settings
    with _settings_lock:
        _settings = None
