"""
Tier scheduler job.

Periodic sweeps over the tier engine:
- downgrade: premium users past the grace period move to free
- notify: expiration warnings (next N days) and grace-period notices
  (expired in the last 24h)
- reset: zero usage counters whose feature resets daily/weekly/monthly

Each job is safe to re-run. The scheduler is owned by the host process
(no module-level instance); each job skips if a previous run is still going.

Usage:
    python -m stokreal.jobs.tier_scheduler downgrade
    python -m stokreal.jobs.tier_scheduler notify
    python -m stokreal.jobs.tier_scheduler reset --period daily
    python -m stokreal.jobs.tier_scheduler run
"""

import sys
import argparse
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from stokreal.config.tier_features import (
    VALID_RESET_PERIODS,
    TierFeaturesConfig,
    get_tier_features_config,
)
from stokreal.config.tier_settings import TierSettings, get_tier_settings
from stokreal.database.session import get_session_factory, unit_of_work
from stokreal.models.base import ensure_utc, utcnow
from stokreal.repositories.feature_usage_repo import FeatureUsageRepository
from stokreal.repositories.users_repo import UsersRepository
from stokreal.services.subscription_lifecycle import (
    GRACE_PERIOD,
    SubscriptionLifecycle,
    days_until_expiration,
    grace_period_end,
)
from stokreal.services.tier_notifications import TierNotifier, get_tier_notifier

logger = logging.getLogger(__name__)

# Window for "your subscription just expired" notices
GRACE_NOTICE_WINDOW = timedelta(hours=24)


class JobStats:
    """Track a single job run."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        self.processed = 0
        self.succeeded = 0
        self.skipped = 0
        self.errors = 0
        self.start_time = utcnow()

    def to_dict(self) -> dict:
        duration = (utcnow() - self.start_time).total_seconds()
        return {
            "job": self.job_name,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration_seconds": duration,
        }


def period_start(reset_type: str, now: Optional[datetime] = None) -> datetime:
    """Start (UTC midnight) of the current daily/weekly/monthly period."""
    now = ensure_utc(now) or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if reset_type == "daily":
        return midnight
    if reset_type == "weekly":
        return midnight - timedelta(days=midnight.weekday())
    if reset_type == "monthly":
        return midnight.replace(day=1)
    raise ValueError(f"Unknown reset period: {reset_type}")


class TierScheduler:
    """
    Runs tier jobs on demand or on a background thread.

    Args:
        session_factory: Builds sessions (default: application factory)
        notifier: Notification sink (default: get_tier_notifier())
        settings: Batch sizes, intervals, warning window
        catalog_config: Source of per-feature reset periods
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        notifier: Optional[TierNotifier] = None,
        settings: Optional[TierSettings] = None,
        catalog_config: Optional[TierFeaturesConfig] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_tier_settings()
        self.notifier = notifier or get_tier_notifier(self.settings)
        self.catalog_config = catalog_config or get_tier_features_config()

        self._downgrade_lock = threading.Lock()
        self._notification_lock = threading.Lock()
        self._reset_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run_exclusive(self, job_name: str, lock: threading.Lock, job: Callable[[], JobStats]) -> Optional[JobStats]:
        if not lock.acquire(blocking=False):
            logger.warning("Tier job already running, skipping", extra={"job": job_name})
            return None
        try:
            stats = job()
        finally:
            lock.release()
        logger.info("Tier job completed", extra=stats.to_dict())
        return stats

    # ------------------------------------------------------------------
    # Downgrades
    # ------------------------------------------------------------------

    def run_downgrade_job_once(self, now: Optional[datetime] = None) -> Optional[JobStats]:
        """Downgrade every premium user whose grace period has ended."""
        return self._run_exclusive(
            "downgrade", self._downgrade_lock, lambda: self._downgrade(ensure_utc(now) or utcnow())
        )

    def _downgrade(self, now: datetime) -> JobStats:
        stats = JobStats("downgrade")
        cutoff = now - GRACE_PERIOD
        batch_size = self.settings.downgrade_batch_size

        session: Session = self.session_factory()
        try:
            users = UsersRepository(session)
            lifecycle = SubscriptionLifecycle(session, notifier=self.notifier)
            # Downgraded users drop out of the candidate query; only rows
            # left behind (skipped or failed) shift the offset.
            offset = 0
            while True:
                candidate_ids = [
                    user.id for user in users.list_premium_expired_before(cutoff, batch_size, offset)
                ]
                if not candidate_ids:
                    break

                for user_id in candidate_ids:
                    stats.processed += 1
                    try:
                        if lifecycle.perform_automatic_downgrade(user_id, now=now):
                            stats.succeeded += 1
                        else:
                            stats.skipped += 1
                            offset += 1
                    except Exception as e:
                        session.rollback()
                        stats.errors += 1
                        offset += 1
                        logger.error("Automatic downgrade failed", extra={
                            "user_id": user_id,
                            "error": str(e),
                        }, exc_info=True)
        finally:
            session.close()
        return stats

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def run_notification_job_once(self, now: Optional[datetime] = None) -> Optional[JobStats]:
        """Send expiration warnings and grace-period notices."""
        return self._run_exclusive(
            "notify", self._notification_lock, lambda: self._notify(ensure_utc(now) or utcnow())
        )

    def _notify(self, now: datetime) -> JobStats:
        stats = JobStats("notify")
        batch_size = self.settings.notification_batch_size
        warning_end = now + timedelta(days=self.settings.expiration_warning_days)

        session: Session = self.session_factory()
        try:
            users = UsersRepository(session)

            offset = 0
            while True:
                batch = users.list_premium_expiring_between(now, warning_end, batch_size, offset)
                if not batch:
                    break
                offset += len(batch)
                for user in batch:
                    days_left = days_until_expiration(user.subscription_expires_at, now)
                    self._deliver(
                        stats, user.id, "expiration_warning",
                        lambda u=user, d=days_left: self.notifier.notify_expiration_warning(u, d),
                    )

            offset = 0
            while True:
                batch = users.list_premium_expiring_between(
                    now - GRACE_NOTICE_WINDOW, now, batch_size, offset
                )
                if not batch:
                    break
                offset += len(batch)
                for user in batch:
                    grace_end = grace_period_end(user.subscription_expires_at)
                    self._deliver(
                        stats, user.id, "grace_period",
                        lambda u=user, g=grace_end: self.notifier.notify_grace_period(u, g),
                    )
        finally:
            session.close()
        return stats

    def _deliver(self, stats: JobStats, user_id: str, kind: str, send: Callable[[], bool]) -> None:
        stats.processed += 1
        try:
            delivered = send()
        except Exception as e:
            stats.errors += 1
            logger.error("Tier notification failed", extra={
                "user_id": user_id,
                "notification": kind,
                "error": str(e),
            }, exc_info=True)
            return

        if delivered:
            stats.succeeded += 1
        else:
            stats.skipped += 1
            logger.warning("Tier notification not delivered", extra={
                "user_id": user_id,
                "notification": kind,
            })

    # ------------------------------------------------------------------
    # Usage resets
    # ------------------------------------------------------------------

    def run_usage_reset_once(self, reset_type: str, as_of: Optional[datetime] = None) -> Optional[JobStats]:
        """
        Reset counters for features configured with reset_period == reset_type.

        as_of defaults to the start of the current period, so repeated runs
        within a period reset nothing.
        """
        if reset_type not in VALID_RESET_PERIODS:
            raise ValueError(f"Unknown reset period: {reset_type}")
        as_of = ensure_utc(as_of) or period_start(reset_type)
        return self._run_exclusive(
            f"reset_{reset_type}", self._reset_lock, lambda: self._reset(reset_type, as_of)
        )

    def _reset(self, reset_type: str, as_of: datetime) -> JobStats:
        stats = JobStats(f"reset_{reset_type}")
        features: List[str] = self.catalog_config.features_with_reset(reset_type)
        if not features:
            logger.info("No features configured for reset", extra={"reset_type": reset_type})
            return stats

        with unit_of_work(self.session_factory) as session:
            count = FeatureUsageRepository(session).reset_counters(
                reset_type, as_of=as_of, feature_names=features
            )
        stats.processed = count
        stats.succeeded = count
        return stats

    def run_usage_resets(self, now: Optional[datetime] = None) -> None:
        for reset_type in VALID_RESET_PERIODS:
            self.run_usage_reset_once(reset_type, period_start(reset_type, now))

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start the background thread. Returns False if disabled or already running."""
        if not self.settings.scheduler_enabled:
            logger.info("Tier scheduler disabled (ENABLE_TIER_SCHEDULER=false)")
            return False
        if self._thread is not None and self._thread.is_alive():
            return False

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="tier-scheduler", daemon=True)
        self._thread.start()
        logger.info("Tier scheduler started", extra={
            "downgrade_interval_seconds": self.settings.downgrade_interval_seconds,
            "notification_interval_seconds": self.settings.notification_interval_seconds,
        })
        return True

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Tier scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        next_downgrade = utcnow()
        next_notification = utcnow()

        while not self._stop_event.is_set():
            now = utcnow()
            if now >= next_downgrade:
                self._guarded(self.run_downgrade_job_once)
                self._guarded(self.run_usage_resets)
                next_downgrade = now + timedelta(seconds=self.settings.downgrade_interval_seconds)
            if now >= next_notification:
                self._guarded(self.run_notification_job_once)
                next_notification = now + timedelta(seconds=self.settings.notification_interval_seconds)

            wait = (min(next_downgrade, next_notification) - utcnow()).total_seconds()
            self._stop_event.wait(max(wait, 1.0))

    def _guarded(self, job: Callable[[], object]) -> None:
        # A failing run must not kill the loop; the next tick retries.
        try:
            job()
        except Exception as e:
            logger.error("Tier job crashed", extra={"error": str(e)}, exc_info=True)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for cron and one-off runs."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="StokReal tier scheduler")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("downgrade", help="Downgrade premium users past the grace period")
    subparsers.add_parser("notify", help="Send expiration warnings and grace notices")
    reset_parser = subparsers.add_parser("reset", help="Reset periodic usage counters")
    reset_parser.add_argument("--period", choices=VALID_RESET_PERIODS, default="daily")
    subparsers.add_parser("run", help="Run all jobs in the foreground until interrupted")
    args = parser.parse_args(argv)

    try:
        scheduler = TierScheduler()
        if args.command == "downgrade":
            stats = scheduler.run_downgrade_job_once()
        elif args.command == "notify":
            stats = scheduler.run_notification_job_once()
        elif args.command == "reset":
            stats = scheduler.run_usage_reset_once(args.period)
        else:
            if not scheduler.start():
                return 1
            try:
                while scheduler.running:
                    scheduler._thread.join(1.0)
            except KeyboardInterrupt:
                scheduler.stop()
            return 0
    except Exception as e:
        logger.error("Tier job failed", extra={"command": args.command, "error": str(e)}, exc_info=True)
        return 1

    print(f"Tier job completed: {stats.to_dict() if stats else 'skipped'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
