"""
Tier notification sinks.

Invoked after a committed tier transition and by the notification job.
Every method returns True on delivery and False otherwise; callers log
failures and move on (the plan change is authoritative, the message is
advisory).
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from stokreal.config.tier_settings import TierSettings, get_tier_settings
from stokreal.models.user import SubscriptionPlan, User
from stokreal.services.email_sender import EmailMessage, EmailSender, get_email_sender

logger = logging.getLogger(__name__)


def _plan_value(plan: Optional[SubscriptionPlan]) -> str:
    if plan is None:
        return "none"
    return SubscriptionPlan(plan).value


class TierNotifier(ABC):
    """Notification sink for subscription tier events."""

    @abstractmethod
    def notify_tier_change(
        self,
        user: User,
        previous_plan: Optional[SubscriptionPlan],
        new_plan: SubscriptionPlan,
        reason: str
    ) -> bool:
        pass

    @abstractmethod
    def notify_expiration_warning(self, user: User, days_left: int) -> bool:
        pass

    @abstractmethod
    def notify_grace_period(self, user: User, grace_period_ends_at: datetime) -> bool:
        pass


class LoggingTierNotifier(TierNotifier):
    """Writes tier events to the log. Default when no email is configured."""

    def notify_tier_change(self, user, previous_plan, new_plan, reason) -> bool:
        logger.info("Tier change notification", extra={
            "user_id": user.id,
            "previous_plan": _plan_value(previous_plan),
            "new_plan": _plan_value(new_plan),
            "change_reason": reason,
        })
        return True

    def notify_expiration_warning(self, user, days_left) -> bool:
        logger.info("Expiration warning notification", extra={
            "user_id": user.id,
            "days_left": days_left,
        })
        return True

    def notify_grace_period(self, user, grace_period_ends_at) -> bool:
        logger.info("Grace period notification", extra={
            "user_id": user.id,
            "grace_period_ends_at": grace_period_ends_at.isoformat(),
        })
        return True


class EmailTierNotifier(TierNotifier):
    """Sends tier events to the user's email address."""

    def __init__(self, sender: Optional[EmailSender] = None):
        self.sender = sender or get_email_sender()

    def _send(self, user: User, subject: str, body: str, tag: str) -> bool:
        if not user.email:
            logger.warning("Cannot notify user without email", extra={"user_id": user.id})
            return False

        message = EmailMessage(
            to_email=user.email,
            to_name=user.first_name,
            subject=subject,
            text_body=f"Hi {user.display_name},\n\n{body}\n\nThe StokReal team",
            tags=["tier", tag],
        )
        return self.sender.send(message)

    def notify_tier_change(self, user, previous_plan, new_plan, reason) -> bool:
        body = (
            f"Your subscription tier changed from {_plan_value(previous_plan)} "
            f"to {_plan_value(new_plan)} due to {reason}."
        )
        return self._send(user, "Your subscription tier has changed", body, "tier_change")

    def notify_expiration_warning(self, user, days_left) -> bool:
        unit = "day" if days_left == 1 else "days"
        body = (
            f"Your premium subscription will expire in {days_left} {unit}. "
            "Please renew to avoid interruption."
        )
        return self._send(user, "Your subscription is expiring soon", body, "expiration_warning")

    def notify_grace_period(self, user, grace_period_ends_at) -> bool:
        body = (
            "Your subscription has expired. A 7-day grace period is active until "
            f"{grace_period_ends_at.strftime('%Y-%m-%d %H:%M UTC')}. "
            "Please renew to keep premium features."
        )
        return self._send(
            user, "Grace period activated for your subscription", body, "grace_period"
        )


def get_tier_notifier(settings: Optional[TierSettings] = None) -> TierNotifier:
    """Configured notifier based on TIER_NOTIFIER (email | log)."""
    settings = settings or get_tier_settings()
    if settings.notifier == "email":
        return EmailTierNotifier()
    if settings.notifier != "log":
        logger.warning("Unknown tier notifier, using log", extra={"notifier": settings.notifier})
    return LoggingTierNotifier()
