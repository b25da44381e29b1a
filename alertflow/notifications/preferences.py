"""
Per-owner delivery gating.
"""

import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfoNotFoundError

from alertflow.database.models import VERIFIED_CHANNELS, NotificationPreference, QuietHours
from alertflow.timeutil import ensure_utc, get_zone, minutes_since_midnight, utc_now

logger = logging.getLogger(__name__)


def in_quiet_hours(quiet_hours: QuietHours, now: Optional[datetime] = None) -> bool:
    """
    Check whether ``now`` falls inside the quiet window.

    The window is evaluated in the preference's timezone. A start at or after
    the end means the window wraps past midnight.
    """
    if not quiet_hours.enabled:
        return False
    now = ensure_utc(now) if now else utc_now()

    try:
        local = now.astimezone(get_zone(quiet_hours.timezone))
        start = minutes_since_midnight(quiet_hours.start)
        end = minutes_since_midnight(quiet_hours.end)
    except (ValueError, ZoneInfoNotFoundError) as e:
        logger.warning(f"Ignoring malformed quiet hours {quiet_hours}: {e}")
        return False

    current = local.hour * 60 + local.minute

    if start < end:
        return start <= current < end
    return current >= start or current < end


class PreferenceGate:
    """Decides whether an owner may be contacted on a channel."""

    def suppression_reason(
        self,
        preference: NotificationPreference,
        channel: str,
        alert_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Name the first check that blocks delivery.

        Returns:
            None if delivery is allowed, otherwise one of ``disabled``,
            ``unsubscribed``, ``channel_disabled``, ``channel_unverified``,
            ``alert_type_disabled``, ``channel_not_allowed``, ``quiet_hours``
        """
        if not preference.enabled:
            return "disabled"

        if preference.unsubscribed_at is not None:
            return "unsubscribed"

        settings = preference.channel(channel)
        if settings is None or not settings.enabled:
            return "channel_disabled"

        if channel in VERIFIED_CHANNELS and not settings.verified:
            return "channel_unverified"

        if alert_type and alert_type in preference.alert_types:
            type_settings = preference.alert_types[alert_type]
            if not type_settings.enabled:
                return "alert_type_disabled"
            if channel not in type_settings.channels:
                return "channel_not_allowed"

        if in_quiet_hours(preference.quiet_hours, now):
            return "quiet_hours"

        return None

    def can_send(
        self,
        preference: NotificationPreference,
        channel: str,
        alert_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        return self.suppression_reason(preference, channel, alert_type, now) is None

    def within_rate_limits(
        self,
        preference: NotificationPreference,
        sent_last_hour: int,
        sent_last_day: int,
    ) -> bool:
        """Check an owner's recent volume against their caps."""
        limits = preference.limits
        if limits.max_per_hour and sent_last_hour >= limits.max_per_hour:
            return False
        if limits.max_per_day and sent_last_day >= limits.max_per_day:
            return False
        return True
