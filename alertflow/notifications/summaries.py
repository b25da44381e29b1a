"""
Daily portfolio and alert digests.
"""

import logging
from datetime import datetime, time
from typing import Callable, Optional, Union

from alertflow.data.fetcher import MarketValueFetcher
from alertflow.database.models import Notification, NotificationPreference
from alertflow.database.repository import AlertRepository, PreferenceRepository
from alertflow.errors import UpstreamDataUnavailable
from alertflow.timeutil import get_zone, to_iso, utc_now

from .dispatcher import NotificationDispatcher
from .preferences import PreferenceGate

logger = logging.getLogger(__name__)

SUMMARY_CHANNEL = "email"


class DailySummaryService:
    """Builds and sends each owner's end-of-day digest."""

    def __init__(
        self,
        preferences: PreferenceRepository,
        alerts: AlertRepository,
        dispatcher: NotificationDispatcher,
        fetcher: Optional[MarketValueFetcher] = None,
        gate: Optional[PreferenceGate] = None,
        timezone: str = "America/Toronto",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.preferences = preferences
        self.alerts = alerts
        self.dispatcher = dispatcher
        self.fetcher = fetcher
        self.gate = gate or PreferenceGate()
        self.timezone = timezone
        self.clock = clock

    def send_daily_summaries(self) -> int:
        """
        Send a digest to every owner who enabled one.

        Returns:
            Number of digests queued
        """
        preferences = self.preferences.list_daily_summary_enabled()
        logger.info(f"Sending daily summaries to {len(preferences)} owners")

        sent = 0
        for preference in preferences:
            try:
                if self.send_daily_summary(preference) is not None:
                    sent += 1
            except Exception:
                logger.exception(f"Failed to send daily summary to {preference.owner_id}")
        return sent

    def send_daily_summary(
        self, owner: Union[str, NotificationPreference]
    ) -> Optional[Notification]:
        """Send one owner's digest of today's alerts and portfolio state."""
        if isinstance(owner, NotificationPreference):
            preference = owner
        else:
            preference = self.preferences.get(owner)
        if preference is None:
            logger.info(f"No preferences for {owner}, skipping daily summary")
            return None

        now = self.clock()
        reason = self.gate.suppression_reason(preference, SUMMARY_CHANNEL, None, now)
        if reason:
            logger.info(f"Daily summary for {preference.owner_id} suppressed: {reason}")
            return None

        zone = get_zone(self.timezone)
        local_now = now.astimezone(zone)
        day_start = datetime.combine(local_now.date(), time.min, tzinfo=zone)

        alerts = []
        if preference.daily_summary.include_alerts:
            alerts = [
                {
                    "type": a.alert_type,
                    "message": a.message,
                    "time": to_iso(a.triggered_at),
                }
                for a in self.alerts.list_triggered_since(preference.owner_id, day_start)
            ]

        portfolio = {}
        if preference.daily_summary.include_portfolio and self.fetcher is not None:
            try:
                portfolio = self.fetcher.get_portfolio_summary(preference.owner_id)
            except UpstreamDataUnavailable as e:
                logger.warning(f"Portfolio summary unavailable for {preference.owner_id}: {e}")

        return self.dispatcher.create_notification(
            owner_id=preference.owner_id,
            channel=SUMMARY_CHANNEL,
            subject="Daily Portfolio Summary",
            message="Your daily portfolio summary",
            template="daily-summary",
            template_data={
                "date": local_now.date().isoformat(),
                "portfolio": portfolio,
                "alerts": alerts,
            },
            priority="low",
            preference=preference,
        )
