"""
Named recurring triggers that feed the work queue.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from alertflow.config import TriggerConfig
from alertflow.queue.base import Cadence, JobOptions, WorkQueue
from alertflow.timeutil import get_zone, minutes_since_midnight, utc_now

logger = logging.getLogger(__name__)

TRADING_DAYS = (0, 1, 2, 3, 4)  # Monday to Friday


class MarketHours:
    """Local trading window used to gate market-hours-only triggers."""

    def __init__(
        self,
        timezone: str = "America/Toronto",
        market_open: str = "09:00",
        market_close: str = "17:00",
        days: tuple[int, ...] = TRADING_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.timezone = timezone
        self.open_minute = minutes_since_midnight(market_open)
        self.close_minute = minutes_since_midnight(market_close)
        self.days = days
        self.clock = clock

    def is_trading_day(self, now: Optional[datetime] = None) -> bool:
        local = (now or self.clock()).astimezone(get_zone(self.timezone))
        return local.weekday() in self.days

    def is_open(self, now: Optional[datetime] = None) -> bool:
        local = (now or self.clock()).astimezone(get_zone(self.timezone))
        if local.weekday() not in self.days:
            return False
        minute = local.hour * 60 + local.minute
        return self.open_minute <= minute < self.close_minute


class PipelineScheduler:
    """
    Owns the named recurring triggers.

    Every trigger only enqueues a job; the work queue runs it. Triggers
    can be cancelled by name and fired on demand.
    """

    def __init__(
        self,
        queue: WorkQueue,
        triggers: dict[str, TriggerConfig],
        market_hours: MarketHours,
        timezone: str = "America/Toronto",
    ):
        self.queue = queue
        self.triggers = triggers
        self.market_hours = market_hours
        self.timezone = timezone
        self._active: set[str] = set()

    def start(self) -> list[str]:
        """
        Register every enabled trigger with the queue.

        Returns:
            Names of the registered triggers
        """
        for name, trigger in self.triggers.items():
            if not trigger.enabled:
                logger.info(f"Trigger {name} disabled, not scheduling")
                continue
            self.queue.schedule(
                name,
                trigger.job,
                trigger.payload,
                self._cadence(trigger),
                guard=self._guard(trigger),
            )
            self._active.add(name)
        logger.info(f"Scheduled {len(self._active)} recurring triggers")
        return sorted(self._active)

    def stop(self) -> None:
        for name in list(self._active):
            self.cancel(name)

    def cancel(self, name: str) -> bool:
        self._active.discard(name)
        return self.queue.unschedule(name)

    @property
    def active(self) -> list[str]:
        return sorted(self._active)

    def trigger_now(self, name: str) -> str:
        """
        Enqueue a trigger's job immediately, ignoring its guard.

        Raises:
            KeyError: If no trigger has that name
        """
        trigger = self.triggers[name]
        logger.info(f"Manually firing trigger {name}")
        return self.queue.enqueue(trigger.job, dict(trigger.payload), JobOptions())

    def _cadence(self, trigger: TriggerConfig) -> Cadence:
        timezone = None
        if trigger.at and trigger.unit not in ("seconds", "minutes", "hours"):
            timezone = self.timezone
        return Cadence(every=trigger.every, unit=trigger.unit, at=trigger.at, timezone=timezone)

    def _guard(self, trigger: TriggerConfig) -> Optional[Callable[[], bool]]:
        if trigger.market_hours_only:
            return self.market_hours.is_open
        if trigger.weekdays_only:
            return self.market_hours.is_trading_day
        return None
