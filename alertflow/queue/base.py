"""
Work queue interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

JobHandler = Callable[[dict[str, Any]], Any]

CADENCE_UNITS = (
    "seconds",
    "minutes",
    "hours",
    "days",
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


@dataclass
class Backoff:
    """Delay between attempts of a crashed job."""

    type: str = "exponential"  # or "fixed"
    delay: float = 2.0  # seconds

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next attempt, after ``attempts_made`` failures."""
        if self.type == "fixed":
            return self.delay
        return self.delay * (2 ** max(attempts_made - 1, 0))


@dataclass
class JobOptions:
    """Per-job queue options. Higher priority runs first."""

    priority: int = 0
    delay: float = 0.0  # seconds
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    job_id: Optional[str] = None


@dataclass
class Job:
    """A unit of queued work."""

    id: str
    job_type: str
    payload: dict[str, Any]
    options: JobOptions
    status: str = "waiting"  # waiting, delayed, active, completed, failed
    attempts_made: int = 0
    run_at: float = 0.0
    failed_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed


@dataclass
class Cadence:
    """
    Recurring trigger timing.

    ``every`` units of ``unit``; ``at`` pins the time of day ("HH:MM") for
    daily and weekday cadences, or the second/minute offset (":SS", "MM:SS")
    for minute and hour cadences.
    """

    every: int = 1
    unit: str = "minutes"
    at: Optional[str] = None
    timezone: Optional[str] = None

    def validate(self) -> None:
        if self.unit not in CADENCE_UNITS:
            raise ValueError(f"Unknown cadence unit: {self.unit}")
        if self.every < 1:
            raise ValueError("Cadence interval must be at least 1")
        if self.unit not in ("seconds", "minutes", "hours", "days") and self.every != 1:
            raise ValueError("Weekday cadences must use every=1")


class WorkQueue(ABC):
    """Durable-enough job queue with delayed, prioritized and recurring jobs."""

    @abstractmethod
    def register(self, job_type: str, handler: JobHandler) -> None:
        """Bind a handler to a job type."""
        pass

    @abstractmethod
    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> str:
        """
        Submit a job.

        Returns:
            Job ID
        """
        pass

    @abstractmethod
    def schedule(
        self,
        name: str,
        job_type: str,
        payload: dict[str, Any],
        cadence: Cadence,
        guard: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        Register a named recurring trigger that enqueues a job.

        Args:
            name: Trigger name, used to cancel it
            job_type: Job type to enqueue on every tick
            payload: Job payload
            cadence: Tick timing
            guard: Optional predicate; ticks where it returns False are skipped
        """
        pass

    @abstractmethod
    def unschedule(self, name: str) -> bool:
        """Cancel a named recurring trigger."""
        pass

    @abstractmethod
    def stats(self) -> QueueStats:
        pass

    def start(self, workers: int = 1) -> None:
        pass

    def stop(self) -> None:
        pass
