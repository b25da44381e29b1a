"""
In-process work queue backed by heaps and worker threads.
"""

import heapq
import itertools
import logging
import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Optional

import schedule

from alertflow.timeutil import utc_now

from .base import Cadence, Job, JobHandler, JobOptions, QueueStats, WorkQueue

logger = logging.getLogger(__name__)


class InMemoryWorkQueue(WorkQueue):
    """
    Thread-safe job queue.

    Ready jobs run highest priority first, FIFO within a priority. Delayed
    jobs wait in a separate heap until due. A crashed job is retried with
    its backoff until it runs out of attempts. Recurring triggers are kept
    in a ``schedule.Scheduler`` and tagged by name.
    """

    def __init__(
        self,
        time_fn: Callable[[], float] = time.time,
        poll_interval: float = 1.0,
        max_failed_kept: int = 100,
    ):
        self.time_fn = time_fn
        self.poll_interval = poll_interval
        self._cond = threading.Condition()
        self._handlers: dict[str, JobHandler] = {}
        self._jobs: dict[str, Job] = {}
        self._ready: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._active = 0
        self._completed = 0
        self._failed = 0
        self._failed_jobs: deque[Job] = deque(maxlen=max_failed_kept)
        self._scheduler = schedule.Scheduler()
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> str:
        options = options or JobOptions()
        job_id = options.job_id or uuid.uuid4().hex

        with self._cond:
            existing = self._jobs.get(job_id)
            if existing is not None:
                # Same ID still pending or running
                return job_id

            job = Job(
                id=job_id,
                job_type=job_type,
                payload=payload,
                options=options,
                created_at=utc_now(),
            )
            self._jobs[job_id] = job
            if options.delay > 0:
                self._push_delayed(job, self.time_fn() + options.delay)
            else:
                self._push_ready(job)
            self._cond.notify()

        logger.debug(f"Enqueued {job_type} job {job_id}")
        return job_id

    def _push_ready(self, job: Job) -> None:
        job.status = "waiting"
        heapq.heappush(self._ready, (-job.options.priority, next(self._seq), job.id))

    def _push_delayed(self, job: Job, run_at: float) -> None:
        job.status = "delayed"
        job.run_at = run_at
        heapq.heappush(self._delayed, (run_at, next(self._seq), job.id))

    def _promote_due(self) -> None:
        now = self.time_fn()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is None or job.status != "delayed":
                continue
            self._push_ready(job)

    def _next_job(self) -> Optional[Job]:
        """Pop the next runnable job. Caller holds the lock."""
        self._promote_due()
        while self._ready:
            _, _, job_id = heapq.heappop(self._ready)
            job = self._jobs.get(job_id)
            if job is None or job.status != "waiting":
                continue
            job.status = "active"
            self._active += 1
            return job
        return None

    def _wait_timeout(self) -> float:
        if self._delayed:
            return max(0.0, min(self._delayed[0][0] - self.time_fn(), self.poll_interval))
        return self.poll_interval

    def _run(self, job: Job) -> None:
        handler = self._handlers.get(job.job_type)
        if handler is None:
            logger.error(f"No handler registered for job type {job.job_type}")
            self._finish_failed(job, f"no handler for {job.job_type}", retry=False)
            return

        try:
            handler(job.payload)
        except Exception as e:
            logger.exception(f"Job {job.job_type} ({job.id}) failed")
            self._finish_failed(job, str(e), retry=True)
            return

        with self._cond:
            job.status = "completed"
            job.finished_at = utc_now()
            self._active -= 1
            self._completed += 1
            self._jobs.pop(job.id, None)

    def _finish_failed(self, job: Job, reason: str, retry: bool) -> None:
        with self._cond:
            self._active -= 1
            job.attempts_made += 1
            job.failed_reason = reason
            if retry and job.attempts_made < job.options.attempts:
                delay = job.options.backoff.delay_for(job.attempts_made)
                self._push_delayed(job, self.time_fn() + delay)
                logger.info(
                    f"Retrying {job.job_type} job {job.id} in {delay:.1f}s "
                    f"(attempt {job.attempts_made + 1}/{job.options.attempts})"
                )
                self._cond.notify()
                return

            job.status = "failed"
            job.finished_at = utc_now()
            self._failed += 1
            self._failed_jobs.append(job)
            self._jobs.pop(job.id, None)

    def drain(self, max_jobs: int = 10_000) -> int:
        """
        Run ready jobs on the calling thread until none are left.

        Jobs delayed into the future are left waiting.

        Returns:
            Number of jobs run
        """
        processed = 0
        while processed < max_jobs:
            with self._cond:
                job = self._next_job()
            if job is None:
                break
            self._run(job)
            processed += 1
        return processed

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cond:
            return self._jobs.get(job_id)

    def failed_jobs(self) -> list[Job]:
        with self._cond:
            return list(self._failed_jobs)

    def retry_failed(self) -> int:
        """Re-submit every kept failed job with a fresh attempt budget."""
        with self._cond:
            jobs = list(self._failed_jobs)
            self._failed_jobs.clear()
        for job in jobs:
            self.enqueue(job.job_type, job.payload, job.options)
        return len(jobs)

    def stats(self) -> QueueStats:
        with self._cond:
            waiting = sum(1 for j in self._jobs.values() if j.status == "waiting")
            delayed = sum(1 for j in self._jobs.values() if j.status == "delayed")
            return QueueStats(
                waiting=waiting,
                active=self._active,
                completed=self._completed,
                failed=self._failed,
                delayed=delayed,
            )

    # Recurring triggers

    def schedule(
        self,
        name: str,
        job_type: str,
        payload: dict[str, Any],
        cadence: Cadence,
        guard: Optional[Callable[[], bool]] = None,
    ) -> None:
        cadence.validate()
        self.unschedule(name)

        job = getattr(self._scheduler.every(cadence.every), cadence.unit)
        if cadence.at:
            if cadence.timezone:
                job = job.at(cadence.at, cadence.timezone)
            else:
                job = job.at(cadence.at)
        job.do(self._fire, name, job_type, payload, guard).tag(name)
        logger.info(f"Scheduled {name}: {job_type} every {cadence.every} {cadence.unit}")

    def _fire(
        self,
        name: str,
        job_type: str,
        payload: dict[str, Any],
        guard: Optional[Callable[[], bool]],
    ) -> None:
        if guard is not None and not guard():
            logger.debug(f"Trigger {name} skipped by guard")
            return
        self.enqueue(job_type, dict(payload), JobOptions(job_id=f"recurring:{name}"))

    def unschedule(self, name: str) -> bool:
        found = bool(self._scheduler.get_jobs(name))
        self._scheduler.clear(name)
        return found

    def scheduled_names(self) -> set[str]:
        names: set[str] = set()
        for job in self._scheduler.get_jobs():
            names.update(str(tag) for tag in job.tags)
        return names

    def fire(self, name: str) -> None:
        """Run a named trigger immediately, as if its time had come."""
        for job in self._scheduler.get_jobs(name):
            job.run()

    def run_pending(self) -> None:
        self._scheduler.run_pending()

    # Workers

    def start(self, workers: int = 1) -> None:
        if self._threads:
            logger.warning("Work queue already running")
            return

        self._stop_event.clear()
        for i in range(max(workers, 1)):
            thread = threading.Thread(
                target=self._worker_loop, name=f"alertflow-worker-{i}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

        ticker = threading.Thread(
            target=self._ticker_loop, name="alertflow-scheduler", daemon=True
        )
        ticker.start()
        self._threads.append(ticker)
        logger.info(f"Work queue started with {workers} workers")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self._scheduler.clear()
        logger.info("Work queue stopped")

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            with self._cond:
                job = self._next_job()
                if job is None:
                    self._cond.wait(timeout=self._wait_timeout())
                    continue
            self._run(job)

    def _ticker_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.run_pending()
            except Exception:
                logger.exception("Recurring trigger failed")
