"""
Work queue tests.
Tests for priorities, delays, de-duplication, retries and recurring triggers.
"""

import pytest

from alertflow.queue.base import Backoff, Cadence, JobOptions
from alertflow.queue.memory import InMemoryWorkQueue


@pytest.fixture
def ticks():
    return [1_000.0]


@pytest.fixture
def queue(ticks):
    return InMemoryWorkQueue(time_fn=lambda: ticks[0])


@pytest.fixture
def ran(queue):
    """Register a recording handler for the 'record' job type."""
    calls = []
    queue.register("record", lambda payload: calls.append(payload["n"]))
    return calls


class TestBackoff:
    def test_exponential(self):
        """Should double the delay after every failed attempt."""
        backoff = Backoff(type="exponential", delay=2.0)
        assert [backoff.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_fixed(self):
        """Should keep the same delay."""
        assert Backoff(type="fixed", delay=5.0).delay_for(3) == 5.0


class TestCadence:
    @pytest.mark.parametrize(
        "cadence",
        [
            Cadence(unit="fortnights"),
            Cadence(every=0),
            Cadence(every=2, unit="monday"),
        ],
    )
    def test_invalid(self, cadence):
        """Should reject unknown units and bad intervals."""
        with pytest.raises(ValueError):
            cadence.validate()


class TestInMemoryWorkQueue:
    """Test job ordering and retries."""

    def test_priority_order(self, queue, ran):
        """Should run higher priority first and FIFO within a priority."""
        queue.enqueue("record", {"n": "low-1"}, JobOptions(priority=0))
        queue.enqueue("record", {"n": "high"}, JobOptions(priority=3))
        queue.enqueue("record", {"n": "low-2"}, JobOptions(priority=0))

        assert queue.drain() == 3
        assert ran == ["high", "low-1", "low-2"]

    def test_delayed_job(self, queue, ran, ticks):
        """Should hold delayed jobs until they are due."""
        queue.enqueue("record", {"n": 1}, JobOptions(delay=10))

        assert queue.drain() == 0
        assert queue.stats().delayed == 1

        ticks[0] += 10
        assert queue.drain() == 1
        assert ran == [1]

    def test_dedupes_pending_job_ids(self, queue, ran):
        """Should ignore a second submission with a pending job ID."""
        first = queue.enqueue("record", {"n": 1}, JobOptions(job_id="same"))
        second = queue.enqueue("record", {"n": 2}, JobOptions(job_id="same"))

        assert first == second == "same"
        queue.drain()
        assert ran == [1]

    def test_job_id_reusable_after_completion(self, queue, ran):
        """Should accept a job ID again once the earlier job finished."""
        queue.enqueue("record", {"n": 1}, JobOptions(job_id="same"))
        queue.drain()
        queue.enqueue("record", {"n": 2}, JobOptions(job_id="same"))
        queue.drain()

        assert ran == [1, 2]

    def test_crashed_job_retried_with_backoff(self, queue, ticks):
        """Should retry a crashing job after its backoff delay."""
        attempts = []

        def flaky(payload):
            attempts.append(ticks[0])
            if len(attempts) < 3:
                raise RuntimeError("boom")

        queue.register("flaky", flaky)
        job_id = queue.enqueue(
            "flaky", {}, JobOptions(attempts=3, backoff=Backoff(delay=2.0))
        )

        queue.drain()
        job = queue.get_job(job_id)
        assert job.status == "delayed"
        assert job.attempts_made == 1
        assert job.run_at == 1_002.0

        ticks[0] = 1_002.0
        queue.drain()
        assert queue.get_job(job_id).run_at == 1_006.0

        ticks[0] = 1_006.0
        queue.drain()

        assert attempts == [1_000.0, 1_002.0, 1_006.0]
        assert queue.get_job(job_id) is None
        assert queue.stats().completed == 1

    def test_exhausted_job_kept_in_failed_list(self, queue, ticks):
        """Should keep jobs that ran out of attempts and allow re-submitting them."""
        queue.register("broken", lambda payload: 1 / 0)
        queue.enqueue("broken", {}, JobOptions(attempts=2, backoff=Backoff(type="fixed", delay=1)))

        queue.drain()
        ticks[0] += 1
        queue.drain()

        failed = queue.failed_jobs()
        assert len(failed) == 1
        assert failed[0].attempts_made == 2
        assert "division by zero" in failed[0].failed_reason
        assert queue.stats().failed == 1

        assert queue.retry_failed() == 1
        assert queue.failed_jobs() == []
        assert queue.stats().waiting == 1

    def test_unknown_job_type_fails_without_retry(self, queue):
        """Should fail jobs that have no handler."""
        queue.enqueue("nobody-home", {})

        queue.drain()

        assert queue.stats().failed == 1
        assert queue.stats().delayed == 0


class TestRecurringTriggers:
    """Test named recurring triggers."""

    def test_schedule_and_fire(self, queue, ran):
        """Should enqueue the trigger's job when fired."""
        queue.schedule("ticker", "record", {"n": "tick"}, Cadence(every=1, unit="minutes"))

        assert queue.scheduled_names() == {"ticker"}
        queue.fire("ticker")
        queue.drain()

        assert ran == ["tick"]

    def test_overlapping_ticks_collapse(self, queue, ran):
        """Should keep one pending job per trigger."""
        queue.schedule("ticker", "record", {"n": "tick"}, Cadence(every=1, unit="minutes"))

        queue.fire("ticker")
        queue.fire("ticker")

        assert queue.stats().waiting == 1
        assert queue.get_job("recurring:ticker") is not None

    def test_guard_skips_tick(self, queue, ran):
        """Should not enqueue anything when the guard says no."""
        queue.schedule(
            "guarded", "record", {"n": 1}, Cadence(every=1, unit="minutes"), guard=lambda: False
        )

        queue.fire("guarded")

        assert queue.stats().waiting == 0

    def test_unschedule(self, queue):
        """Should cancel triggers by name."""
        queue.schedule("ticker", "record", {}, Cadence(every=5, unit="minutes"))

        assert queue.unschedule("ticker") is True
        assert queue.unschedule("ticker") is False
        assert queue.scheduled_names() == set()

    def test_reschedule_replaces(self, queue):
        """Should replace an existing trigger with the same name."""
        queue.schedule("ticker", "record", {}, Cadence(every=5, unit="minutes"))
        queue.schedule("ticker", "record", {}, Cadence(every=1, unit="hours"))

        assert len(queue._scheduler.get_jobs("ticker")) == 1

    def test_daily_trigger_at_local_time(self, queue):
        """Should accept a time of day with a timezone."""
        queue.schedule(
            "daily",
            "record",
            {},
            Cadence(every=1, unit="days", at="17:00", timezone="America/Toronto"),
        )

        assert queue.scheduled_names() == {"daily"}

    def test_invalid_cadence_rejected(self, queue):
        """Should validate the cadence before scheduling."""
        with pytest.raises(ValueError):
            queue.schedule("bad", "record", {}, Cadence(unit="fortnights"))
