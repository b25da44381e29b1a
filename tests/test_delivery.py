"""
Delivery tracker tests.
Tests for sending, retry scheduling, cancellation, lease recovery and provider callbacks.
"""

from datetime import timedelta

import pytest

from alertflow.database.models import Notification
from alertflow.notifications.delivery import SEND_JOB, DeliveryTracker
from alertflow.notifiers.base import SendResult
from alertflow.queue.memory import InMemoryWorkQueue

from conftest import FIXED_NOW, make_rule


def failure(error: str = "timeout", retryable: bool = True) -> SendResult:
    return SendResult(success=False, channel="email", error=error, retryable=retryable)


@pytest.fixture
def alert(rule_repo, lifecycle):
    rule = rule_repo.create(make_rule(channels=["email"]))
    return lifecycle.create_from_rule(rule, 151.0)


@pytest.fixture
def queued(notification_repo, alert):
    """A queued email notification for the fired alert."""
    return notification_repo.create(
        Notification(
            owner_id="user-1",
            alert_id=alert.alert_id,
            channel="email",
            recipient="user-1@example.com",
            message=alert.message,
            status="queued",
        ),
        FIXED_NOW,
    )


class TestProcessNotification:
    """Test a single delivery attempt."""

    def test_success(self, tracker, queued, notification_repo, alert_repo, senders):
        """Should mark sent, record the provider and append a receipt."""
        outcome = tracker.process_notification(queued.notification_id)

        assert outcome.status == "sent"
        stored = notification_repo.get(queued.notification_id)
        assert stored.status == "sent"
        assert stored.sent_at == FIXED_NOW
        assert stored.provider == "fake-email"
        assert stored.provider_message_id == "msg-1"
        assert stored.claimed_at is None

        receipts = alert_repo.get(queued.alert_id).receipts
        assert [(r.channel, r.status) for r in receipts] == [("email", "sent")]
        assert len(senders.get("email").sent) == 1

    def test_failure_rearms_with_backoff(self, tracker, queued, notification_repo, senders):
        """Should move a failed attempt back to pending with a future retry time."""
        senders.get("email").results.append(failure())

        outcome = tracker.process_notification(queued.notification_id)

        assert outcome.status == "retry_scheduled"
        stored = notification_repo.get(queued.notification_id)
        assert stored.status == "pending"
        assert stored.retry_count == 1
        assert stored.next_retry_at == FIXED_NOW + timedelta(minutes=2)
        assert stored.failure_reason == "timeout"

    def test_retry_not_claimable_before_due(
        self, tracker, queued, notification_repo, senders, clock
    ):
        """Should wait for next_retry_at before trying again."""
        senders.get("email").results.append(failure())
        tracker.process_notification(queued.notification_id)

        early = tracker.process_notification(queued.notification_id)
        assert early.status == "skipped"

        clock.advance(minutes=2)
        assert tracker.process_notification(queued.notification_id).status == "sent"
        assert len(senders.get("email").sent) == 2

    def test_exhaustion(self, tracker, queued, notification_repo, alert_repo, senders, clock):
        """Should fail terminally after max_retries attempts."""
        senders.get("email").results.extend([failure(), failure(), failure("HTTP 503")])

        statuses = []
        for _ in range(3):
            statuses.append(tracker.process_notification(queued.notification_id).status)
            clock.advance(minutes=10)

        assert statuses == ["retry_scheduled", "retry_scheduled", "failed"]
        stored = notification_repo.get(queued.notification_id)
        assert stored.status == "failed"
        assert stored.retry_count == 3
        assert stored.failure_reason == "HTTP 503"
        assert stored.next_retry_at is None

        receipts = alert_repo.get(queued.alert_id).receipts
        assert [r.status for r in receipts] == ["failed"]

    def test_non_retryable_failure(self, tracker, queued, notification_repo, senders):
        """Should fail terminally on the first non-retryable error."""
        senders.get("email").results.append(failure("HTTP 400", retryable=False))

        outcome = tracker.process_notification(queued.notification_id)

        assert outcome.status == "failed"
        assert notification_repo.get(queued.notification_id).status == "failed"

    def test_missing_sender(self, tracker, notification_repo, senders):
        """Should fail terminally when no sender handles the channel."""
        notification = notification_repo.create(
            Notification(owner_id="u", channel="carrier-pigeon", recipient="u",
                         message="hi", status="queued"),
            FIXED_NOW,
        )

        outcome = tracker.process_notification(notification.notification_id)

        assert outcome.status == "failed"
        assert "No sender registered" in outcome.detail

    @pytest.mark.parametrize("reason", ["alert cancelled", "rule disabled", "rule deleted"])
    def test_cancelled_before_send(
        self, tracker, queued, notification_repo, alert_repo, rule_repo, lifecycle, senders,
        reason,
    ):
        """Should not send when the alert or rule withdrew the delivery."""
        alert = alert_repo.get(queued.alert_id)
        if reason == "alert cancelled":
            lifecycle.cancel(alert)
        elif reason == "rule disabled":
            rule_repo.set_enabled(alert.rule_id, False)
        else:
            rule_repo.delete(alert.rule_id)

        outcome = tracker.process_notification(queued.notification_id)

        assert outcome.status == "cancelled"
        assert outcome.detail == reason
        assert senders.get("email").sent == []
        stored = notification_repo.get(queued.notification_id)
        assert stored.status == "failed"
        assert stored.failure_reason == f"cancelled: {reason}"

    def test_claimed_elsewhere(self, tracker, queued, notification_repo, senders):
        """Should skip a notification another worker is sending."""
        notification_repo.claim(queued.notification_id, FIXED_NOW)

        outcome = tracker.process_notification(queued.notification_id)

        assert outcome.status == "skipped"
        assert senders.get("email").sent == []

    def test_deleted_notification(self, tracker):
        """Should skip notifications that no longer exist."""
        assert tracker.process_notification("notif_missing").status == "skipped"

    def test_sent_notification_is_not_resent(self, tracker, queued, senders):
        """Should never send the same notification twice."""
        tracker.process_notification(queued.notification_id)
        outcome = tracker.process_notification(queued.notification_id)

        assert outcome.status == "skipped"
        assert len(senders.get("email").sent) == 1


class TestQueuedDelivery:
    """Test delivery through the work queue."""

    @pytest.fixture
    def ticks(self):
        return [1_000.0]

    @pytest.fixture
    def queue(self, ticks):
        return InMemoryWorkQueue(time_fn=lambda: ticks[0])

    @pytest.fixture
    def queued_tracker(self, queue, notification_repo, alert_repo, rule_repo, senders, clock):
        tracker = DeliveryTracker(
            notifications=notification_repo,
            alerts=alert_repo,
            rules=rule_repo,
            senders=senders,
            queue=queue,
            clock=clock,
        )
        queue.register(SEND_JOB, lambda payload: tracker.process_notification(
            payload["notification_id"]
        ))
        return tracker

    def test_submit_is_idempotent(self, queued_tracker, queue, queued):
        """Should keep one pending job per notification attempt."""
        first = queued_tracker.submit(queued)
        second = queued_tracker.submit(queued)

        assert first == second == f"send:{queued.notification_id}:0"
        assert queue.stats().waiting == 1

    def test_failure_schedules_delayed_job(
        self, queued_tracker, queue, queued, notification_repo, senders, clock, ticks
    ):
        """Should enqueue the retry with the backoff delay."""
        senders.get("email").results.append(failure())
        queued_tracker.submit(queued)

        queue.drain()

        retry_job = queue.get_job(f"send:{queued.notification_id}:1")
        assert retry_job.status == "delayed"
        assert retry_job.run_at == pytest.approx(ticks[0] + 120)

        ticks[0] += 120
        clock.advance(minutes=2)
        queue.drain()

        assert notification_repo.get(queued.notification_id).status == "sent"


class TestSweep:
    """Test recovery of due and orphaned notifications."""

    def test_sweeps_due_retries(self, tracker, queued, notification_repo, senders, clock):
        """Should resubmit pending notifications whose retry time has come."""
        senders.get("email").results.append(failure())
        tracker.process_notification(queued.notification_id)

        assert tracker.sweep() == 0
        clock.advance(minutes=2)
        assert tracker.sweep() == 1
        assert notification_repo.get(queued.notification_id).status == "sent"

    def test_recovers_expired_leases(self, tracker, queued, notification_repo, clock):
        """Should release and resend notifications stuck in sending."""
        notification_repo.claim(queued.notification_id, FIXED_NOW)

        clock.advance(minutes=10)
        assert tracker.sweep() == 1
        assert notification_repo.get(queued.notification_id).status == "sent"

    def test_picks_up_orphaned_queued(self, tracker, queued, notification_repo, clock):
        """Should resubmit queued notifications whose job was lost."""
        assert tracker.sweep() == 0

        clock.advance(minutes=10)
        assert tracker.sweep() == 1
        assert notification_repo.get(queued.notification_id).status == "sent"


class TestTrackerMaintenance:
    """Test resend, read state, provider callbacks and cleanup."""

    def test_resend_failed(self, tracker, queued, notification_repo, senders):
        """Should re-arm a failed notification with a fresh retry budget."""
        senders.get("email").results.append(failure("HTTP 400", retryable=False))
        tracker.process_notification(queued.notification_id)

        resent = tracker.resend(queued.notification_id)

        assert resent.retry_count == 0
        stored = notification_repo.get(queued.notification_id)
        assert stored.status == "sent"
        assert stored.failure_reason is None

    def test_resend_rejects_sent(self, tracker, queued):
        """Should only resend failed or bounced notifications."""
        tracker.process_notification(queued.notification_id)
        assert tracker.resend(queued.notification_id) is None

    def test_provider_status(self, tracker, queued, notification_repo, clock):
        """Should apply delivered callbacks to sent notifications."""
        tracker.process_notification(queued.notification_id)
        clock.advance(seconds=30)

        assert tracker.record_provider_status(queued.notification_id, "delivered") is True
        stored = notification_repo.get(queued.notification_id)
        assert stored.status == "delivered"
        assert stored.delivered_at == FIXED_NOW + timedelta(seconds=30)

    def test_provider_bounce(self, tracker, queued, notification_repo):
        """Should record bounces."""
        tracker.process_notification(queued.notification_id)

        tracker.record_provider_status(queued.notification_id, "bounced")

        stored = notification_repo.get(queued.notification_id)
        assert stored.status == "bounced"
        assert stored.failure_reason == "bounced"

    def test_provider_status_ignores_unsent(self, tracker, queued):
        """Should ignore callbacks for notifications that were never sent."""
        assert tracker.record_provider_status(queued.notification_id, "delivered") is False

    def test_provider_status_rejects_unknown(self, tracker, queued):
        """Should raise ValueError for unknown provider states."""
        with pytest.raises(ValueError):
            tracker.record_provider_status(queued.notification_id, "opened")

    def test_mark_read(self, tracker, queued, notification_repo):
        """Should mark a single notification as read."""
        assert tracker.mark_read(queued.notification_id) is True
        assert notification_repo.get(queued.notification_id).is_read is True
        assert tracker.mark_read("notif_missing") is False

    def test_cleanup(self, tracker, notification_repo, clock):
        """Should delete finished notifications past the retention window."""
        notification_repo.create(
            Notification(owner_id="u", channel="inapp", recipient="u", message="old",
                         status="sent"),
            FIXED_NOW - timedelta(days=31),
        )
        notification_repo.create(
            Notification(owner_id="u", channel="inapp", recipient="u", message="new",
                         status="sent"),
            FIXED_NOW,
        )

        assert tracker.cleanup(retention_days=30) == 1
