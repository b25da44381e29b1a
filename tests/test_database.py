"""
Database layer tests.
Tests for SQLite connection, schema creation, transactions and repositories.
"""

from datetime import timedelta
from pathlib import Path

import pytest

from alertflow.database.connection import Database
from alertflow.database.models import (
    Alert,
    DeliveryReceipt,
    Notification,
    NotificationPreference,
    Webhook,
)
from alertflow.errors import InvalidTransition, PersistenceFailure, RuleValidationError

from conftest import FIXED_NOW, make_rule


class TestDatabaseConnection:
    """Test database connection and initialization."""

    def test_create_in_memory_database(self):
        """Should create an in-memory SQLite database."""
        db = Database(":memory:")
        assert db.connection is not None

    def test_create_file_database(self, tmp_path: Path):
        """Should create a file-based SQLite database, including parent dirs."""
        db_path = tmp_path / "nested" / "test.db"
        db = Database(str(db_path))
        db.initialize()
        assert db_path.exists()
        db.close()

    def test_initialize_schema(self, db):
        """Should create all required tables on initialization."""
        rows = db.connection.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        tables = {row[0] for row in rows}

        expected_tables = {
            "alert_rules",
            "alerts",
            "alert_receipts",
            "notifications",
            "notification_preferences",
            "webhooks",
        }
        assert expected_tables.issubset(tables)

    def test_initialize_is_idempotent(self, db):
        """Should allow initialize to run twice."""
        db.initialize()
        assert db.ping() is True

    def test_close_connection(self):
        """Should raise PersistenceFailure after close."""
        db = Database(":memory:")
        db.close()
        with pytest.raises(PersistenceFailure):
            db.ping()

    def test_sqlite_errors_become_persistence_failures(self, db):
        """Should wrap sqlite3 errors raised inside a transaction."""
        with pytest.raises(PersistenceFailure):
            with db.transaction() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_rollback_on_error(self, db, rule_repo):
        """Should roll back the whole outer transaction when a nested block fails."""
        with pytest.raises(RuntimeError):
            with db.transaction():
                rule_repo.create(make_rule())
                raise RuntimeError("boom")

        assert rule_repo.list_all() == []


class TestRuleRepository:
    """Test rule persistence and the trigger compare-and-swap."""

    def test_create_and_get(self, rule_repo):
        """Should round-trip a rule."""
        created = rule_repo.create(make_rule(channels=["email", "inapp"], priority="high"))
        loaded = rule_repo.get_by_id(created.id)

        assert loaded.name == "AAPL above 150"
        assert loaded.condition.symbol == "AAPL"
        assert loaded.condition.threshold == 150
        assert loaded.channels == ["email", "inapp"]
        assert loaded.priority == "high"
        assert loaded.trigger_count == 0

    def test_create_validates(self, rule_repo):
        """Should refuse to store invalid rules."""
        with pytest.raises(RuleValidationError):
            rule_repo.create(make_rule(operator="between", threshold=5))

    def test_get_enabled_rules_filters(self, rule_repo):
        """Should filter by enabled flag, type and owner."""
        rule_repo.create(make_rule())
        rule_repo.create(make_rule(rule_type="volume", name="vol"))
        rule_repo.create(make_rule(enabled=False, name="off"))
        rule_repo.create(make_rule(owner_id="user-2", name="other"))

        assert len(rule_repo.get_enabled_rules()) == 3
        assert [r.name for r in rule_repo.get_enabled_rules("volume")] == ["vol"]
        assert len(rule_repo.get_enabled_rules(owner_id="user-2")) == 1

    def test_record_trigger_cas(self, rule_repo):
        """Should let only the first of two stale copies win the trigger."""
        rule = rule_repo.create(make_rule())
        first = rule_repo.get_by_id(rule.id)
        second = rule_repo.get_by_id(rule.id)

        assert rule_repo.record_trigger(first, FIXED_NOW) is True
        assert rule_repo.record_trigger(second, FIXED_NOW) is False

        stored = rule_repo.get_by_id(rule.id)
        assert stored.trigger_count == 1
        assert stored.last_triggered == FIXED_NOW

    def test_record_trigger_on_disabled_rule(self, rule_repo):
        """Should not record a trigger for a rule disabled in the meantime."""
        rule = rule_repo.create(make_rule())
        rule_repo.set_enabled(rule.id, False)

        assert rule_repo.record_trigger(rule, FIXED_NOW) is False

    def test_update_keeps_trigger_bookkeeping(self, rule_repo):
        """Should not rewrite trigger_count on definition updates."""
        rule = rule_repo.create(make_rule())
        rule_repo.record_trigger(rule, FIXED_NOW)

        stale = rule_repo.get_by_id(rule.id)
        stale.name = "renamed"
        stale.trigger_count = 0
        rule_repo.update(stale)

        stored = rule_repo.get_by_id(rule.id)
        assert stored.name == "renamed"
        assert stored.trigger_count == 1

    def test_delete(self, rule_repo):
        """Should delete a rule."""
        rule = rule_repo.create(make_rule())
        assert rule_repo.delete(rule.id) is True
        assert rule_repo.get_by_id(rule.id) is None


class TestAlertRepository:
    """Test alert persistence."""

    def test_create_and_get_with_receipts(self, alert_repo):
        """Should load receipts in insertion order."""
        alert = alert_repo.create(
            Alert(owner_id="user-1", alert_type="price", status="triggered",
                  triggered_at=FIXED_NOW, triggered_value=151.0, threshold=150)
        )
        alert_repo.add_receipt(
            alert.alert_id, DeliveryReceipt("email", "notif_1", "sent", FIXED_NOW)
        )
        alert_repo.add_receipt(
            alert.alert_id, DeliveryReceipt("sms", "notif_2", "failed", FIXED_NOW)
        )

        loaded = alert_repo.get(alert.alert_id)
        assert loaded.triggered_value == 151.0
        assert loaded.threshold == 150
        assert [r.channel for r in loaded.receipts] == ["email", "sms"]

    def test_update_status_rejects_invalid_transition(self, alert_repo):
        """Should raise InvalidTransition for disallowed moves."""
        alert = alert_repo.create(Alert(owner_id="user-1", alert_type="price"))

        with pytest.raises(InvalidTransition):
            alert_repo.update_status(alert, "acknowledged")

    def test_update_status_detects_concurrent_change(self, alert_repo):
        """Should fail when the stored status moved on since the read."""
        alert = alert_repo.create(Alert(owner_id="user-1", alert_type="price"))
        stale = alert_repo.get(alert.alert_id)
        alert_repo.update_status(alert, "cancelled")

        with pytest.raises(InvalidTransition):
            alert_repo.update_status(stale, "triggered")

    def test_record_trigger_is_write_once(self, alert_repo):
        """Should never rewrite triggered_at or triggered_value."""
        alert = alert_repo.create(Alert(owner_id="user-1", alert_type="custom"))
        stale = alert_repo.get(alert.alert_id)
        alert_repo.record_trigger(alert, 42, "fired", FIXED_NOW)

        with pytest.raises(InvalidTransition):
            alert_repo.record_trigger(stale, 99, "again", FIXED_NOW + timedelta(hours=1))

        loaded = alert_repo.get(alert.alert_id)
        assert loaded.triggered_value == 42
        assert loaded.triggered_at == FIXED_NOW

    def test_list_expirable(self, alert_repo):
        """Should list only active/triggered alerts past expiry."""
        alert_repo.create(Alert(owner_id="u", alert_type="price",
                                expires_at=FIXED_NOW - timedelta(minutes=1)))
        alert_repo.create(Alert(owner_id="u", alert_type="price",
                                expires_at=FIXED_NOW + timedelta(minutes=1)))
        alert_repo.create(Alert(owner_id="u", alert_type="price", status="cancelled",
                                expires_at=FIXED_NOW - timedelta(minutes=1)))

        assert len(alert_repo.list_expirable(FIXED_NOW)) == 1


class TestNotificationRepository:
    """Test notification persistence, claims and queries."""

    def _notification(self, **kwargs) -> Notification:
        defaults = dict(owner_id="user-1", channel="email", recipient="a@example.com",
                        message="hi", status="queued")
        defaults.update(kwargs)
        return Notification(**defaults)

    def test_claim_is_exclusive(self, notification_repo):
        """Should let only one caller claim a notification."""
        n = notification_repo.create(self._notification(), FIXED_NOW)

        assert notification_repo.claim(n.notification_id, FIXED_NOW) is True
        assert notification_repo.claim(n.notification_id, FIXED_NOW) is False
        assert notification_repo.get(n.notification_id).status == "sending"

    def test_claim_respects_next_retry_at(self, notification_repo):
        """Should not claim a retry before it is due."""
        n = notification_repo.create(
            self._notification(status="pending", next_retry_at=FIXED_NOW + timedelta(minutes=2)),
            FIXED_NOW,
        )

        assert notification_repo.claim(n.notification_id, FIXED_NOW) is False
        assert notification_repo.claim(n.notification_id, FIXED_NOW + timedelta(minutes=2)) is True

    def test_recover_stale(self, notification_repo):
        """Should release claims older than the lease."""
        n = notification_repo.create(self._notification(), FIXED_NOW)
        notification_repo.claim(n.notification_id, FIXED_NOW)

        later = FIXED_NOW + timedelta(minutes=10)
        recovered = notification_repo.recover_stale(later - timedelta(minutes=5), later)

        assert recovered == 1
        assert notification_repo.get(n.notification_id).status == "pending"

    def test_get_pending_orders_by_priority(self, notification_repo):
        """Should return due notifications highest priority first, then oldest."""
        low = notification_repo.create(self._notification(status="pending", priority="low"), FIXED_NOW)
        critical = notification_repo.create(
            self._notification(status="pending", priority="critical"),
            FIXED_NOW + timedelta(seconds=1),
        )
        notification_repo.create(
            self._notification(status="pending", next_retry_at=FIXED_NOW + timedelta(hours=1)),
            FIXED_NOW,
        )
        notification_repo.create(self._notification(status="sent"), FIXED_NOW)

        due = notification_repo.get_pending(FIXED_NOW + timedelta(seconds=5))

        assert [n.notification_id for n in due] == [
            critical.notification_id,
            low.notification_id,
        ]

    def test_get_pending_includes_stale_queued(self, notification_repo):
        """Should include queued notifications untouched since the cutoff."""
        queued = notification_repo.create(self._notification(), FIXED_NOW)

        assert notification_repo.get_pending(FIXED_NOW) == []
        due = notification_repo.get_pending(
            FIXED_NOW + timedelta(minutes=10), queued_before=FIXED_NOW + timedelta(minutes=5)
        )
        assert [n.notification_id for n in due] == [queued.notification_id]

    def test_delete_terminal_before(self, notification_repo):
        """Should delete only old terminal notifications."""
        old = FIXED_NOW - timedelta(days=40)
        notification_repo.create(self._notification(status="sent"), old)
        notification_repo.create(self._notification(status="failed"), old)
        notification_repo.create(self._notification(status="pending"), old)
        notification_repo.create(self._notification(status="sent"), FIXED_NOW)

        deleted = notification_repo.delete_terminal_before(FIXED_NOW - timedelta(days=30))

        assert deleted == 2
        assert notification_repo.status_counts() == {"pending": 1, "sent": 1}

    def test_delete_terminal_before_ignores_read_state(self, notification_repo):
        """Should prune old unread notifications as well as read ones."""
        old = FIXED_NOW - timedelta(days=40)
        notification_repo.create(self._notification(channel="inapp", status="sent"), old)
        notification_repo.create(self._notification(channel="inapp", status="sent"), old)
        notification_repo.mark_all_read("user-1", old)
        notification_repo.create(self._notification(channel="inapp", status="delivered"), old)

        deleted = notification_repo.delete_terminal_before(FIXED_NOW - timedelta(days=30))

        assert deleted == 3
        assert notification_repo.list_for_owner("user-1") == []

    def test_mark_all_read(self, notification_repo):
        """Should mark only the owner's unread notifications."""
        notification_repo.create(self._notification(), FIXED_NOW)
        notification_repo.create(self._notification(), FIXED_NOW)
        notification_repo.create(self._notification(owner_id="user-2"), FIXED_NOW)

        assert notification_repo.mark_all_read("user-1", FIXED_NOW) == 2
        assert notification_repo.list_for_owner("user-1", unread_only=True) == []
        assert len(notification_repo.list_for_owner("user-2", unread_only=True)) == 1

    def test_count_since(self, notification_repo):
        """Should count notifications created in the window."""
        notification_repo.create(self._notification(), FIXED_NOW - timedelta(hours=2))
        notification_repo.create(self._notification(), FIXED_NOW)

        assert notification_repo.count_since("user-1", FIXED_NOW - timedelta(hours=1)) == 1


class TestPreferenceRepository:
    """Test preference persistence."""

    def test_upsert_round_trip(self, preference_repo):
        """Should persist nested preference blocks."""
        preference = NotificationPreference(owner_id="user-1")
        preference.channels["sms"].enabled = True
        preference.channels["sms"].address = "+15555550100"
        preference.quiet_hours.enabled = True
        preference.limits.max_per_hour = 3

        preference_repo.upsert(preference)
        loaded = preference_repo.get("user-1")

        assert loaded.channels["sms"].address == "+15555550100"
        assert loaded.quiet_hours.enabled is True
        assert loaded.limits.max_per_hour == 3
        assert loaded.alert_types["volume"].channels == ["inapp"]

    def test_upsert_replaces_existing(self, preference_repo):
        """Should keep one row per owner."""
        preference = preference_repo.get_or_create("user-1")
        preference.enabled = False
        preference_repo.upsert(preference)

        assert preference_repo.get("user-1").enabled is False
        assert preference_repo.get("user-1").id == preference.id

    def test_get_by_unsubscribe_token(self, preference_repo):
        """Should find preferences by their unsubscribe token."""
        preference = preference_repo.get_or_create("user-1")

        found = preference_repo.get_by_unsubscribe_token(preference.unsubscribe_token)
        assert found.owner_id == "user-1"
        assert preference_repo.get_by_unsubscribe_token("nope") is None


class TestWebhookRepository:
    """Test subscription persistence."""

    def test_list_active_for_event(self, webhook_repo):
        """Should match events and skip inactive subscriptions."""
        webhook_repo.create(Webhook(owner_id="u", url="https://a.test", events=["alert.triggered"]))
        webhook_repo.create(Webhook(owner_id="u", url="https://b.test", events=["*"]))
        webhook_repo.create(Webhook(owner_id="u", url="https://c.test", events=["*"], active=False))

        urls = [w.url for w in webhook_repo.list_active_for_event("alert.triggered")]
        assert urls == ["https://a.test", "https://b.test"]

    def test_delete_inactive_before(self, webhook_repo):
        """Should prune only inactive subscriptions older than the cutoff."""
        old = webhook_repo.create(
            Webhook(owner_id="u", url="https://a.test", events=["*"]),
            FIXED_NOW - timedelta(days=40),
        )
        webhook_repo.set_active(old.webhook_id, False, FIXED_NOW - timedelta(days=40))
        webhook_repo.create(
            Webhook(owner_id="u", url="https://b.test", events=["*"], active=False), FIXED_NOW
        )

        assert webhook_repo.delete_inactive_before(FIXED_NOW - timedelta(days=30)) == 1
