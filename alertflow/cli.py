"""
Admin CLI commands.
"""

import argparse
import json
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

from alertflow.app import AlertPipeline
from alertflow.config import AppConfig, load_config
from alertflow.database.connection import Database
from alertflow.database.models import (
    CHANNELS,
    FREQUENCIES,
    OPERATORS,
    PRIORITIES,
    RULE_TYPES,
    AlertRule,
    ChannelSettings,
    RuleCondition,
)
from alertflow.errors import PipelineError
from alertflow.healthcheck import run_healthcheck
from alertflow.timeutil import to_iso


def build_pipeline(config_path: str, db_path: Optional[str] = None) -> AlertPipeline:
    """Load config (defaults if the file is missing) and wire a pipeline."""
    config = load_config(config_path) if Path(config_path).exists() else AppConfig()
    if db_path:
        config.database.path = db_path

    db = Database(config.database.path)
    db.initialize()
    return AlertPipeline(config=config, db=db)


def add_rule(
    pipeline: AlertPipeline,
    owner_id: str,
    name: str,
    rule_type: str,
    operator: str,
    threshold: float,
    symbol: Optional[str] = None,
    metric: Optional[str] = None,
    secondary_threshold: Optional[float] = None,
    frequency: str = "once",
    channels: Optional[list[str]] = None,
    cooldown_minutes: int = 60,
    priority: str = "medium",
) -> AlertRule:
    """Create an alert rule."""
    rule = AlertRule(
        owner_id=owner_id,
        name=name,
        rule_type=rule_type,
        condition=RuleCondition(
            operator=operator,
            threshold=threshold,
            symbol=symbol.upper() if symbol else None,
            metric=metric,
            secondary_threshold=secondary_threshold,
            frequency=frequency,
        ),
        channels=channels or [],
        cooldown_minutes=cooldown_minutes,
        priority=priority,
    )
    return pipeline.rule_repo.create(rule)


def set_channel(
    pipeline: AlertPipeline,
    owner_id: str,
    channel: str,
    enabled: bool,
    address: Optional[str] = None,
    verified: Optional[bool] = None,
    secret: Optional[str] = None,
) -> ChannelSettings:
    """Update one channel block of an owner's preferences."""
    preference = pipeline.preference_repo.get_or_create(owner_id)
    settings = preference.channels.setdefault(channel, ChannelSettings())
    settings.enabled = enabled
    if address is not None:
        settings.address = address
    if verified is not None:
        settings.verified = verified
    if secret is not None:
        settings.secret = secret
    pipeline.preference_repo.upsert(preference, pipeline.clock())
    return settings


def set_quiet_hours(
    pipeline: AlertPipeline,
    owner_id: str,
    enabled: bool,
    start: Optional[str] = None,
    end: Optional[str] = None,
    timezone: Optional[str] = None,
) -> None:
    """Update an owner's quiet hours window."""
    preference = pipeline.preference_repo.get_or_create(owner_id)
    quiet_hours = preference.quiet_hours
    quiet_hours.enabled = enabled
    if start:
        quiet_hours.start = start
    if end:
        quiet_hours.end = end
    if timezone:
        quiet_hours.timezone = timezone
    pipeline.preference_repo.upsert(preference, pipeline.clock())


def unsubscribe(pipeline: AlertPipeline, token: str) -> bool:
    """Turn off all notifications for the owner holding the token."""
    preference = pipeline.preference_repo.get_by_unsubscribe_token(token)
    if preference is None:
        return False
    now = pipeline.clock()
    preference.enabled = False
    preference.unsubscribed_at = now
    pipeline.preference_repo.upsert(preference, now)
    return True


def trigger_job(pipeline: AlertPipeline, name: str) -> int:
    """Fire a named trigger and run the queue until it is idle."""
    pipeline.scheduler.trigger_now(name)
    return pipeline.drain_queue()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Alert pipeline CLI")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--db", help="Database path (overrides config)")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Rules commands
    rules_parser = subparsers.add_parser("rules", help="Rules management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    add_rule_parser = rules_subparsers.add_parser("add", help="Add rule")
    add_rule_parser.add_argument("--owner", required=True, help="Owner ID")
    add_rule_parser.add_argument("--name", required=True, help="Rule name")
    add_rule_parser.add_argument("--type", required=True, choices=sorted(RULE_TYPES))
    add_rule_parser.add_argument("--operator", required=True, choices=sorted(OPERATORS))
    add_rule_parser.add_argument("--threshold", required=True, type=float)
    add_rule_parser.add_argument("--secondary", type=float, help="Upper bound for 'between'")
    add_rule_parser.add_argument("--symbol", help="Ticker symbol")
    add_rule_parser.add_argument("--metric", help="Portfolio metric")
    add_rule_parser.add_argument("--frequency", default="once", choices=sorted(FREQUENCIES))
    add_rule_parser.add_argument("--channels", help="Comma-separated channels")
    add_rule_parser.add_argument("--cooldown", type=int, default=60, help="Cooldown minutes")
    add_rule_parser.add_argument("--priority", default="medium", choices=sorted(PRIORITIES))

    list_rules_parser = rules_subparsers.add_parser("list", help="List rules")
    list_rules_parser.add_argument("--owner", help="Owner ID")

    for action in ("enable", "disable", "delete", "test", "check"):
        p = rules_subparsers.add_parser(action, help=f"{action.capitalize()} rule")
        p.add_argument("rule_id", type=int)

    check_all_parser = rules_subparsers.add_parser("check-all", help="Check enabled rules")
    check_all_parser.add_argument("--type", choices=sorted(RULE_TYPES))

    # Alert commands
    alerts_parser = subparsers.add_parser("alerts", help="Alert management")
    alerts_subparsers = alerts_parser.add_subparsers(dest="action")

    list_alerts_parser = alerts_subparsers.add_parser("list", help="List alerts")
    list_alerts_parser.add_argument("--owner", required=True, help="Owner ID")
    list_alerts_parser.add_argument("--status", help="Status filter")

    create_alert_parser = alerts_subparsers.add_parser("create", help="Create manual alert")
    create_alert_parser.add_argument("--owner", required=True, help="Owner ID")
    create_alert_parser.add_argument("--type", required=True, help="Alert type")
    create_alert_parser.add_argument("--message", default="", help="Alert message")
    create_alert_parser.add_argument("--symbol", help="Ticker symbol")
    create_alert_parser.add_argument("--severity", default="medium", choices=sorted(PRIORITIES))

    trigger_alert_parser = alerts_subparsers.add_parser("trigger", help="Trigger manual alert")
    trigger_alert_parser.add_argument("alert_id")
    trigger_alert_parser.add_argument("--value", type=float, required=True)
    trigger_alert_parser.add_argument("--message", help="Override message")

    for action in ("ack", "cancel"):
        p = alerts_subparsers.add_parser(action, help=f"{action.capitalize()} alert")
        p.add_argument("alert_id")

    alerts_subparsers.add_parser("expire", help="Expire stale alerts")

    # Notification commands
    notif_parser = subparsers.add_parser("notifications", help="Notification management")
    notif_subparsers = notif_parser.add_subparsers(dest="action")

    list_notif_parser = notif_subparsers.add_parser("list", help="List notifications")
    list_notif_parser.add_argument("--owner", required=True, help="Owner ID")
    list_notif_parser.add_argument("--unread", action="store_true", help="Unread only")
    list_notif_parser.add_argument("--channel", choices=sorted(CHANNELS))

    send_parser = notif_subparsers.add_parser("send", help="Send a notification")
    send_parser.add_argument("--owner", required=True, help="Owner ID")
    send_parser.add_argument("--channel", required=True, choices=sorted(CHANNELS))
    send_parser.add_argument("--message", required=True)
    send_parser.add_argument("--subject")
    send_parser.add_argument("--priority", default="medium", choices=sorted(PRIORITIES))

    for action in ("resend", "read"):
        p = notif_subparsers.add_parser(action, help=f"{action.capitalize()} notification")
        p.add_argument("notification_id")

    read_all_parser = notif_subparsers.add_parser("read-all", help="Mark all read")
    read_all_parser.add_argument("--owner", required=True, help="Owner ID")

    process_parser = notif_subparsers.add_parser("process", help="Process due notifications")
    process_parser.add_argument("--limit", type=int, help="Batch size")

    cleanup_parser = notif_subparsers.add_parser("cleanup", help="Delete old notifications")
    cleanup_parser.add_argument("--days", type=int, help="Days to keep")

    # Preference commands
    prefs_parser = subparsers.add_parser("prefs", help="Notification preferences")
    prefs_subparsers = prefs_parser.add_subparsers(dest="action")

    show_prefs_parser = prefs_subparsers.add_parser("show", help="Show preferences")
    show_prefs_parser.add_argument("--owner", required=True, help="Owner ID")

    channel_parser = prefs_subparsers.add_parser("channel", help="Configure a channel")
    channel_parser.add_argument("--owner", required=True, help="Owner ID")
    channel_parser.add_argument("--channel", required=True, choices=sorted(CHANNELS))
    channel_parser.add_argument("--disable", action="store_true", help="Disable channel")
    channel_parser.add_argument("--address", help="Email, phone number or URL")
    channel_parser.add_argument("--verified", action="store_true", help="Mark verified")
    channel_parser.add_argument("--secret", help="Webhook signing secret")

    quiet_parser = prefs_subparsers.add_parser("quiet-hours", help="Configure quiet hours")
    quiet_parser.add_argument("--owner", required=True, help="Owner ID")
    quiet_parser.add_argument("--disable", action="store_true", help="Disable quiet hours")
    quiet_parser.add_argument("--start", help="HH:MM")
    quiet_parser.add_argument("--end", help="HH:MM")
    quiet_parser.add_argument("--timezone", help="IANA timezone")

    unsub_parser = prefs_subparsers.add_parser("unsubscribe", help="Unsubscribe by token")
    unsub_parser.add_argument("token")

    summary_parser = prefs_subparsers.add_parser("summary", help="Send daily summary now")
    summary_parser.add_argument("--owner", required=True, help="Owner ID")

    # Webhook commands
    webhooks_parser = subparsers.add_parser("webhooks", help="Webhook subscriptions")
    webhooks_subparsers = webhooks_parser.add_subparsers(dest="action")

    add_webhook_parser = webhooks_subparsers.add_parser("add", help="Register webhook")
    add_webhook_parser.add_argument("--owner", required=True, help="Owner ID")
    add_webhook_parser.add_argument("--url", required=True)
    add_webhook_parser.add_argument("--events", default="*", help="Comma-separated events")
    add_webhook_parser.add_argument("--secret", help="Signing secret")

    list_webhooks_parser = webhooks_subparsers.add_parser("list", help="List webhooks")
    list_webhooks_parser.add_argument("--owner", required=True, help="Owner ID")

    for action in ("remove", "test"):
        p = webhooks_subparsers.add_parser(action, help=f"{action.capitalize()} webhook")
        p.add_argument("webhook_id")

    webhooks_subparsers.add_parser("cleanup", help="Prune inactive webhooks")

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Work queue")
    queue_subparsers = queue_parser.add_subparsers(dest="action")
    queue_subparsers.add_parser("triggers", help="List configured triggers")
    run_trigger_parser = queue_subparsers.add_parser("run", help="Run a trigger now")
    run_trigger_parser.add_argument("name")

    # Health
    health_parser = subparsers.add_parser("health", help="Health check")
    health_parser.add_argument("--post", help="URL to post the report to")

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("status", help="Show row counts")
    db_subparsers.add_parser("migrate", help="Create missing tables")

    args = parser.parse_args()

    pipeline = build_pipeline(args.config, args.db)

    try:
        _run_command(pipeline, args)
    except (PipelineError, ValueError, KeyError) as e:
        print(f"Error: {e}")
        raise SystemExit(1)
    finally:
        pipeline.db.close()


def _run_command(pipeline: AlertPipeline, args: argparse.Namespace) -> None:
    if args.command == "rules":
        if args.action == "add":
            channels = [c.strip() for c in args.channels.split(",")] if args.channels else None
            rule = add_rule(
                pipeline,
                owner_id=args.owner,
                name=args.name,
                rule_type=args.type,
                operator=args.operator,
                threshold=args.threshold,
                symbol=args.symbol,
                metric=args.metric,
                secondary_threshold=args.secondary,
                frequency=args.frequency,
                channels=channels,
                cooldown_minutes=args.cooldown,
                priority=args.priority,
            )
            print(f"Created rule with ID: {rule.id}")
        elif args.action == "list":
            rules = (
                pipeline.rule_repo.list_for_owner(args.owner)
                if args.owner
                else pipeline.rule_repo.list_all()
            )
            for r in rules:
                state = "on" if r.enabled else "off"
                print(
                    f"ID: {r.id} [{state}] {r.name} ({r.rule_type}) "
                    f"{r.condition.subject} {r.condition.operator} {r.condition.threshold}"
                    f" - triggered {r.trigger_count}x"
                )
        elif args.action in ("enable", "disable"):
            if pipeline.rule_repo.set_enabled(args.rule_id, args.action == "enable"):
                print(f"Rule {args.rule_id} {args.action}d")
            else:
                print(f"Rule {args.rule_id} not found")
        elif args.action == "delete":
            deleted = pipeline.rule_repo.delete(args.rule_id)
            print(f"Rule {args.rule_id} {'deleted' if deleted else 'not found'}")
        elif args.action == "test":
            rule = pipeline.rule_repo.get_by_id(args.rule_id)
            if rule is None:
                print(f"Rule {args.rule_id} not found")
                return
            _print_json(pipeline.engine.test_rule(rule))
        elif args.action == "check":
            result = pipeline.engine.check_rule_by_id(args.rule_id)
            if result is None:
                print(f"Rule {args.rule_id} not found")
                return
            pipeline.drain_queue()
            _print_json(result.__dict__)
        elif args.action == "check-all":
            results = pipeline.engine.check_rules(args.type)
            pipeline.drain_queue()
            triggered = [r for r in results if r.triggered]
            print(f"Checked {len(results)} rules, {len(triggered)} triggered")
            for r in triggered:
                print(f"  Rule {r.rule_id}: {r.value} -> {r.alert_id}")

    elif args.command == "alerts":
        if args.action == "list":
            for a in pipeline.alert_repo.list_for_owner(args.owner, status=args.status):
                print(f"{a.alert_id} [{a.status}] {a.alert_type}: {a.message}")
        elif args.action == "create":
            alert = pipeline.lifecycle.create_manual(
                {
                    "owner_id": args.owner,
                    "alert_type": args.type,
                    "message": args.message,
                    "symbol": args.symbol,
                    "severity": args.severity,
                }
            )
            print(f"Created alert {alert.alert_id}")
        elif args.action == "trigger":
            alert = pipeline.alert_repo.get(args.alert_id)
            if alert is None:
                print(f"Alert {args.alert_id} not found")
                return
            alert = pipeline.lifecycle.trigger(alert, args.value, args.message)
            notifications = pipeline.dispatcher.dispatch(alert)
            pipeline.drain_queue()
            print(f"Alert {alert.alert_id} triggered, {len(notifications)} notifications")
        elif args.action in ("ack", "cancel"):
            alert = pipeline.alert_repo.get(args.alert_id)
            if alert is None:
                print(f"Alert {args.alert_id} not found")
                return
            if args.action == "ack":
                alert = pipeline.lifecycle.acknowledge(alert)
            else:
                alert = pipeline.lifecycle.cancel(alert)
            print(f"Alert {alert.alert_id} is now {alert.status}")
        elif args.action == "expire":
            print(f"Expired {pipeline.lifecycle.expire_stale()} alerts")

    elif args.command == "notifications":
        if args.action == "list":
            for n in pipeline.notification_repo.list_for_owner(
                args.owner, unread_only=args.unread, channel=args.channel
            ):
                read = "read" if n.is_read else "unread"
                print(
                    f"{n.notification_id} [{n.status}/{read}] {n.channel} "
                    f"{to_iso(n.created_at)}: {n.subject or n.message}"
                )
        elif args.action == "send":
            notification = pipeline.dispatcher.create_notification(
                owner_id=args.owner,
                channel=args.channel,
                message=args.message,
                subject=args.subject,
                priority=args.priority,
            )
            pipeline.drain_queue()
            notification = pipeline.notification_repo.get(notification.notification_id)
            print(f"Notification {notification.notification_id} is {notification.status}")
        elif args.action == "resend":
            notification = pipeline.tracker.resend(args.notification_id)
            if notification is None:
                print(f"Notification {args.notification_id} cannot be resent")
                return
            pipeline.drain_queue()
            print(f"Notification {args.notification_id} resubmitted")
        elif args.action == "read":
            found = pipeline.tracker.mark_read(args.notification_id)
            print(f"Notification {args.notification_id} {'read' if found else 'not found'}")
        elif args.action == "read-all":
            print(f"Marked {pipeline.tracker.mark_all_read(args.owner)} notifications read")
        elif args.action == "process":
            limit = args.limit or pipeline.config.notifications.batch_size
            submitted = pipeline.tracker.sweep(limit=limit)
            pipeline.drain_queue()
            print(f"Processed {submitted} notifications")
        elif args.action == "cleanup":
            days = args.days or pipeline.config.notifications.retention_days
            print(f"Deleted {pipeline.tracker.cleanup(days)} notifications")

    elif args.command == "prefs":
        if args.action == "show":
            preference = pipeline.preference_repo.get(args.owner)
            if preference is None:
                print(f"No preferences for {args.owner}")
                return
            _print_json(
                {
                    "owner_id": preference.owner_id,
                    "enabled": preference.enabled,
                    "channels": {k: v.to_dict() for k, v in preference.channels.items()},
                    "quiet_hours": preference.quiet_hours.__dict__,
                    "limits": preference.limits.__dict__,
                    "unsubscribed_at": to_iso(preference.unsubscribed_at),
                }
            )
        elif args.action == "channel":
            settings = set_channel(
                pipeline,
                args.owner,
                args.channel,
                enabled=not args.disable,
                address=args.address,
                verified=True if args.verified else None,
                secret=args.secret,
            )
            _print_json(settings.to_dict())
        elif args.action == "quiet-hours":
            set_quiet_hours(
                pipeline,
                args.owner,
                enabled=not args.disable,
                start=args.start,
                end=args.end,
                timezone=args.timezone,
            )
            print(f"Quiet hours updated for {args.owner}")
        elif args.action == "unsubscribe":
            if unsubscribe(pipeline, args.token):
                print("Unsubscribed")
            else:
                print("Unknown unsubscribe token")
        elif args.action == "summary":
            notification = pipeline.summaries.send_daily_summary(args.owner)
            pipeline.drain_queue()
            if notification is None:
                print(f"No summary sent to {args.owner}")
            else:
                print(f"Summary notification {notification.notification_id} created")

    elif args.command == "webhooks":
        if args.action == "add":
            events = [e.strip() for e in args.events.split(",") if e.strip()]
            webhook = pipeline.webhooks.register(args.owner, args.url, events, secret=args.secret)
            print(f"Created webhook {webhook.webhook_id} (secret: {webhook.secret})")
        elif args.action == "list":
            for w in pipeline.webhooks.list_for_owner(args.owner):
                state = "active" if w.active else "inactive"
                print(f"{w.webhook_id} [{state}] {w.url} events={','.join(w.events)}")
        elif args.action == "remove":
            removed = pipeline.webhooks.unregister(args.webhook_id)
            print(f"Webhook {args.webhook_id} {'removed' if removed else 'not found'}")
        elif args.action == "test":
            _print_json(pipeline.webhooks.test(args.webhook_id))
        elif args.action == "cleanup":
            print(f"Deleted {pipeline.webhooks.cleanup_inactive()} inactive webhooks")

    elif args.command == "queue":
        if args.action == "triggers":
            for name, trigger in sorted(pipeline.config.schedule.triggers.items()):
                timing = f"every {trigger.every} {trigger.unit}"
                if trigger.at:
                    timing += f" at {trigger.at}"
                flags = " (market hours)" if trigger.market_hours_only else ""
                state = "" if trigger.enabled else " [disabled]"
                print(f"{name}: {trigger.job} {timing}{flags}{state}")
        elif args.action == "run":
            ran = trigger_job(pipeline, args.name)
            print(f"Ran {ran} jobs")

    elif args.command == "health":
        _print_json(run_healthcheck(pipeline.db, pipeline.queue, webhook_url=args.post))

    elif args.command == "db":
        if args.action == "status":
            _print_json(
                {
                    "path": pipeline.db.db_path,
                    "rules": len(pipeline.rule_repo.list_all()),
                    "notifications": pipeline.notification_repo.status_counts(),
                }
            )
        elif args.action == "migrate":
            pipeline.db.initialize()
            print("Migrations applied")


if __name__ == "__main__":
    main()
