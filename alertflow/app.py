"""
Pipeline composition root.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from alertflow.alerts.lifecycle import AlertLifecycleManager
from alertflow.config import AppConfig
from alertflow.data.fetcher import MarketValueFetcher, ValueFetcher
from alertflow.database.connection import Database
from alertflow.database.models import Notification, RetryPolicy
from alertflow.database.repository import (
    AlertRepository,
    NotificationRepository,
    PreferenceRepository,
    RuleRepository,
    WebhookRepository,
)
from alertflow.jobs import PipelineJobs
from alertflow.notifications.delivery import DeliveryTracker
from alertflow.notifications.dispatcher import NotificationDispatcher
from alertflow.notifications.preferences import PreferenceGate
from alertflow.notifications.summaries import DailySummaryService
from alertflow.notifiers.base import SenderRegistry
from alertflow.notifiers.email import EmailSender
from alertflow.notifiers.inapp import InAppSender
from alertflow.notifiers.push import PushSender
from alertflow.notifiers.sms import SMSSender
from alertflow.notifiers.webhook import WebhookSender
from alertflow.queue.base import WorkQueue
from alertflow.queue.memory import InMemoryWorkQueue
from alertflow.rules.engine import RuleCheckResult, RuleEngine
from alertflow.scheduler import MarketHours, PipelineScheduler
from alertflow.timeutil import utc_now
from alertflow.webhooks.receiver import WebhookReceiver
from alertflow.webhooks.registry import WebhookRegistry

logger = logging.getLogger(__name__)


def build_webhook_sender(
    config: AppConfig, preferences: Optional[PreferenceRepository] = None
) -> WebhookSender:
    """Webhook sender that signs with the owner's secret when one is stored."""
    webhook_config = config.notifications.webhook

    def secret_for(notification: Notification) -> Optional[str]:
        if preferences is None:
            return None
        preference = preferences.get(notification.owner_id)
        settings = preference.channel("webhook") if preference else None
        return settings.secret if settings else None

    return WebhookSender(
        default_secret=webhook_config.secret,
        secret_resolver=secret_for,
        timeout=webhook_config.timeout_seconds,
        max_retries=webhook_config.max_retries,
        retry_delay=webhook_config.retry_delay_seconds,
        max_retry_after=webhook_config.max_retry_after_seconds,
    )


def build_senders(config: AppConfig, preferences: PreferenceRepository) -> SenderRegistry:
    """Create a sender for every enabled channel. In-app is always available."""
    notif_config = config.notifications
    registry = SenderRegistry()
    registry.register("inapp", InAppSender())

    if notif_config.email.enabled:
        email = notif_config.email
        registry.register(
            "email",
            EmailSender(
                smtp_host=email.smtp_host,
                smtp_port=email.smtp_port,
                smtp_user=email.smtp_user,
                smtp_password=email.smtp_password,
                from_address=email.from_address,
                use_tls=email.use_tls,
            ),
        )

    if notif_config.sms.enabled:
        sms = notif_config.sms
        registry.register(
            "sms",
            SMSSender(
                account_sid=sms.account_sid,
                auth_token=sms.auth_token,
                from_number=sms.from_number,
                api_url=sms.api_url,
            ),
        )

    if notif_config.push.enabled:

        def tokens_for(owner_id: str) -> list[str]:
            preference = preferences.get(owner_id)
            settings = preference.channel("push") if preference else None
            if settings is None:
                return []
            return [
                t["token"] if isinstance(t, dict) else str(t)
                for t in settings.tokens
                if (t.get("token") if isinstance(t, dict) else t)
            ]

        registry.register(
            "push",
            PushSender(
                server_key=notif_config.push.server_key,
                token_resolver=tokens_for,
                endpoint=notif_config.push.endpoint,
            ),
        )

    if notif_config.webhook.enabled:
        registry.register("webhook", build_webhook_sender(config, preferences))

    logger.info(f"Senders registered: {', '.join(registry.channels())}")
    return registry


class AlertPipeline:
    """Wires repositories, services, queue and scheduler together."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        fetcher: Optional[ValueFetcher] = None,
        senders: Optional[SenderRegistry] = None,
        queue: Optional[WorkQueue] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Application configuration
            db: Database instance (already initialized)
            fetcher: Value source; defaults to the market data fetcher
            senders: Channel senders; defaults to the configured channels
            queue: Work queue; defaults to an in-process queue
            clock: Current time source
        """
        self.config = config
        self.db = db
        self.clock = clock
        timezone = config.schedule.timezone
        notif_config = config.notifications

        # Repositories
        self.rule_repo = RuleRepository(db)
        self.alert_repo = AlertRepository(db)
        self.notification_repo = NotificationRepository(db)
        self.preference_repo = PreferenceRepository(db)
        self.webhook_repo = WebhookRepository(db)

        # Services
        self.queue = queue or InMemoryWorkQueue(
            poll_interval=config.queue.poll_interval_seconds
        )
        self.fetcher = fetcher or MarketValueFetcher(
            portfolio_api_url=config.market_data.portfolio_api_url,
            timeout=config.market_data.timeout_seconds,
        )
        self.senders = senders or build_senders(config, self.preference_repo)
        self.gate = PreferenceGate()

        self.tracker = DeliveryTracker(
            notifications=self.notification_repo,
            alerts=self.alert_repo,
            rules=self.rule_repo,
            senders=self.senders,
            queue=self.queue,
            retry_policy=RetryPolicy(
                base_seconds=notif_config.retry_base_seconds,
                multiplier=notif_config.retry_multiplier,
            ),
            lease_seconds=notif_config.lease_seconds,
            clock=clock,
        )
        self.dispatcher = NotificationDispatcher(
            notifications=self.notification_repo,
            preferences=self.preference_repo,
            rules=self.rule_repo,
            tracker=self.tracker,
            gate=self.gate,
            default_channels=notif_config.default_channels,
            max_retries=notif_config.max_retries,
            clock=clock,
        )
        self.lifecycle = AlertLifecycleManager(self.alert_repo, clock=clock)
        self.engine = RuleEngine(
            db=db,
            rules=self.rule_repo,
            fetcher=self.fetcher,
            lifecycle=self.lifecycle,
            dispatcher=self.dispatcher,
            timezone=timezone,
            clock=clock,
        )
        self.summaries = DailySummaryService(
            preferences=self.preference_repo,
            alerts=self.alert_repo,
            dispatcher=self.dispatcher,
            fetcher=self.fetcher if isinstance(self.fetcher, MarketValueFetcher) else None,
            gate=self.gate,
            timezone=timezone,
            clock=clock,
        )

        # Webhooks
        webhook_sender = self.senders.get("webhook")
        if not isinstance(webhook_sender, WebhookSender):
            webhook_sender = build_webhook_sender(config)
        self.webhooks = WebhookRegistry(self.webhook_repo, webhook_sender, clock=clock)
        self.receiver = WebhookReceiver(
            tracker=self.tracker,
            webhooks=self.webhook_repo,
            global_secret=notif_config.webhook.secret,
            tolerance_seconds=notif_config.webhook.signature_tolerance_seconds,
            clock=clock,
        )

        # Jobs and triggers
        self.jobs = PipelineJobs(
            engine=self.engine,
            tracker=self.tracker,
            lifecycle=self.lifecycle,
            summaries=self.summaries,
            webhooks=self.webhooks,
            batch_size=notif_config.batch_size,
            retention_days=notif_config.retention_days,
        )
        self.jobs.register(self.queue)

        self.market_hours = MarketHours(
            timezone=timezone,
            market_open=config.schedule.market_open,
            market_close=config.schedule.market_close,
            clock=clock,
        )
        self.scheduler = PipelineScheduler(
            self.queue, config.schedule.triggers, self.market_hours, timezone
        )

    def start(self, workers: Optional[int] = None) -> None:
        """Register recurring triggers and start the queue workers."""
        self.scheduler.start()
        self.queue.start(workers or self.config.queue.workers)

    def stop(self) -> None:
        self.scheduler.stop()
        self.queue.stop()

    def drain_queue(self) -> int:
        """Run ready in-process jobs on the calling thread."""
        if isinstance(self.queue, InMemoryWorkQueue):
            return self.queue.drain()
        return 0

    def run_once(self) -> list[RuleCheckResult]:
        """Check every enabled rule, then sweep and drain due notifications."""
        results = self.engine.check_rules()
        self.tracker.sweep(limit=self.config.notifications.batch_size)
        self.drain_queue()
        return results
