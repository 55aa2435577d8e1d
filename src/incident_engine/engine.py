from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog

from incident_engine.alerting.slack import FeedSender, LogFeedSender, SlackFeedSender, deliver_feed_event
from incident_engine.checks import CheckResult
from incident_engine.config import Settings
from incident_engine.escalation import EscalationScheduler, FeedRuleExecutor, RuleExecutor, SweepOutcome
from incident_engine.events import EventQueue, MetricsRefresh
from incident_engine.incidents import IssueManager
from incident_engine.ingest import IngestResponse, MonitorIngestor
from incident_engine.lifecycle import IncidentLifecycleController
from incident_engine.maintenance import MaintenanceManager
from incident_engine.metrics import InMemoryMetricsSink, MetricsRecorder, MetricsSink
from incident_engine.models import FeedEvent
from incident_engine.retention import PurgeReport, purge_expired
from incident_engine.store import JsonFileStore, Store
from incident_engine.timeline import StatusTimelineManager

log = structlog.get_logger(__name__)


@dataclass
class Engine:
    settings: Settings
    store: Store
    events: EventQueue
    sink: MetricsSink
    feed_sender: FeedSender
    timeline: StatusTimelineManager
    issues: IssueManager
    maintenance: MaintenanceManager
    lifecycle: IncidentLifecycleController
    metrics: MetricsRecorder
    ingestor: MonitorIngestor
    escalation: EscalationScheduler

    async def ingest(self, result: CheckResult, now: datetime | None = None) -> IngestResponse:
        response = await self.ingestor.process(result, now)
        await self.events.drain()
        return response

    async def run_sweep(self, now: datetime | None = None) -> dict[str, SweepOutcome]:
        outcomes = await self.escalation.sweep(now)
        await self.events.drain()
        return outcomes

    async def purge(self, now: datetime | None = None) -> PurgeReport | None:
        if self.settings.retention_days is None:
            log.info("retention_disabled")
            return None
        return await purge_expired(self.store, self.settings.retention_days, now, self.sink)


def default_feed_sender(settings: Settings) -> FeedSender:
    if settings.slack_enabled and settings.slack_webhook_url:
        return SlackFeedSender(settings.slack_webhook_url, timeout=settings.http_timeout_seconds)
    return LogFeedSender()


def build_engine(
    settings: Settings,
    store: Store | None = None,
    sink: MetricsSink | None = None,
    feed_sender: FeedSender | None = None,
    rule_executor: RuleExecutor | None = None,
) -> Engine:
    store = store if store is not None else JsonFileStore(settings.store_path)
    sink = sink if sink is not None else InMemoryMetricsSink()
    sender = feed_sender if feed_sender is not None else default_feed_sender(settings)

    events = EventQueue(max_attempts=settings.event_max_attempts, retry_delays=settings.event_retry_seconds)
    timeline = StatusTimelineManager(store, events)
    issues = IssueManager(store, timeline, events)
    metrics = MetricsRecorder(store, sink, settings.server_offline_after_minutes)
    lifecycle = IncidentLifecycleController(store, timeline, issues)
    ingestor = MonitorIngestor(
        store,
        lifecycle,
        metrics,
        expression_timeout_seconds=settings.expression_timeout_seconds,
        server_offline_after_minutes=settings.server_offline_after_minutes,
    )
    executor = rule_executor if rule_executor is not None else FeedRuleExecutor(events)

    async def send_feed(event: FeedEvent) -> None:
        await deliver_feed_event(event, sender)

    async def refresh_metrics(event: MetricsRefresh) -> None:
        await metrics.handle_refresh(event)

    events.subscribe("feed", send_feed)
    events.subscribe("metrics_refresh", refresh_metrics)

    return Engine(
        settings=settings,
        store=store,
        events=events,
        sink=sink,
        feed_sender=sender,
        timeline=timeline,
        issues=issues,
        maintenance=MaintenanceManager(store, timeline),
        lifecycle=lifecycle,
        metrics=metrics,
        ingestor=ingestor,
        escalation=EscalationScheduler(store, executor),
    )
