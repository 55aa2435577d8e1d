from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import pytest

from incident_engine.alerting.slack import LogFeedSender
from incident_engine.checks import ProbeCheckResult
from incident_engine.config import Settings
from incident_engine.engine import Engine, build_engine
from incident_engine.exceptions import ConfigurationError
from incident_engine.lifecycle import auto_resolve_root_cause, should_close
from incident_engine.metrics import InMemoryMetricsSink
from incident_engine.models import (
    Alert,
    AlertTemplate,
    CriteriaInstance,
    ExecutionLog,
    Filter,
    Incident,
    IncidentTemplate,
    Monitor,
    MonitorStep,
    MonitorSteps,
    OnCallPolicy,
    Severity,
    TimelineEntry,
)


def outage_steps(
    auto_resolve: bool = True,
    policy_ids: Sequence[str] = (),
    severity_id: str | None = None,
) -> MonitorSteps:
    criteria = CriteriaInstance(
        id="c-down",
        name="API down",
        filters=[Filter(check_on="response_status_code", filter_type="greater_than_or_equal_to", value=500)],
        change_monitor_status=True,
        monitor_status_id="monitor-offline",
        create_incidents=True,
        incidents=[
            IncidentTemplate(
                id="t-down",
                title="API is down",
                description="Checkout API returns 5xx",
                severity_id=severity_id,
                auto_resolve=auto_resolve,
                on_call_policy_ids=list(policy_ids),
            )
        ],
        create_alerts=True,
        alerts=[AlertTemplate(id="a-down", title="API alert", auto_resolve=auto_resolve)],
    )
    return MonitorSteps(steps=[MonitorStep(id="s1", criteria=[criteria], default_status_id="monitor-operational")])


def probe(monitor: Monitor, code: int) -> ProbeCheckResult:
    return ProbeCheckResult(monitor_type="api", monitor_id=monitor.id, response_code=code, response_time_ms=90)


def make_engine(seed, settings: Settings) -> tuple[Engine, LogFeedSender, InMemoryMetricsSink]:
    sender = LogFeedSender()
    sink = InMemoryMetricsSink()
    return build_engine(settings, store=seed.store, sink=sink, feed_sender=sender), sender, sink


@pytest.mark.asyncio
async def test_matching_result_creates_one_incident_and_alert(seed, settings: Settings) -> None:
    engine, sender, sink = make_engine(seed, settings)
    monitor = await seed.add_monitor(steps=outage_steps())

    first = await engine.ingest(probe(monitor, 503))
    second = await engine.ingest(probe(monitor, 503))

    assert first.criteria_met_id == "c-down"
    assert first.status_changed is True
    assert len(first.created_ids) == 2
    assert second.created_ids == []
    assert second.status_changed is False

    incidents = await seed.store.find_many(Incident, {}, is_root=True)
    alerts = await seed.store.find_many(Alert, {}, is_root=True)
    assert len(incidents) == 1 and len(alerts) == 1
    incident = incidents[0]
    assert incident.number == 1
    assert incident.monitor_ids == [monitor.id]
    assert incident.current_state_id == "incident-identified"
    assert incident.is_created_automatically is True
    assert incident.dedup_key == ("c-down", "t-down")
    assert incident.root_cause is not None and incident.root_cause.startswith("**Criteria Met**: API down")

    stored = await seed.store.find_one(Monitor, {"id": monitor.id}, is_root=True)
    assert stored is not None and stored.current_state_id == "monitor-offline"
    assert any(event.markdown.startswith("🚨 **Incident 1 Created**:") for event in sender.sent)
    assert len(sink.named("IncidentCount", incident.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_results_do_not_duplicate_incidents(seed, settings: Settings) -> None:
    engine, _, _ = make_engine(seed, settings)
    monitor = await seed.add_monitor(steps=outage_steps())

    await asyncio.gather(*(engine.ingest(probe(monitor, 500)) for _ in range(5)))

    assert await seed.store.count(Incident, {}, is_root=True) == 1
    assert await seed.store.count(Alert, {}, is_root=True) == 1


@pytest.mark.asyncio
async def test_recovery_resets_status_and_auto_resolves(seed, settings: Settings) -> None:
    engine, _, sink = make_engine(seed, settings)
    monitor = await seed.add_monitor(steps=outage_steps())
    down = await engine.ingest(probe(monitor, 503))

    recovered = await engine.ingest(probe(monitor, 200))

    assert recovered.criteria_met_id is None
    assert recovered.status_changed is True
    assert sorted(recovered.resolved_ids) == sorted(down.created_ids)
    stored = await seed.store.find_one(Monitor, {"id": monitor.id}, is_root=True)
    assert stored is not None and stored.current_state_id == "monitor-operational"

    incident = (await seed.store.find_many(Incident, {}, is_root=True))[0]
    assert await engine.issues.is_resolved("incident", incident.id)
    entries = await engine.timeline.entries(incident.id)
    assert entries[-1].root_cause is not None
    assert entries[-1].root_cause.startswith(
        "Incident autoresolved because autoresolve is set to true in monitor criteria. "
        "No monitoring criteria met. Change to default status."
    )
    assert len(sink.named("TimeToResolve", incident.id)) == 1

    again = await engine.ingest(probe(monitor, 503))
    assert len(again.created_ids) == 2


@pytest.mark.asyncio
async def test_incidents_without_auto_resolve_stay_open(seed, settings: Settings) -> None:
    engine, _, _ = make_engine(seed, settings)
    monitor = await seed.add_monitor(steps=outage_steps(auto_resolve=False))
    await engine.ingest(probe(monitor, 503))

    recovered = await engine.ingest(probe(monitor, 200))

    assert recovered.resolved_ids == []
    assert len(await engine.issues.open_for_monitor("incident", monitor.id)) == 1


@pytest.mark.asyncio
async def test_severity_defaults_to_lowest_order(seed, settings: Settings) -> None:
    engine, _, _ = make_engine(seed, settings)
    monitor = await seed.add_monitor(steps=outage_steps())
    await engine.ingest(probe(monitor, 503))
    incident = (await seed.store.find_many(Incident, {}, is_root=True))[0]
    assert incident.severity_id == "sev-critical"

    other = await seed.add_monitor(name="Search", steps=outage_steps(severity_id="sev-minor"))
    await engine.ingest(probe(other, 503))
    assert (await engine.issues.open_for_monitor("incident", other.id))[0].severity_id == "sev-minor"


@pytest.mark.asyncio
async def test_missing_severity_is_a_configuration_error(seed, settings: Settings) -> None:
    engine, _, _ = make_engine(seed, settings)
    await seed.store.delete_where(Severity, {}, is_root=True)
    monitor = await seed.add_monitor(steps=outage_steps())

    with pytest.raises(ConfigurationError, match="Project does not have incident severity"):
        await engine.ingest(probe(monitor, 503))


@pytest.mark.asyncio
async def test_created_incident_triggers_on_call_policy(seed, settings: Settings) -> None:
    engine, _, _ = make_engine(seed, settings)
    policy = await seed.store.create(
        OnCallPolicy(project_id=seed.project_id, name="Primary", repeat_policy_if_no_one_acknowledges_times=2),
        is_root=True,
    )
    monitor = await seed.add_monitor(steps=outage_steps(policy_ids=[policy.id, "missing-policy"]))

    await engine.ingest(probe(monitor, 503))

    logs = await seed.store.find_many(ExecutionLog, {}, is_root=True)
    assert len(logs) == 1
    assert logs[0].policy_id == policy.id
    assert logs[0].notification_event_type == "incident_created"
    assert logs[0].max_repeats == 2
    assert logs[0].status == "executing"
    assert logs[0].triggered_by_incident_id is not None


def test_should_close_rules() -> None:
    incident = Incident(project_id="p", title="x", created_criteria_id="c1", created_template_id="t1")
    auto = {"c1": {"t1"}}
    assert should_close(incident, auto, None)
    assert should_close(incident, auto, "c2")
    assert not should_close(incident, auto, "c1")
    assert not should_close(incident, {"c1": {"t2"}}, None)
    manual = Incident(project_id="p", title="x")
    assert not should_close(manual, auto, None)


def test_auto_resolve_root_cause_text() -> None:
    assert auto_resolve_root_cause("alert", "cause") == (
        "Alert autoresolved because autoresolve is set to true in monitor criteria. cause"
    )


@pytest.mark.asyncio
async def test_replayed_results_are_stamped_with_their_own_clock(seed, settings: Settings) -> None:
    engine, _, _ = make_engine(seed, settings)
    monitor = await seed.add_monitor(steps=outage_steps())
    down_at = datetime(2025, 11, 3, 9, 0, tzinfo=UTC)
    up_at = down_at + timedelta(minutes=30)

    await engine.ingest(probe(monitor, 503), now=down_at)
    await engine.ingest(probe(monitor, 200), now=up_at)

    incident = await seed.store.find_one(Incident, {"project_id": seed.project_id}, is_root=True)
    assert incident is not None
    assert incident.created_at == down_at
    incident_entries = await seed.store.find_many(
        TimelineEntry, {"owner_id": incident.id}, sort="starts_at", is_root=True
    )
    assert [(entry.state_id, entry.starts_at) for entry in incident_entries] == [
        ("incident-identified", down_at),
        ("incident-resolved", up_at),
    ]
    monitor_entries = await seed.store.find_many(
        TimelineEntry, {"owner_id": monitor.id}, sort="starts_at", is_root=True
    )
    assert [(entry.state_id, entry.starts_at) for entry in monitor_entries][-2:] == [
        ("monitor-offline", down_at),
        ("monitor-operational", up_at),
    ]
