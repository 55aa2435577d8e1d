from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from incident_engine.checks import (
    IncomingRequestCheckResult,
    ProbeCheckResult,
    ServerCheckResult,
    parse_check_result,
)
from incident_engine.config import Settings
from incident_engine.engine import build_engine
from incident_engine.exceptions import MonitorDisabledError, NotFoundError, ProbeNotAssignedError
from incident_engine.ingest import DISABLED_BY_MAINTENANCE_MESSAGE, DISABLED_MESSAGE
from incident_engine.metrics import InMemoryMetricsSink
from incident_engine.models import (
    CriteriaInstance,
    Filter,
    Monitor,
    MonitorProbe,
    MonitorStep,
    MonitorSteps,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def two_steps() -> MonitorSteps:
    slow = CriteriaInstance(
        id="c-slow",
        name="Slow",
        filters=[Filter(check_on="response_time", filter_type="greater_than", value=500)],
        change_monitor_status=True,
        monitor_status_id="monitor-degraded",
    )
    return MonitorSteps(
        steps=[
            MonitorStep(id="step-1", criteria=[slow], default_status_id="monitor-operational"),
            MonitorStep(id="step-2", default_status_id="monitor-operational"),
        ]
    )


@pytest.mark.asyncio
async def test_unknown_monitor(seed, settings: Settings) -> None:
    engine = build_engine(settings, store=seed.store)
    with pytest.raises(NotFoundError, match="Monitor not found"):
        await engine.ingest(ProbeCheckResult(monitor_type="api", monitor_id="missing"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("flag", "message"),
    [
        ("disable_active_monitoring", DISABLED_MESSAGE),
        ("disabled_by_scheduled_maintenance", DISABLED_BY_MAINTENANCE_MESSAGE),
    ],
)
async def test_disabled_monitors_reject_results(seed, settings: Settings, flag: str, message: str) -> None:
    engine = build_engine(settings, store=seed.store)
    monitor = await seed.add_monitor(**{flag: True})
    with pytest.raises(MonitorDisabledError) as excinfo:
        await engine.ingest(ProbeCheckResult(monitor_type="api", monitor_id=monitor.id))
    assert str(excinfo.value) == message


@pytest.mark.asyncio
async def test_probe_must_be_assigned(seed, settings: Settings) -> None:
    engine = build_engine(settings, store=seed.store)
    monitor = await seed.add_monitor()
    with pytest.raises(ProbeNotAssignedError, match="Probe is not assigned to this monitor"):
        await engine.ingest(ProbeCheckResult(monitor_type="api", monitor_id=monitor.id, probe_id="probe-eu"))


@pytest.mark.asyncio
async def test_probe_log_is_kept_per_step(seed, settings: Settings) -> None:
    engine = build_engine(settings, store=seed.store)
    monitor = await seed.add_monitor(steps=two_steps())
    assignment = await seed.store.create(
        MonitorProbe(project_id=seed.project_id, monitor_id=monitor.id, probe_id="probe-eu"),
        is_root=True,
    )

    response = await engine.ingest(
        ProbeCheckResult(
            monitor_type="api",
            monitor_id=monitor.id,
            monitor_step_id="step-1",
            probe_id="probe-eu",
            response_time_ms=900,
        ),
        now=NOW,
    )

    assert response.ingested_step_id == "step-1"
    assert response.next_step_id == "step-2"
    assert response.criteria_met_id == "c-slow"
    stored = await seed.store.find_one(MonitorProbe, {"id": assignment.id}, is_root=True)
    assert stored is not None
    assert stored.last_monitoring_log["step-1"]["response_time_ms"] == 900
    assert stored.last_monitoring_log["step-1"]["monitored_at"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_last_step_has_no_next_step(seed, settings: Settings) -> None:
    engine = build_engine(settings, store=seed.store)
    monitor = await seed.add_monitor(steps=two_steps())
    response = await engine.ingest(
        ProbeCheckResult(monitor_type="api", monitor_id=monitor.id, monitor_step_id="step-2", response_time_ms=900)
    )
    assert response.ingested_step_id == "step-2"
    assert response.next_step_id is None
    assert response.criteria_met_id is None


@pytest.mark.asyncio
async def test_monitor_without_steps_only_records(seed, settings: Settings) -> None:
    sink = InMemoryMetricsSink()
    engine = build_engine(settings, store=seed.store, sink=sink)
    monitor = await seed.add_monitor()
    response = await engine.ingest(
        ProbeCheckResult(monitor_type="api", monitor_id=monitor.id, response_time_ms=120, response_code=200),
        now=NOW,
    )
    assert response.ingested_step_id is None
    assert [point.name for point in sink.points] == ["response_time", "is_online", "response_status_code"]


@pytest.mark.asyncio
async def test_incoming_request_heartbeat_is_stored(seed, settings: Settings) -> None:
    engine = build_engine(settings, store=seed.store)
    monitor = await seed.add_monitor(monitor_type="incoming_request")
    received = NOW - timedelta(seconds=5)

    await engine.ingest(
        IncomingRequestCheckResult(
            monitor_id=monitor.id,
            request_method="POST",
            incoming_request_received_at=received,
        ),
        now=NOW,
    )

    stored = await seed.store.find_one(Monitor, {"id": monitor.id}, is_root=True)
    assert stored is not None
    assert stored.incoming_request_received_at == received
    assert stored.last_incoming_request is not None
    assert stored.last_incoming_request["request_method"] == "POST"


@pytest.mark.asyncio
async def test_server_report_and_offline_status(seed, settings: Settings) -> None:
    offline = CriteriaInstance(
        id="c-offline",
        name="Server offline",
        filters=[Filter(check_on="is_online", filter_type="false")],
        change_monitor_status=True,
        monitor_status_id="monitor-offline",
    )
    engine = build_engine(settings, store=seed.store)
    monitor = await seed.add_monitor(
        monitor_type="server",
        steps=MonitorSteps(steps=[MonitorStep(criteria=[offline], default_status_id="monitor-operational")]),
    )

    stale = ServerCheckResult(monitor_id=monitor.id, request_received_at=NOW - timedelta(minutes=10))
    response = await engine.ingest(stale, now=NOW)

    assert response.criteria_met_id == "c-offline"
    stored = await seed.store.find_one(Monitor, {"id": monitor.id}, is_root=True)
    assert stored is not None
    assert stored.server_report_received_at == NOW - timedelta(minutes=10)
    assert stored.current_state_id == "monitor-offline"


def test_parse_check_result_dispatches_on_monitor_type() -> None:
    result = parse_check_result(
        {
            "monitor_type": "server",
            "monitor_id": "m-1",
            "cpu_percent_used": 12.5,
            "disks": [{"disk_path": "/", "percent_used": 40}],
        }
    )
    assert isinstance(result, ServerCheckResult)
    assert result.disks[0].disk_path == "/"
    assert isinstance(parse_check_result({"monitor_type": "ping", "monitor_id": "m-1"}), ProbeCheckResult)
