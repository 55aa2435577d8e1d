from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from incident_engine.checks import (
    CheckResult,
    CustomCodeCheckResult,
    ProbeCheckResult,
    ServerCheckResult,
    SyntheticCheckResult,
    as_utc,
)
from incident_engine.events import MetricsRefresh
from incident_engine.exceptions import NotFoundError
from incident_engine.models import (
    Alert,
    Incident,
    MetricPoint,
    Monitor,
    OwnerKind,
    Severity,
    StateDefinition,
    TimelineEntry,
    TrackedIssue,
    utc_now,
)
from incident_engine.store import Store, in_

log = structlog.get_logger(__name__)

COUNT_METRIC_NAMES: dict[str, str] = {"incident": "IncidentCount", "alert": "AlertCount"}


class MetricsSink(Protocol):
    async def write(self, points: Sequence[MetricPoint]) -> None: ...

    async def delete_for_owner(self, owner_id: str) -> None: ...


class InMemoryMetricsSink:
    def __init__(self) -> None:
        self.points: list[MetricPoint] = []

    async def write(self, points: Sequence[MetricPoint]) -> None:
        self.points.extend(point.model_copy() for point in points)

    async def delete_for_owner(self, owner_id: str) -> None:
        self.points = [point for point in self.points if point.owner_id != owner_id]

    def named(self, name: str, owner_id: str | None = None) -> list[MetricPoint]:
        return [
            point for point in self.points if point.name == name and (owner_id is None or point.owner_id == owner_id)
        ]


def _seconds_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds()


def owner_metric_points(
    owner_kind: OwnerKind,
    owner: TrackedIssue,
    entries: Sequence[TimelineEntry],
    states: Mapping[str, StateDefinition],
    attributes: Mapping[str, str],
) -> list[MetricPoint]:
    started_at = entries[0].starts_at if entries else owner.created_at

    def point(name: str, value: float, unit: str, description: str, at: datetime) -> MetricPoint:
        return MetricPoint(
            project_id=owner.project_id,
            owner_id=owner.id,
            owner_kind=owner_kind,
            name=name,
            value=value,
            unit=unit,
            description=description,
            time=at,
            attributes=dict(attributes),
        )

    label = owner_kind.replace("_", " ")
    points = [point(COUNT_METRIC_NAMES[owner_kind], 1, "", f"Number of {label}s created", started_at)]

    acknowledged = next(
        (entry for entry in entries if states.get(entry.state_id) and states[entry.state_id].is_acknowledged_state),
        None,
    )
    if acknowledged is not None:
        points.append(
            point(
                "TimeToAcknowledge",
                _seconds_between(acknowledged.starts_at, started_at),
                "seconds",
                f"Time taken to acknowledge the {label}",
                acknowledged.starts_at,
            )
        )

    resolved = next(
        (entry for entry in entries if states.get(entry.state_id) and states[entry.state_id].is_resolved_state),
        None,
    )
    if resolved is not None:
        points.append(
            point(
                "TimeToResolve",
                _seconds_between(resolved.starts_at, started_at),
                "seconds",
                f"Time taken to resolve the {label}",
                resolved.starts_at,
            )
        )

    if entries:
        last = entries[-1]
        points.append(
            point(
                "Duration",
                _seconds_between(last.starts_at, started_at),
                "seconds",
                f"Duration of the {label}",
                last.starts_at,
            )
        )
    return points


def monitor_metric_points(
    monitor: Monitor,
    result: CheckResult,
    now: datetime | None = None,
    server_offline_after_minutes: int = 2,
) -> list[MetricPoint]:
    at = as_utc(now) if now is not None else utc_now()
    points: list[MetricPoint] = []

    def add(name: str, value: float, unit: str = "", **attributes: str | None) -> None:
        points.append(
            MetricPoint(
                project_id=monitor.project_id,
                owner_id=monitor.id,
                owner_kind="monitor",
                name=name,
                value=value,
                unit=unit,
                time=at,
                attributes={key: str(item) for key, item in attributes.items() if item is not None},
            )
        )

    if isinstance(result, ServerCheckResult):
        if result.request_received_at is not None:
            online = at - result.request_received_at <= timedelta(minutes=server_offline_after_minutes)
            add("is_online", 1 if online else 0)
        if result.cpu_percent_used is not None:
            add("cpu_usage_percent", result.cpu_percent_used, "%")
        if result.memory_percent_used is not None:
            add("memory_usage_percent", result.memory_percent_used, "%")
        for disk in result.disks:
            add("disk_usage_percent", disk.percent_used, "%", disk_path=disk.disk_path)

    elif isinstance(result, ProbeCheckResult):
        if result.response_time_ms:
            add("response_time", result.response_time_ms, "ms", probe_id=result.probe_id)
        add("is_online", 1 if result.is_online else 0, probe_id=result.probe_id)
        if result.response_code:
            add("response_status_code", result.response_code, probe_id=result.probe_id)

    elif isinstance(result, SyntheticCheckResult):
        for run in result.runs:
            add(
                "execution_time",
                run.execution_time_ms,
                "ms",
                probe_id=result.probe_id,
                browser_type=run.browser_type,
                screen_size_type=run.screen_size_type,
            )

    elif isinstance(result, CustomCodeCheckResult) and result.run is not None:
        add("execution_time", result.run.execution_time_ms, "ms", probe_id=result.probe_id)

    return points


class MetricsRecorder:
    def __init__(self, store: Store, sink: MetricsSink, server_offline_after_minutes: int = 2) -> None:
        self.store = store
        self.sink = sink
        self.server_offline_after_minutes = server_offline_after_minutes

    async def refresh(self, owner_kind: OwnerKind, owner_id: str) -> list[MetricPoint]:
        model: type[TrackedIssue] = Incident if owner_kind == "incident" else Alert
        owner = await self.store.find_one(model, {"id": owner_id}, is_root=True)
        if owner is None:
            raise NotFoundError(f"{owner_kind} {owner_id} not found")

        entries = await self.store.find_many(TimelineEntry, {"owner_id": owner_id}, sort="starts_at", is_root=True)
        state_ids = sorted({entry.state_id for entry in entries})
        states = {
            state.id: state
            for state in await self.store.find_many(StateDefinition, {"id": in_(state_ids)}, is_root=True)
        }

        attributes: dict[str, str] = {f"{owner_kind}_id": owner.id, "project_id": owner.project_id}
        if isinstance(owner, Incident):
            attributes["monitor_ids"] = ",".join(owner.monitor_ids)
        elif isinstance(owner, Alert) and owner.monitor_id:
            attributes["monitor_id"] = owner.monitor_id
        if owner.severity_id:
            severity = await self.store.find_one(Severity, {"id": owner.severity_id}, is_root=True)
            attributes["severity_id"] = owner.severity_id
            if severity is not None:
                attributes["severity_name"] = severity.name

        points = owner_metric_points(owner_kind, owner, entries, states, attributes)
        await self.sink.delete_for_owner(owner_id)
        await self.sink.write(points)
        log.debug("owner_metrics_refreshed", owner_kind=owner_kind, owner_id=owner_id, points=len(points))
        return points

    async def handle_refresh(self, event: MetricsRefresh) -> None:
        await self.refresh(event.owner_kind, event.owner_id)

    async def record_check(self, monitor: Monitor, result: CheckResult, now: datetime | None = None) -> int:
        points = monitor_metric_points(monitor, result, now, self.server_offline_after_minutes)
        if points:
            await self.sink.write(points)
        return len(points)
