from __future__ import annotations

from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from incident_engine.checks import (
    PROBED_MONITOR_TYPES,
    CheckResult,
    IncomingRequestCheckResult,
    ServerCheckResult,
    as_utc,
    probe_id_of,
)
from incident_engine.criteria import EvaluationContext, build_auto_resolve_map, select_step, step_outcome
from incident_engine.exceptions import MonitorDisabledError, NotFoundError, ProbeNotAssignedError
from incident_engine.lifecycle import IncidentLifecycleController
from incident_engine.metrics import MetricsRecorder
from incident_engine.models import Monitor, MonitorProbe, utc_now
from incident_engine.store import Store

log = structlog.get_logger(__name__)

DISABLED_MESSAGE = "Monitor is disabled. Please enable it to start monitoring again."
DISABLED_BY_INCIDENT_MESSAGE = (
    "Monitor is disabled because an incident which is created manually is not resolved. "
    "Please resolve the incident to start monitoring again."
)
DISABLED_BY_MAINTENANCE_MESSAGE = (
    "Monitor is disabled because one of the scheduled maintenance event this monitor is attached to "
    "has not ended. Please end the scheduled maintenance event to start monitoring again."
)


class IngestResponse(BaseModel):
    monitor_id: str
    criteria_met_id: str | None = None
    root_cause: str | None = None
    ingested_step_id: str | None = None
    next_step_id: str | None = None
    status_changed: bool = False
    created_ids: list[str] = Field(default_factory=list)
    resolved_ids: list[str] = Field(default_factory=list)


def ensure_enabled(monitor: Monitor) -> None:
    if monitor.disable_active_monitoring:
        raise MonitorDisabledError(DISABLED_MESSAGE)
    if monitor.disabled_by_manual_incident:
        raise MonitorDisabledError(DISABLED_BY_INCIDENT_MESSAGE)
    if monitor.disabled_by_scheduled_maintenance:
        raise MonitorDisabledError(DISABLED_BY_MAINTENANCE_MESSAGE)


class MonitorIngestor:
    def __init__(
        self,
        store: Store,
        lifecycle: IncidentLifecycleController,
        metrics: MetricsRecorder | None = None,
        expression_timeout_seconds: float = 1.0,
        server_offline_after_minutes: int = 2,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.metrics = metrics
        self.expression_timeout_seconds = expression_timeout_seconds
        self.server_offline_after_minutes = server_offline_after_minutes

    async def process(self, result: CheckResult, now: datetime | None = None) -> IngestResponse:
        tick = as_utc(now) if now is not None else utc_now()
        response = IngestResponse(monitor_id=result.monitor_id)

        monitor = await self.store.find_one(Monitor, {"id": result.monitor_id}, is_root=True)
        if monitor is None:
            raise NotFoundError("Monitor not found")
        ensure_enabled(monitor)

        await self._record_probe_log(monitor, result, tick)
        monitor = await self._record_last_report(monitor, result)
        await self._record_metrics(monitor, result, tick)

        step = select_step(monitor.steps, result.monitor_step_id)
        if step is None:
            log.debug("monitor_has_no_steps", monitor_id=monitor.id)
            return response

        step_ids = [item.id for item in monitor.steps.steps]
        position = step_ids.index(step.id)
        response.ingested_step_id = step.id
        response.next_step_id = step_ids[position + 1] if position + 1 < len(step_ids) else None

        context = EvaluationContext(
            now=tick,
            expression_timeout_seconds=self.expression_timeout_seconds,
            server_offline_after_minutes=self.server_offline_after_minutes,
        )
        outcome = await step_outcome(monitor.monitor_type, result, step, monitor.current_state_id, context)
        summary = await self.lifecycle.apply(
            monitor,
            outcome,
            result,
            build_auto_resolve_map(monitor.steps, "incident"),
            build_auto_resolve_map(monitor.steps, "alert"),
            at=tick,
        )

        if outcome.match is not None:
            response.criteria_met_id = outcome.match.criteria_id
            response.root_cause = outcome.match.root_cause
        response.status_changed = summary.status_entry is not None
        response.created_ids = [issue.id for issue in summary.created]
        response.resolved_ids = summary.resolved_ids
        log.info(
            "check_result_ingested",
            monitor_id=monitor.id,
            step_id=step.id,
            criteria_met_id=response.criteria_met_id,
        )
        return response

    async def _record_probe_log(self, monitor: Monitor, result: CheckResult, now: datetime) -> None:
        probe_id = probe_id_of(result)
        if monitor.monitor_type not in PROBED_MONITOR_TYPES or not probe_id:
            return
        assignment = await self.store.find_one(
            MonitorProbe,
            {"monitor_id": monitor.id, "probe_id": probe_id},
            is_root=True,
        )
        if assignment is None:
            raise ProbeNotAssignedError("Probe is not assigned to this monitor")
        step_key = result.monitor_step_id or "default"
        last_log = dict(assignment.last_monitoring_log)
        last_log[step_key] = {**result.model_dump(mode="json"), "monitored_at": now.isoformat()}
        await self.store.update_by_id(MonitorProbe, assignment.id, {"last_monitoring_log": last_log}, is_root=True)

    async def _record_last_report(self, monitor: Monitor, result: CheckResult) -> Monitor:
        if isinstance(result, IncomingRequestCheckResult) and result.incoming_request_received_at:
            return await self.store.update_by_id(
                Monitor,
                monitor.id,
                {
                    "incoming_request_received_at": result.incoming_request_received_at,
                    "last_incoming_request": result.model_dump(mode="json"),
                },
                is_root=True,
            )
        if isinstance(result, ServerCheckResult) and result.request_received_at:
            return await self.store.update_by_id(
                Monitor,
                monitor.id,
                {
                    "server_report_received_at": result.request_received_at,
                    "last_server_report": result.model_dump(mode="json"),
                },
                is_root=True,
            )
        return monitor

    async def _record_metrics(self, monitor: Monitor, result: CheckResult, now: datetime) -> None:
        if self.metrics is None:
            return
        try:
            await self.metrics.record_check(monitor, result, now)
        except Exception as exc:
            log.exception("monitor_metrics_failed", monitor_id=monitor.id, error=str(exc))
