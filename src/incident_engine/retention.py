from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

import structlog

from incident_engine.metrics import MetricsSink
from incident_engine.models import Alert, ExecutionLog, Incident, TimelineEntry, TrackedIssue, utc_now
from incident_engine.store import Store, in_, lt
from incident_engine.timeline import state_reached

log = structlog.get_logger(__name__)


@dataclass
class PurgeReport:
    incidents: int = 0
    alerts: int = 0
    timeline_entries: int = 0
    execution_logs: int = 0


async def purge_expired(
    store: Store,
    retention_days: int,
    now: datetime | None = None,
    sink: MetricsSink | None = None,
) -> PurgeReport:
    cutoff = (now or utc_now()) - timedelta(days=retention_days)
    report = PurgeReport()

    kinds: tuple[tuple[Literal["incident", "alert"], type[TrackedIssue]], ...] = (
        ("incident", Incident),
        ("alert", Alert),
    )
    for kind, model in kinds:
        candidates = await store.find_many(model, {"created_at": lt(cutoff)}, is_root=True)
        expired: list[str] = []
        for issue in candidates:
            if await state_reached(store, kind, issue, "is_resolved_state"):
                expired.append(issue.id)
        if not expired:
            continue

        report.timeline_entries += await store.delete_where(TimelineEntry, {"owner_id": in_(expired)}, is_root=True)
        link = "triggered_by_incident_id" if kind == "incident" else "triggered_by_alert_id"
        report.execution_logs += await store.delete_where(ExecutionLog, {link: in_(expired)}, is_root=True)
        deleted = await store.delete_where(model, {"id": in_(expired)}, is_root=True)
        if kind == "incident":
            report.incidents += deleted
        else:
            report.alerts += deleted
        if sink is not None:
            for issue_id in expired:
                await sink.delete_for_owner(issue_id)

    report.execution_logs += await store.delete_where(
        ExecutionLog,
        {"status": in_(["completed", "error"]), "created_at": lt(cutoff)},
        is_root=True,
    )
    log.info(
        "retention_purge_finished",
        cutoff=cutoff.isoformat(),
        incidents=report.incidents,
        alerts=report.alerts,
        timeline_entries=report.timeline_entries,
        execution_logs=report.execution_logs,
    )
    return report
