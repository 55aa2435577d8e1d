from __future__ import annotations

import asyncio
import weakref
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from incident_engine.checks import CheckResult, change_log_of, probe_id_of, telemetry_query_of
from incident_engine.criteria import DEFAULT_STATUS_ROOT_CAUSE, CriteriaMatch, StepOutcome
from incident_engine.exceptions import ConfigurationError
from incident_engine.incidents import IssueKind, IssueManager
from incident_engine.models import (
    Alert,
    AlertTemplate,
    Incident,
    IncidentTemplate,
    Monitor,
    Severity,
    TimelineEntry,
    TrackedIssue,
)
from incident_engine.store import Store
from incident_engine.timeline import StatusTimelineManager

log = structlog.get_logger(__name__)

AutoResolveMap = Mapping[str, set[str]]


def auto_resolve_root_cause(kind: IssueKind, root_cause: str) -> str:
    label = "Incident" if kind == "incident" else "Alert"
    return f"{label} autoresolved because autoresolve is set to true in monitor criteria. {root_cause}"


def should_close(issue: TrackedIssue, auto_resolve: AutoResolveMap, matched_criteria_id: str | None) -> bool:
    if matched_criteria_id is not None and issue.created_criteria_id == matched_criteria_id:
        return False
    if not issue.created_criteria_id or not issue.created_template_id:
        return False
    return issue.created_template_id in auto_resolve.get(issue.created_criteria_id, set())


@dataclass
class LifecycleResult:
    status_entry: TimelineEntry | None = None
    created: list[TrackedIssue] = field(default_factory=list)
    resolved_ids: list[str] = field(default_factory=list)


class IncidentLifecycleController:
    def __init__(self, store: Store, timeline: StatusTimelineManager, issues: IssueManager) -> None:
        self.store = store
        self.timeline = timeline
        self.issues = issues
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, monitor_id: str) -> asyncio.Lock:
        lock = self._locks.get(monitor_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[monitor_id] = lock
        return lock

    async def apply(
        self,
        monitor: Monitor,
        outcome: StepOutcome,
        result: CheckResult,
        incident_auto_resolve: AutoResolveMap,
        alert_auto_resolve: AutoResolveMap,
        at: datetime | None = None,
    ) -> LifecycleResult:
        async with self._lock(monitor.id):
            summary = LifecycleResult()
            match = outcome.match
            change_log = change_log_of(result)

            summary.status_entry = await self._change_status(monitor, outcome, change_log, at)

            root_cause = match.root_cause if match is not None else DEFAULT_STATUS_ROOT_CAUSE
            matched_id = match.criteria_id if match is not None else None
            passes: tuple[tuple[IssueKind, AutoResolveMap], ...] = (
                ("incident", incident_auto_resolve),
                ("alert", alert_auto_resolve),
            )
            for kind, auto_resolve in passes:
                summary.resolved_ids += await self._auto_resolve(
                    kind, monitor, auto_resolve, matched_id, root_cause, change_log, at
                )

            if match is not None:
                if match.criteria.create_incidents:
                    summary.created += await self._create(
                        "incident", monitor, match, result, match.criteria.incidents, at
                    )
                if match.criteria.create_alerts:
                    summary.created += await self._create("alert", monitor, match, result, match.criteria.alerts, at)

            log.info(
                "lifecycle_applied",
                monitor_id=monitor.id,
                criteria_id=matched_id,
                status_changed=summary.status_entry is not None,
                created=len(summary.created),
                resolved=len(summary.resolved_ids),
            )
            return summary

    async def _change_status(
        self,
        monitor: Monitor,
        outcome: StepOutcome,
        change_log: dict[str, Any],
        at: datetime | None = None,
    ) -> TimelineEntry | None:
        match = outcome.match
        if match is not None:
            criteria = match.criteria
            if not criteria.change_monitor_status or not criteria.monitor_status_id:
                return None
            current = await self.timeline.current_entry(monitor.id)
            if current is not None and criteria.monitor_status_id == monitor.current_state_id:
                return None
            return await self.timeline.insert(
                "monitor",
                monitor.id,
                criteria.monitor_status_id,
                root_cause=match.root_cause,
                change_log=change_log,
                at=at,
            )

        if outcome.default_status_id is not None and outcome.default_status_id != monitor.current_state_id:
            return await self.timeline.insert(
                "monitor",
                monitor.id,
                outcome.default_status_id,
                root_cause=DEFAULT_STATUS_ROOT_CAUSE,
                change_log=change_log,
                at=at,
            )
        return None

    async def _auto_resolve(
        self,
        kind: IssueKind,
        monitor: Monitor,
        auto_resolve: AutoResolveMap,
        matched_criteria_id: str | None,
        root_cause: str,
        change_log: dict[str, Any],
        at: datetime | None = None,
    ) -> list[str]:
        resolved: list[str] = []
        open_issues = await self.issues.open_for_monitor(kind, monitor.id)
        closable = [issue for issue in open_issues if should_close(issue, auto_resolve, matched_criteria_id)]
        if not closable:
            return resolved

        resolved_state_id = await self.timeline.resolved_state_id(monitor.project_id, kind)
        for issue in closable:
            await self.issues.change_state(
                kind,
                issue.id,
                resolved_state_id,
                root_cause=auto_resolve_root_cause(kind, root_cause),
                change_log=change_log,
                at=at,
            )
            resolved.append(issue.id)
            log.info("issue_auto_resolved", kind=kind, issue_id=issue.id, monitor_id=monitor.id)
        return resolved

    async def _severity_id(self, project_id: str, template: IncidentTemplate) -> str:
        if template.severity_id:
            return template.severity_id
        severity = await self.store.find_one(Severity, {"project_id": project_id}, sort="order", is_root=True)
        if severity is None:
            raise ConfigurationError("Project does not have incident severity")
        return severity.id

    async def _create(
        self,
        kind: IssueKind,
        monitor: Monitor,
        match: CriteriaMatch,
        result: CheckResult,
        templates: list[IncidentTemplate] | list[AlertTemplate],
        at: datetime | None = None,
    ) -> list[TrackedIssue]:
        created: list[TrackedIssue] = []
        open_keys = {issue.dedup_key for issue in await self.issues.open_for_monitor(kind, monitor.id)}
        for template in templates:
            if (match.criteria_id, template.id) in open_keys:
                log.debug("issue_already_open", kind=kind, monitor_id=monitor.id, template_id=template.id)
                continue

            fields = {
                "project_id": monitor.project_id,
                "title": template.title,
                "description": template.description,
                "severity_id": await self._severity_id(monitor.project_id, template),
                "root_cause": match.root_cause,
                "created_state_log": change_log_of(result),
                "created_criteria_id": match.criteria_id,
                "created_template_id": template.id,
                "is_created_automatically": True,
                "on_call_policy_ids": list(template.on_call_policy_ids),
                "telemetry_query": telemetry_query_of(result),
                "created_by_probe_id": probe_id_of(result),
                "remediation_notes": template.remediation_notes,
            }
            if at is not None:
                fields["created_at"] = at
            issue: TrackedIssue
            if kind == "incident":
                issue = Incident(monitor_ids=[monitor.id], **fields)
            else:
                issue = Alert(monitor_id=monitor.id, **fields)
            created.append(await self.issues.create(issue))
            open_keys.add((match.criteria_id, template.id))
        return created
